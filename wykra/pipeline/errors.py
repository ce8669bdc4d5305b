class PreconditionError(ValueError):
    """Input the pipeline cannot work with. Fails the task without retry."""
