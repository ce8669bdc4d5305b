"""Sentry wiring shared by the API and the worker."""
from __future__ import annotations

from typing import Any

import sentry_sdk
from loguru import logger

from wykra.config import settings

_initialized = False


def init_error_tracking() -> bool:
    """Initialize Sentry once when a DSN is configured."""
    global _initialized
    if _initialized:
        return True
    if not settings.sentry_dsn:
        logger.info("SENTRY_DSN not set; error tracking disabled")
        return False
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.sentry_environment,
        traces_sample_rate=0.0,
    )
    _initialized = True
    return True


def capture_exception(exc: BaseException, **context: Any) -> None:
    """Send an exception with extra context. Never raises."""
    try:
        with sentry_sdk.new_scope() as scope:
            if context:
                scope.set_context("wykra", {k: _safe(v) for k, v in context.items()})
            sentry_sdk.capture_exception(exc)
    except Exception as tracking_error:  # noqa: BLE001
        logger.warning(f"Failed to report exception to Sentry: {tracking_error}")


def _safe(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)
