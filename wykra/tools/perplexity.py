"""Search-augmented chat completion (Perplexity models via OpenRouter)."""
from __future__ import annotations

from wykra import llm_client
from wykra.config import settings


async def search(prompt: str, *, model: str | None = None, max_tokens: int = 10_000) -> llm_client.Completion:
    """Ask a web-grounded model and return its raw answer with token usage."""
    return await llm_client.complete(
        prompt,
        model=model or settings.perplexity_model,
        caller="perplexity_search",
        temperature=0.0,
        max_tokens=max_tokens,
    )
