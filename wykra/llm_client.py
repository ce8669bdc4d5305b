"""OpenRouter LLM client built on the OpenAI-compatible SDK."""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

from wykra.config import settings
from wykra.services import logger as log_service
from wykra.services import metrics


class LLMError(Exception):
    """Base class for chat-completion failures."""


class LLMNotConfiguredError(LLMError):
    pass


class LLMHTTPError(LLMError):
    def __init__(self, status_code: int, message: str):
        super().__init__(f"LLM request failed: {message} ({status_code})")
        self.status_code = status_code


class LLMNoResponseError(LLMError):
    def __init__(self) -> None:
        super().__init__("No response from LLM provider")


class LLMRequestError(LLMError):
    def __init__(self, message: str):
        super().__init__(f"LLM request failed: {message}")


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "totalTokens": self.total_tokens,
        }


@dataclass
class Completion:
    text: str
    usage: Usage
    model: str


class OpenRouterChatAdapter:
    def __init__(self, openai_client: Any):
        self._client = openai_client

    @staticmethod
    def _text_from_content(content: Any) -> str:
        if content is None:
            return ""
        if isinstance(content, str):
            return content
        # Some gateways return a list of content parts.
        if isinstance(content, list):
            parts = []
            for part in content:
                text = part.get("text") if isinstance(part, dict) else getattr(part, "text", None)
                if text:
                    parts.append(text)
            return "".join(parts)
        return str(content)

    def _from_openai_response(self, response: Any, model: str) -> Completion:
        choices = getattr(response, "choices", None) or []
        message = getattr(choices[0], "message", None) if choices else None
        text = self._text_from_content(getattr(message, "content", None))

        usage = getattr(response, "usage", None)
        prompt_tokens = getattr(usage, "prompt_tokens", 0) or 0
        completion_tokens = getattr(usage, "completion_tokens", 0) or 0
        total_tokens = getattr(usage, "total_tokens", 0) or (prompt_tokens + completion_tokens)
        return Completion(
            text=text,
            usage=Usage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=total_tokens,
            ),
            model=getattr(response, "model", None) or model,
        )

    async def create(
        self,
        *,
        model: str,
        messages: list[dict[str, str]],
        temperature: float = 0.0,
        max_tokens: int | None = None,
    ) -> Completion:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
        }
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        response = await self._client.chat.completions.create(**kwargs)
        return self._from_openai_response(response, model)


def get_client() -> OpenRouterChatAdapter:
    """Get OpenRouter client via OpenAI-compatible SDK."""
    from openai import AsyncOpenAI

    if not settings.openrouter_api_key:
        raise LLMNotConfiguredError("OpenRouter API key not configured")
    base_url = settings.openrouter_base_url.strip() or "https://openrouter.ai/api/v1"
    openai_client = AsyncOpenAI(
        api_key=settings.openrouter_api_key,
        base_url=base_url,
        timeout=settings.openrouter_timeout,
        default_headers={"X-Title": "Wykra"},
    )
    return OpenRouterChatAdapter(openai_client)


def get_model() -> str:
    """Get the active OpenRouter model id."""
    if settings.openrouter_model:
        return settings.openrouter_model
    return settings.default_model


_client: OpenRouterChatAdapter | None = None


def client() -> OpenRouterChatAdapter:
    """Get or create the LLM client."""
    global _client
    if _client is None:
        _client = get_client()
    return _client


def classify_llm_error(exc: Exception) -> LLMError:
    """Map openai SDK exceptions onto the three failure sites."""
    import openai

    if isinstance(exc, LLMError):
        return exc
    if isinstance(exc, openai.APIStatusError):
        return LLMHTTPError(exc.status_code, exc.message)
    if isinstance(exc, openai.APIConnectionError):
        # Covers timeouts as well: the request went out, nothing came back.
        return LLMNoResponseError()
    return LLMRequestError(str(exc))


async def complete(
    prompt: str | None = None,
    *,
    messages: list[dict[str, str]] | None = None,
    system: str | None = None,
    model: str | None = None,
    caller: str = "llm",
    temperature: float = 0.0,
    max_tokens: int | None = None,
) -> Completion:
    """Run a single chat completion and log it.

    Either ``prompt`` (sent as one user message) or a full ``messages`` list
    must be given. ``system`` is prepended when present.
    """
    chat_messages: list[dict[str, str]] = []
    if system:
        chat_messages.append({"role": "system", "content": system})
    if messages:
        chat_messages.extend(messages)
    if prompt is not None:
        chat_messages.append({"role": "user", "content": prompt})
    if not chat_messages:
        raise ValueError("complete() needs a prompt or messages")

    active_model = model or get_model()
    t0 = time.monotonic()
    try:
        result = await client().create(
            model=active_model,
            messages=chat_messages,
            temperature=temperature,
            max_tokens=max_tokens,
        )
    except Exception as exc:
        error = classify_llm_error(exc)
        elapsed = time.monotonic() - t0
        metrics.record_llm_call(active_model, caller, duration_seconds=elapsed, error_type=error.__class__.__name__)
        log_service.log_llm_call(
            model=active_model,
            caller=caller,
            duration_ms=int(elapsed * 1000),
            status="error",
            error=str(error),
        )
        raise error from exc

    elapsed = time.monotonic() - t0
    metrics.record_llm_call(
        result.model,
        caller,
        input_tokens=result.usage.prompt_tokens,
        output_tokens=result.usage.completion_tokens,
        duration_seconds=elapsed,
    )
    log_service.log_llm_call(
        model=result.model,
        caller=caller,
        input_tokens=result.usage.prompt_tokens,
        output_tokens=result.usage.completion_tokens,
        duration_ms=int(elapsed * 1000),
    )
    return result
