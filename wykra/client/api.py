"""Async HTTP client for the Wykra API."""
from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from wykra.client.messages import normalize_history_message


class ApiError(Exception):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


def unwrap(payload: Any) -> Any:
    """Return ``payload["data"]`` for enveloped responses, else the payload."""
    if isinstance(payload, dict) and payload.get("data") is not None:
        return payload["data"]
    return payload


def _error_message(response: httpx.Response, fallback: str) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text.strip() or fallback
    if isinstance(body, dict):
        for key in ("detail", "message", "error"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return fallback


class WykraApiClient:
    def __init__(
        self,
        base_url: str,
        user_id: str,
        *,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "WykraApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _request(self, method: str, path: str, json: Any = None, params: dict | None = None) -> Any:
        try:
            response = await self._client.request(
                method,
                f"{self.base_url}{path}",
                json=json,
                params=params,
                headers={"X-User-Id": self.user_id},
            )
        except httpx.HTTPError as exc:
            logger.warning(f"{method} {path} failed: {exc}")
            raise ApiError(f"{method} {path} failed: {exc}") from exc
        if response.is_error:
            fallback = f"{method} {path} failed ({response.status_code})"
            raise ApiError(_error_message(response, fallback), response.status_code)
        if response.status_code == 204 or not response.content:
            return None
        return unwrap(response.json())

    # --- Chat ---

    async def chat(self, query: str, session_id: int | None = None) -> dict[str, Any]:
        return await self._request("POST", "/api/v1/chat", json={"query": query, "sessionId": session_id})

    async def get_history(self, session_id: int) -> list[dict[str, Any]]:
        payload = await self._request("GET", "/api/v1/chat/history", params={"sessionId": session_id})
        if isinstance(payload, dict):
            payload = payload.get("messages")
        if not isinstance(payload, list):
            return []
        return [normalize_history_message(m) for m in payload if isinstance(m, dict)]

    async def list_sessions(self) -> list[dict[str, Any]]:
        payload = await self._request("GET", "/api/v1/chat/sessions")
        return payload if isinstance(payload, list) else []

    async def create_session(self, title: str | None = None) -> dict[str, Any]:
        return await self._request("POST", "/api/v1/chat/sessions", json={"title": title})

    async def rename_session(self, session_id: int, title: str | None) -> dict[str, Any]:
        return await self._request("PATCH", f"/api/v1/chat/sessions/{session_id}", json={"title": title})

    async def delete_session(self, session_id: int) -> None:
        await self._request("DELETE", f"/api/v1/chat/sessions/{session_id}")

    # --- Tasks ---

    async def get_task(self, task_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/api/v1/tasks/{task_id}")

    async def stop_task(self, task_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/api/v1/tasks/{task_id}/stop", json={})

    async def start_task(self, platform: str, kind: str, value: str) -> str:
        """Start ``/{platform}/{kind}`` directly. Returns the task id."""
        param = "query" if kind == "search" else "profile"
        payload = await self._request("POST", f"/api/v1/{platform}/{kind}", json={param: value})
        return str(payload["taskId"])
