"""BrightData dataset API: trigger a collection, wait for the snapshot, download it."""
from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Awaitable, Callable

import httpx
from loguru import logger

from wykra.config import settings
from wykra.services import metrics


class ScraperError(Exception):
    """Base class for scraping-provider failures."""


class ScraperHTTPError(ScraperError):
    def __init__(self, what: str, status_code: int, reason: str):
        super().__init__(f"Failed to fetch {what}: {reason} ({status_code})")
        self.status_code = status_code


class ScraperNoResponseError(ScraperError):
    def __init__(self, provider: str = "BrightData"):
        super().__init__(f"No response from {provider} API")


class ScraperRequestError(ScraperError):
    def __init__(self, what: str, message: str):
        super().__init__(f"Failed to fetch {what}: {message}")


class SnapshotFailedError(ScraperError):
    pass


class SnapshotTimeoutError(ScraperError):
    pass


def classify_http_error(exc: Exception, what: str, provider: str = "BrightData") -> ScraperError:
    """Map an httpx failure onto error response / no response / request setup."""
    if isinstance(exc, ScraperError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        reason = response.reason_phrase or "HTTP error"
        return ScraperHTTPError(what, response.status_code, reason)
    if isinstance(exc, (httpx.UnsupportedProtocol, httpx.LocalProtocolError, httpx.InvalidURL)):
        return ScraperRequestError(what, str(exc) or exc.__class__.__name__)
    if isinstance(exc, httpx.TransportError):
        return ScraperNoResponseError(provider)
    return ScraperRequestError(what, str(exc) or exc.__class__.__name__)


def parse_snapshot_body(body: str) -> list[Any]:
    """Accept a JSON array, a single JSON object or NDJSON text."""
    text = body.strip()
    if not text:
        return []
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        items = []
        for line in text.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                items.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return items
    if isinstance(parsed, list):
        return parsed
    if isinstance(parsed, dict):
        return [parsed]
    return []


def _is_error_entry(entry: Any) -> bool:
    return isinstance(entry, dict) and bool(entry.get("error") or entry.get("error_code"))


class BrightDataClient:
    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        poll_interval: float | None = None,
        wait_timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.api_key = api_key if api_key is not None else settings.brightdata_api_key
        self.base_url = (base_url or settings.brightdata_base_url).rstrip("/")
        self.timeout = timeout or settings.brightdata_timeout
        self.poll_interval = poll_interval if poll_interval is not None else settings.brightdata_poll_interval_seconds
        self.wait_timeout = wait_timeout if wait_timeout is not None else settings.brightdata_wait_timeout_seconds
        self._http_client = http_client
        self._sleep = sleep
        self._clock = clock

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, what: str, **kwargs: Any) -> httpx.Response:
        if not self.is_configured:
            raise ScraperRequestError(what, "BrightData API key is not configured")

        async def _do_request(client: httpx.AsyncClient) -> httpx.Response:
            response = await client.request(
                method,
                f"{self.base_url}{path}",
                headers=self._headers(),
                **kwargs,
            )
            response.raise_for_status()
            return response

        try:
            if self._http_client is None:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    return await _do_request(client)
            return await _do_request(self._http_client)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            error = classify_http_error(exc, what)
            logger.error(f"BrightData {method} {path} failed: {error}")
            raise error from exc

    async def trigger(
        self,
        dataset_id: str,
        inputs: list[dict[str, Any]],
        *,
        collection_type: str = "url_collection",
        discover_by: str | None = None,
        what: str = "BrightData dataset",
    ) -> str:
        params = {
            "dataset_id": dataset_id,
            "include_errors": "true",
            "type": collection_type,
        }
        if discover_by:
            params["discover_by"] = discover_by
        response = await self._request("POST", "/datasets/v3/trigger", what, params=params, json=inputs)
        snapshot_id = None
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict):
            snapshot_id = data.get("snapshot_id")
        if not snapshot_id:
            raise ScraperError("BrightData trigger did not return snapshot_id")
        logger.info(f"BrightData snapshot {snapshot_id} triggered (dataset={dataset_id}, inputs={len(inputs)})")
        return str(snapshot_id)

    async def wait_for_snapshot(self, snapshot_id: str, what: str = "BrightData snapshot") -> None:
        """Poll progress until ready. Bounded by ``wait_timeout`` seconds."""
        started = self._clock()
        while self._clock() - started < self.wait_timeout:
            response = await self._request("GET", f"/datasets/v3/progress/{snapshot_id}", what)
            try:
                progress = response.json()
            except ValueError:
                progress = {}
            if not isinstance(progress, dict):
                progress = {}
            status = str(progress.get("status") or "").lower()
            if status == "ready":
                return
            if status in ("failed", "error"):
                raise SnapshotFailedError(
                    f"BrightData snapshot {snapshot_id} failed: {json.dumps(progress, default=str)}"
                )
            logger.debug(f"BrightData snapshot {snapshot_id} status={status or 'unknown'}")
            await self._sleep(self.poll_interval)
        raise SnapshotTimeoutError(
            f"Timed out waiting for BrightData snapshot {snapshot_id} ({int(self.wait_timeout * 1000)}ms)"
        )

    async def download_snapshot(self, snapshot_id: str, what: str = "BrightData snapshot") -> list[Any]:
        response = await self._request(
            "GET",
            f"/datasets/v3/snapshot/{snapshot_id}",
            what,
            params={"format": "json"},
        )
        return parse_snapshot_body(response.text)

    async def collect(
        self,
        dataset_id: str,
        inputs: list[dict[str, Any]],
        *,
        what: str,
        collection_type: str = "url_collection",
        discover_by: str | None = None,
    ) -> list[dict[str, Any]]:
        """Trigger, wait and download. Entries carrying an error are dropped."""
        t0 = time.monotonic()
        try:
            snapshot_id = await self.trigger(
                dataset_id,
                inputs,
                collection_type=collection_type,
                discover_by=discover_by,
                what=what,
            )
            await self.wait_for_snapshot(snapshot_id, what)
            items = await self.download_snapshot(snapshot_id, what)
        except Exception as exc:
            metrics.record_brightdata_call(
                dataset_id, discover_by or collection_type, time.monotonic() - t0, error_type=exc.__class__.__name__
            )
            raise
        metrics.record_brightdata_call(dataset_id, discover_by or collection_type, time.monotonic() - t0)
        records = [item for item in items if isinstance(item, dict) and not _is_error_entry(item)]
        dropped = len(items) - len(records)
        logger.info(
            f"BrightData snapshot {snapshot_id}: {len(records)} records"
            f"{f', {dropped} dropped' if dropped else ''} in {time.monotonic() - t0:.1f}s"
        )
        return records

    async def collect_profiles_by_urls(self, dataset_id: str, urls: list[str], what: str = "profiles") -> list[dict[str, Any]]:
        if not urls:
            return []
        return await self.collect(dataset_id, [{"url": url} for url in urls], what=what)

    async def discover_by_search_urls(
        self,
        dataset_id: str,
        search_urls: list[str],
        country: str,
        what: str = "TikTok search",
    ) -> list[dict[str, Any]]:
        if not search_urls:
            return []
        return await self.collect(
            dataset_id,
            [{"search_url": url, "country": country} for url in search_urls],
            what=what,
            collection_type="discover_new",
            discover_by="search_url",
        )
