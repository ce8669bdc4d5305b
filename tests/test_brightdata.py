from __future__ import annotations

import json

import httpx
import pytest

from wykra.tools.brightdata import (
    BrightDataClient,
    ScraperError,
    ScraperHTTPError,
    ScraperNoResponseError,
    ScraperRequestError,
    SnapshotFailedError,
    SnapshotTimeoutError,
    classify_http_error,
    parse_snapshot_body,
)


async def _no_sleep(_seconds: float) -> None:
    return None


def _client(handler, **kwargs) -> BrightDataClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return BrightDataClient(
        api_key="bd-key",
        base_url="https://bd.test",
        poll_interval=0,
        http_client=http_client,
        sleep=_no_sleep,
        **kwargs,
    )


class TestCollect:
    @pytest.mark.asyncio
    async def test_trigger_poll_download_cycle(self):
        progress = iter(["running", "ready"])
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            path = request.url.path
            if path == "/datasets/v3/trigger":
                return httpx.Response(200, json={"snapshot_id": "s_1"})
            if path == "/datasets/v3/progress/s_1":
                return httpx.Response(200, json={"status": next(progress)})
            if path == "/datasets/v3/snapshot/s_1":
                body = [{"url": "https://www.instagram.com/a/"}, {"error": "dead link", "url": "x"}]
                return httpx.Response(200, text=json.dumps(body))
            return httpx.Response(404)

        client = _client(handler)
        records = await client.collect_profiles_by_urls("gd_x", ["https://www.instagram.com/a/"])

        assert records == [{"url": "https://www.instagram.com/a/"}]
        trigger = seen[0]
        assert trigger.headers["Authorization"] == "Bearer bd-key"
        assert trigger.url.params["dataset_id"] == "gd_x"
        assert trigger.url.params["include_errors"] == "true"
        assert json.loads(trigger.content) == [{"url": "https://www.instagram.com/a/"}]
        assert seen[-1].url.params["format"] == "json"

    @pytest.mark.asyncio
    async def test_discover_sends_search_urls_with_country(self):
        captured: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/datasets/v3/trigger":
                captured["params"] = dict(request.url.params)
                captured["body"] = json.loads(request.content)
                return httpx.Response(200, json={"snapshot_id": "s_2"})
            if request.url.path.startswith("/datasets/v3/progress"):
                return httpx.Response(200, json={"status": "ready"})
            return httpx.Response(200, text="")

        client = _client(handler)
        await client.discover_by_search_urls("gd_t", ["https://www.tiktok.com/search?q=food"], "PT")

        assert captured["params"]["type"] == "discover_new"
        assert captured["params"]["discover_by"] == "search_url"
        assert captured["body"] == [{"search_url": "https://www.tiktok.com/search?q=food", "country": "PT"}]

    @pytest.mark.asyncio
    async def test_missing_snapshot_id(self):
        client = _client(lambda request: httpx.Response(200, json={}))
        with pytest.raises(ScraperError, match="did not return snapshot_id"):
            await client.trigger("gd_x", [{"url": "u"}])

    @pytest.mark.asyncio
    async def test_failed_snapshot_raises(self):
        client = _client(lambda request: httpx.Response(200, json={"status": "failed", "message": "bad"}))
        with pytest.raises(SnapshotFailedError, match="BrightData snapshot s_9 failed"):
            await client.wait_for_snapshot("s_9")

    @pytest.mark.asyncio
    async def test_wait_is_bounded(self):
        ticks = iter([0.0, 0.5, 2.0])
        client = _client(
            lambda request: httpx.Response(200, json={"status": "running"}),
            wait_timeout=1.0,
            clock=lambda: next(ticks),
        )
        with pytest.raises(SnapshotTimeoutError, match=r"Timed out waiting for BrightData snapshot s_3 \(1000ms\)"):
            await client.wait_for_snapshot("s_3")

    @pytest.mark.asyncio
    async def test_http_error_is_classified_not_retried(self):
        calls: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            return httpx.Response(404)

        client = _client(handler)
        with pytest.raises(ScraperHTTPError) as exc_info:
            await client.collect_profiles_by_urls("gd_x", ["u"], what="Instagram profile")

        assert exc_info.value.status_code == 404
        assert str(exc_info.value) == "Failed to fetch Instagram profile: Not Found (404)"
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_transport_error_means_no_response(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(handler)
        with pytest.raises(ScraperNoResponseError, match="No response from BrightData API"):
            await client.trigger("gd_x", [{"url": "u"}])

    @pytest.mark.asyncio
    async def test_unconfigured_key_is_request_setup_error(self):
        client = BrightDataClient(api_key="", base_url="https://bd.test")
        with pytest.raises(ScraperRequestError, match="not configured"):
            await client.trigger("gd_x", [{"url": "u"}])


class TestHelpers:
    def test_parse_snapshot_body_shapes(self):
        assert parse_snapshot_body('[{"a": 1}]') == [{"a": 1}]
        assert parse_snapshot_body('{"a": 1}') == [{"a": 1}]
        assert parse_snapshot_body('{"a": 1}\n{"b": 2}\nnot json\n') == [{"a": 1}, {"b": 2}]
        assert parse_snapshot_body("   ") == []

    def test_classify_request_setup_error(self):
        error = classify_http_error(httpx.UnsupportedProtocol("bad scheme"), "TikTok profile")
        assert isinstance(error, ScraperRequestError)
        assert str(error) == "Failed to fetch TikTok profile: bad scheme"
