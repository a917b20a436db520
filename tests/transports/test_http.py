"""Tests for the HTTP transport using mocked responses."""

import json

import pytest

# Skip all tests if httpx is not installed
pytest.importorskip("httpx")

import httpx
import respx

from tagsync import NetworkError, RateLimitError, ServerError
from tagsync.dashboard import register_dashboard
from tagsync.transports import HttpTransport, parse_retry_after

BASE_URL = "https://api.test.dev/api/v1"


@pytest.fixture
async def transport():
    """Create an HttpTransport with test configuration."""
    transport = HttpTransport(BASE_URL, token="test-token")
    yield transport
    await transport.aclose()


class TestRequests:
    """Tests for successful requests."""

    @respx.mock
    async def test_get_unwraps_data(self, transport: HttpTransport) -> None:
        route = respx.get(f"{BASE_URL}/lectures/c1/get-lectures").mock(
            return_value=httpx.Response(200, json={"data": [{"_id": "l1"}]})
        )

        result = await transport.get("/lectures/c1/get-lectures")

        assert result == [{"_id": "l1"}]
        request = route.calls[0].request
        assert request.headers["Authorization"] == "Bearer test-token"
        assert request.headers["Cache-Control"] == "no-cache, no-store, must-revalidate"
        assert request.headers["Pragma"] == "no-cache"

    @respx.mock
    async def test_patch_sends_body(self, transport: HttpTransport) -> None:
        route = respx.patch(f"{BASE_URL}/courses/edit-course/c1").mock(
            return_value=httpx.Response(200, json={"data": {"_id": "c1"}})
        )

        result = await transport.patch("/courses/edit-course/c1", json={"title": "x"})

        assert result == {"_id": "c1"}
        request = route.calls[0].request
        assert json.loads(request.content) == {"title": "x"}
        assert "Cache-Control" not in request.headers

    @respx.mock
    async def test_body_without_envelope(self, transport: HttpTransport) -> None:
        respx.get(f"{BASE_URL}/lectures/l1").mock(
            return_value=httpx.Response(200, json={"_id": "l1"})
        )
        assert await transport.get("/lectures/l1") == {"_id": "l1"}

    @respx.mock
    async def test_empty_body(self, transport: HttpTransport) -> None:
        respx.delete(f"{BASE_URL}/courses/delete-course/c1").mock(
            return_value=httpx.Response(204)
        )
        assert await transport.delete("/courses/delete-course/c1") is None

    @respx.mock
    async def test_token_provider(self) -> None:
        route = respx.get(f"{BASE_URL}/lectures/l1").mock(
            return_value=httpx.Response(200, json={"data": None})
        )
        tokens = iter(["first", None])
        transport = HttpTransport(BASE_URL, token=lambda: next(tokens))

        await transport.get("/lectures/l1")
        await transport.get("/lectures/l1")
        await transport.aclose()

        assert route.calls[0].request.headers["Authorization"] == "Bearer first"
        assert "Authorization" not in route.calls[1].request.headers


class TestErrors:
    """Tests for error mapping."""

    @respx.mock
    async def test_rate_limited(self, transport: HttpTransport) -> None:
        respx.get(f"{BASE_URL}/lectures/l1").mock(
            return_value=httpx.Response(
                429, json={"message": "Slow down"}, headers={"Retry-After": "2"}
            )
        )

        with pytest.raises(RateLimitError, match="Slow down") as exc_info:
            await transport.get("/lectures/l1")
        assert exc_info.value.retry_after == 2000
        assert exc_info.value.status == 429

    @respx.mock
    async def test_server_error(self, transport: HttpTransport) -> None:
        respx.patch(f"{BASE_URL}/lectures/c1/update-lecture/l1").mock(
            return_value=httpx.Response(403, json={"error": "Not your course"})
        )

        with pytest.raises(ServerError) as exc_info:
            await transport.patch("/lectures/c1/update-lecture/l1", json={})
        assert exc_info.value.status == 403
        assert exc_info.value.message == "Not your course"

    @respx.mock
    async def test_non_json_error(self, transport: HttpTransport) -> None:
        respx.get(f"{BASE_URL}/lectures/l1").mock(
            return_value=httpx.Response(502, text="Bad Gateway")
        )

        with pytest.raises(ServerError, match="HTTP 502"):
            await transport.get("/lectures/l1")

    @respx.mock
    async def test_connection_error(self, transport: HttpTransport) -> None:
        respx.get(f"{BASE_URL}/lectures/l1").mock(
            side_effect=httpx.ConnectError
        )

        with pytest.raises(NetworkError, match="GET /lectures/l1"):
            await transport.get("/lectures/l1")

    @respx.mock
    async def test_timeout(self, transport: HttpTransport) -> None:
        respx.get(f"{BASE_URL}/lectures/l1").mock(
            side_effect=httpx.ReadTimeout
        )

        with pytest.raises(NetworkError, match="Timed out"):
            await transport.get("/lectures/l1")


class TestParseRetryAfter:
    """Tests for parse_retry_after function."""

    def test_seconds(self) -> None:
        assert parse_retry_after("3") == 3000
        assert parse_retry_after(" 0 ") == 0

    def test_missing(self) -> None:
        assert parse_retry_after(None) is None
        assert parse_retry_after("") is None

    def test_garbage(self) -> None:
        assert parse_retry_after("soon") is None

    def test_past_date(self) -> None:
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0


class TestWithEngine:
    """The transport plugged into the dashboard endpoints."""

    @respx.mock
    async def test_rate_limited_fetch_is_retried(self, engine, transport) -> None:
        route = respx.get(f"{BASE_URL}/lectures/c1/get-lectures").mock(
            side_effect=[
                httpx.Response(429, headers={"Retry-After": "0"}),
                httpx.Response(200, json={"data": [{"_id": "l1", "order": 1}]}),
            ]
        )
        register_dashboard(engine, transport)

        sub = engine.subscribe("lectures_by_course", {"course_id": "c1"})

        assert await sub.wait() == [{"_id": "l1", "order": 1}]
        assert route.call_count == 2
