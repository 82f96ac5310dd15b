"""
Tests for the timed HTTP client.
"""

from __future__ import annotations

import httpx
import pytest

from surge.client import ApiClient
from surge.errors import ErrorKind
from surge.metrics import MetricsCollector


def make_client(handler, collector: MetricsCollector) -> ApiClient:
    return ApiClient(
        "http://api.test",
        collector.recorder("Phase 1"),
        timeout_seconds=5,
        transport=httpx.MockTransport(handler),
    )


class TestApiClient:
    """Test request classification and recording."""

    @pytest.mark.asyncio
    async def test_success(self) -> None:
        collector = MetricsCollector()

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"token": {"accessToken": "abc"}})

        async with make_client(handler, collector) as api:
            response = await api.post("/api/v1/auth/login", json={"email": "a@b.c"})

        assert response.success
        assert response.status_code == 200
        assert response.get("token", "accessToken") == "abc"
        assert response.get("missing", "key") is None
        assert response.error is None

        sample = collector.snapshot().samples[0]
        assert sample.endpoint == "/api/v1/auth/login"
        assert sample.method == "POST"
        assert sample.is_success
        assert sample.latency_ms >= 0

    @pytest.mark.asyncio
    async def test_error_status_with_body(self) -> None:
        collector = MetricsCollector()

        async with make_client(lambda r: httpx.Response(500, text="database exploded"), collector) as api:
            response = await api.get("/api/v1/forms")

        assert not response.success
        assert response.error_kind == ErrorKind.PROTOCOL
        assert response.error == "HTTP 500: database exploded"
        assert collector.snapshot().samples[0].status_code == 500

    @pytest.mark.asyncio
    async def test_error_status_without_body(self) -> None:
        collector = MetricsCollector()

        async with make_client(lambda r: httpx.Response(404), collector) as api:
            response = await api.get("/api/v1/forms/abc")

        assert response.error == "HTTP 404 Not Found"

    @pytest.mark.asyncio
    async def test_long_body_truncated(self) -> None:
        collector = MetricsCollector()

        async with make_client(lambda r: httpx.Response(400, text="x" * 1000), collector) as api:
            response = await api.get("/api/v1/forms")

        assert response.error.endswith("...")
        assert len(response.error) < 400

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        collector = MetricsCollector()

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        async with make_client(handler, collector) as api:
            response = await api.get("/api/v1/forms")

        assert response.error_kind == ErrorKind.TIMEOUT
        assert response.error == "Request timeout"
        sample = collector.snapshot().samples[0]
        assert sample.status_code == 0
        assert not sample.is_success
        assert sample.error_message == "Request timeout"

    @pytest.mark.asyncio
    async def test_network_error(self) -> None:
        collector = MetricsCollector()

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with make_client(handler, collector) as api:
            response = await api.get("/api/v1/forms")

        assert response.error_kind == ErrorKind.NETWORK
        assert response.error == "Network error: connection refused"

    @pytest.mark.asyncio
    async def test_unexpected_error(self) -> None:
        collector = MetricsCollector()

        def handler(request: httpx.Request) -> httpx.Response:
            raise ValueError("bad state")

        async with make_client(handler, collector) as api:
            response = await api.get("/api/v1/forms")

        assert response.error_kind == ErrorKind.UNEXPECTED
        assert response.error == "Error: bad state"

    @pytest.mark.asyncio
    async def test_one_sample_per_call(self) -> None:
        collector = MetricsCollector()
        statuses = iter([200, 500, 201])

        async with make_client(lambda r: httpx.Response(next(statuses)), collector) as api:
            await api.get("/a")
            await api.get("/b")
            await api.post("/c")

        snapshot = collector.snapshot()
        assert snapshot.total_requests == 3
        assert snapshot.successful_requests == 2

    @pytest.mark.asyncio
    async def test_auth_header(self) -> None:
        collector = MetricsCollector()
        seen: list[str | None] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers.get("Authorization"))
            return httpx.Response(200)

        async with make_client(handler, collector) as api:
            api.set_auth_token("abc")
            await api.get("/a")
            api.clear_auth_token()
            await api.get("/b")

        assert seen == ["Bearer abc", None]
