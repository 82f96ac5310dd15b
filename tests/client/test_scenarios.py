"""
Tests for the built-in workloads against a fake API.
"""

from __future__ import annotations

import itertools
import random
from collections import Counter
from unittest.mock import AsyncMock

import httpx
import pytest

from surge.cancellation import CancellationToken
from surge.datastore import DataStore
from surge.errors import WorkloadError
from surge.metrics import MetricsCollector
from surge.scenarios import (
    SmokeWorkload,
    TraceSourceWorkload,
    get_workload,
    list_workloads,
)
from surge.worker import Worker
from surge.workload import StepContext


class FakeTraceSourceApi:
    """Minimal in-memory stand-in for the TraceSource API."""

    ORGANIZATION_ID = "65a1b2c3d4e5f60718293a4b"

    def __init__(self, register_status: int = 201, login_status: int = 200) -> None:
        self.register_status = register_status
        self.login_status = login_status
        self.calls: Counter[str] = Counter()
        self.unauthenticated: list[str] = []
        self._form_ids = (f"{i:024x}" for i in itertools.count(1))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls[f"{request.method} {path}"] += 1

        if path == "/api/v1/auth/register":
            if self.register_status >= 400:
                return httpx.Response(self.register_status, json={"error": "exists"})
            return httpx.Response(201, json={"token": {"accessToken": "reg-token"}})
        if path == "/api/v1/auth/login":
            if self.login_status >= 400:
                return httpx.Response(self.login_status)
            return httpx.Response(200, json={"token": {"accessToken": "login-token"}})

        if "Authorization" not in request.headers:
            self.unauthenticated.append(path)
            return httpx.Response(401)

        if path == "/api/v1/onboarding/auto":
            return httpx.Response(200, json={"organization": {"id": self.ORGANIZATION_ID}})
        if request.method == "POST" and path == "/api/v1/forms":
            return httpx.Response(201, json={"form": {"id": next(self._form_ids)}})
        return httpx.Response(200, json={})


def make_workload(api: FakeTraceSourceApi, datastore=None) -> TraceSourceWorkload:
    return TraceSourceWorkload(
        "http://api.test",
        datastore=datastore,
        transport=httpx.MockTransport(api),
        rng=random.Random(1),
        verification_delay_seconds=0,
    )


async def run_once(workload, collector: MetricsCollector, datastore=None):
    worker = Worker(
        workload, collector, "Phase 1", datastore=datastore, backoff_seconds=(0.0, 0.0)
    )
    return await worker.run(1, 1, CancellationToken())


class TestTraceSourceWorkload:
    """Test the full user journey."""

    @pytest.mark.asyncio
    async def test_full_iteration(self) -> None:
        api = FakeTraceSourceApi()
        datastore = AsyncMock(spec=DataStore)
        datastore.get_verification_token.return_value = "123456"
        collector = MetricsCollector()

        report = await run_once(make_workload(api, datastore), collector, datastore)

        assert report.iterations_completed == 1
        assert report.steps_failed == 0
        assert api.unauthenticated == []
        assert api.calls["POST /api/v1/auth/register"] == 1
        assert api.calls["POST /api/v1/auth/login"] == 0
        assert api.calls["POST /api/v1/auth/email/verify"] == 1
        assert api.calls["POST /api/v1/forms"] == 3
        assert api.calls["GET /api/v1/forms"] == 6
        assert api.calls[f"GET /api/v1/organizations/{api.ORGANIZATION_ID}"] == 5
        assert api.calls["GET /api/v1/forms/stats"] == 1
        detail_calls = sum(
            count for key, count in api.calls.items()
            if key.startswith("GET /api/v1/forms/") and not key.endswith("/stats")
        )
        assert detail_calls == 6

        # Every call is one sample
        assert collector.sample_count == sum(api.calls.values()) == 24
        identity = datastore.cleanup.await_args.args[0]
        assert identity.startswith("test+loadtest.u1.i0.")
        assert identity.endswith("@yopmail.com")
        datastore.get_verification_token.assert_awaited_once_with(identity)

    @pytest.mark.asyncio
    async def test_login_fallback(self) -> None:
        api = FakeTraceSourceApi(register_status=409)
        collector = MetricsCollector()

        report = await run_once(make_workload(api), collector)

        assert report.iterations_completed == 1
        assert api.calls["POST /api/v1/auth/login"] == 1
        assert api.unauthenticated == []
        # No verification token in the null store, so no verify call
        assert api.calls["POST /api/v1/auth/email/verify"] == 0

        errors = collector.snapshot().error_counts()
        assert len(errors) == 1
        assert errors[0][0].startswith("HTTP 409: ")

    @pytest.mark.asyncio
    async def test_auth_failure_ends_iteration(self) -> None:
        api = FakeTraceSourceApi(register_status=500, login_status=401)
        collector = MetricsCollector()

        report = await run_once(make_workload(api), collector)

        assert report.iterations_failed == 1
        assert collector.sample_count == 2
        assert sum(api.calls.values()) == 2

    def test_identity_unique(self) -> None:
        workload = make_workload(FakeTraceSourceApi())
        first = workload.new_identity(3, 7)
        assert first.startswith("test+loadtest.u3.i7.")
        assert first != workload.new_identity(4, 7)

    @pytest.mark.asyncio
    async def test_step_without_client(self) -> None:
        """Test steps refuse to run outside an iteration."""
        workload = make_workload(FakeTraceSourceApi())
        context = StepContext(
            phase="Phase 1",
            user_id=1,
            iteration=0,
            identity="x",
            recorder=MetricsCollector().recorder("Phase 1"),
            token=CancellationToken(),
        )
        with pytest.raises(WorkloadError):
            await workload.onboard(context)


class TestSmokeWorkload:
    """Test the anonymous smoke workload."""

    @pytest.mark.asyncio
    async def test_gets_each_path(self) -> None:
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.path)
            return httpx.Response(200)

        workload = SmokeWorkload(
            "http://api.test",
            paths=["/health", "/api/v1/forms"],
            transport=httpx.MockTransport(handler),
        )
        collector = MetricsCollector()

        report = await run_once(workload, collector)

        assert report.iterations_completed == 1
        assert seen == ["/health", "/api/v1/forms"]
        assert collector.sample_count == 2


class TestRegistry:
    """Test workload lookup."""

    def test_get_workload(self) -> None:
        workload = get_workload("tracesource", "http://api.test", timeout_seconds=3)
        assert isinstance(workload, TraceSourceWorkload)
        assert workload.timeout_seconds == 3

        smoke = get_workload("smoke", "http://api.test", datastore=None)
        assert isinstance(smoke, SmokeWorkload)

    def test_unknown(self) -> None:
        with pytest.raises(ValueError, match="Unknown workload"):
            get_workload("nope", "http://api.test")

    def test_list(self) -> None:
        names = [w["name"] for w in list_workloads()]
        assert names == ["tracesource", "smoke"]
