"""
Workloads

Pre-built user flows:
- TraceSource: sign-up, onboarding, form creation and read-heavy browsing
- Smoke: repeated GETs against a few endpoints, no account needed
"""

from __future__ import annotations

import asyncio
import random
import time
from datetime import datetime, timezone
from typing import Any, Sequence

import httpx

from surge.client import DEFAULT_TIMEOUT_SECONDS, ApiClient
from surge.datastore import DataStore, NullDataStore
from surge.errors import WorkloadError
from surge.workload import Step, StepContext, StepResult, Workload

TEST_PASSWORD = "LoadTest@12345"
FORMS_PER_ITERATION = 3
ORGANIZATION_READS = 5
FORM_LIST_READS = 6
FORM_DETAIL_READS = 6


class _HttpWorkload(Workload):
    """Workload that opens one ApiClient per iteration."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.base_url = base_url
        self.timeout_seconds = timeout_seconds
        self.transport = transport
        self.rng = rng or random.Random()

    async def begin_iteration(self, context: StepContext) -> None:
        context.state["api"] = ApiClient(
            self.base_url,
            context.recorder,
            timeout_seconds=self.timeout_seconds,
            transport=self.transport,
        )

    async def end_iteration(self, context: StepContext) -> None:
        api = context.state.pop("api", None)
        if api is not None:
            await api.aclose()

    def api(self, context: StepContext) -> ApiClient:
        api = context.state.get("api")
        if api is None:
            raise WorkloadError("No HTTP client for this iteration; begin_iteration was not called")
        return api

    async def pause(self, context: StepContext, low_ms: int, high_ms: int) -> None:
        await context.token.sleep(self.rng.uniform(low_ms, high_ms) / 1000)


class TraceSourceWorkload(_HttpWorkload):
    """
    Full TraceSource user journey.

    Each iteration signs up a fresh user (falling back to login), verifies the
    email through the data store, onboards, creates three forms and then reads
    organizations and forms concurrently. Only authentication is required;
    every later step is best-effort.
    """

    name = "tracesource"
    description = "Register, verify, onboard, create forms and browse them"

    def __init__(
        self,
        base_url: str,
        *,
        datastore: DataStore | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
        rng: random.Random | None = None,
        verification_delay_seconds: float = 0.5,
    ) -> None:
        super().__init__(base_url, timeout_seconds=timeout_seconds, transport=transport, rng=rng)
        self.datastore = datastore or NullDataStore()
        self.verification_delay_seconds = verification_delay_seconds

    def steps(self) -> Sequence[Step]:
        return (
            Step("authenticate", self.authenticate, required=True),
            Step("verify_email", self.verify_email),
            Step("onboard", self.onboard),
            Step("create_forms", self.create_forms),
            Step("browse", self.browse),
            Step("form_details", self.form_details),
            Step("form_stats", self.form_stats),
            Step("logout", self.logout),
        )

    def new_identity(self, user_id: int, iteration: int) -> str:
        return f"test+loadtest.u{user_id}.i{iteration}.{time.time_ns() // 100}@yopmail.com"

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def authenticate(self, context: StepContext) -> StepResult:
        api = self.api(context)
        stamp = time.time_ns() // 100
        register = await api.post("/api/v1/auth/register", json={
            "firstName": f"LoadUser{context.user_id}",
            "lastName": f"Test{stamp % 10000}",
            "email": context.identity,
            "password": TEST_PASSWORD,
        })
        access_token = register.get("token", "accessToken") if register.success else None

        if not access_token:
            # The user may exist from a previous run
            login = await api.post("/api/v1/auth/login", json={
                "email": context.identity,
                "password": TEST_PASSWORD,
            })
            access_token = login.get("token", "accessToken") if login.success else None
            if not access_token:
                return StepResult.failed(
                    f"Both register and login failed for {context.identity}: "
                    f"{login.error or 'no access token'}"
                )

        api.set_auth_token(access_token)
        context.state["access_token"] = access_token
        return StepResult.ok()

    async def verify_email(self, context: StepContext) -> StepResult:
        api = self.api(context)
        if await context.token.sleep(self.verification_delay_seconds):
            return StepResult.ok("cancelled")

        token = await self.datastore.get_verification_token(context.identity)
        if not token:
            return StepResult.ok("no pending verification")

        response = await api.post("/api/v1/auth/email/verify", json={
            "email": context.identity,
            "token": token,
        })
        return StepResult(response.success, response.error)

    async def onboard(self, context: StepContext) -> StepResult:
        api = self.api(context)
        response = await api.post("/api/v1/onboarding/auto")
        organization_id = response.get("organization", "id")
        if organization_id:
            context.state["organization_id"] = organization_id
        return StepResult(response.success, response.error)

    async def create_forms(self, context: StepContext) -> StepResult:
        api = self.api(context)
        form_ids: list[str] = context.state.setdefault("form_ids", [])

        for i in range(FORMS_PER_ITERATION):
            now = datetime.now(timezone.utc)
            response = await api.post("/api/v1/forms", json={
                "name": f"Test Form {i + 1} - {now:%H%M%S}",
                "description": f"Load test form created at {now:%Y-%m-%d %H:%M:%S}",
                "tags": ["load-test", "automated"],
                "status": "drafted",
            })
            form_id = response.get("form", "id")
            if form_id:
                form_ids.append(form_id)
            await self.pause(context, 100, 300)

        if not form_ids:
            return StepResult.failed("no forms created")
        return StepResult.ok(created=len(form_ids))

    async def browse(self, context: StepContext) -> StepResult:
        api = self.api(context)
        calls = [api.get("/api/v1/forms") for _ in range(FORM_LIST_READS)]
        organization_id = context.state.get("organization_id")
        if organization_id:
            calls += [
                api.get(f"/api/v1/organizations/{organization_id}")
                for _ in range(ORGANIZATION_READS)
            ]

        responses = await asyncio.gather(*calls)
        await self.pause(context, 50, 150)
        return _summarize(responses)

    async def form_details(self, context: StepContext) -> StepResult:
        api = self.api(context)
        form_ids = context.state.get("form_ids") or []
        if not form_ids:
            return StepResult.ok("no forms to read")

        responses = await asyncio.gather(*[
            api.get(f"/api/v1/forms/{form_ids[i % len(form_ids)]}")
            for i in range(FORM_DETAIL_READS)
        ])
        await self.pause(context, 50, 150)
        return _summarize(responses)

    async def form_stats(self, context: StepContext) -> StepResult:
        response = await self.api(context).get("/api/v1/forms/stats")
        return StepResult(response.success, response.error)

    async def logout(self, context: StepContext) -> StepResult:
        self.api(context).clear_auth_token()
        context.state.pop("access_token", None)
        return StepResult.ok()


class SmokeWorkload(_HttpWorkload):
    """Anonymous GETs against a fixed list of paths."""

    name = "smoke"
    description = "GET each configured path once per iteration"

    def __init__(
        self,
        base_url: str,
        *,
        paths: Sequence[str] = ("/",),
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
        rng: random.Random | None = None,
        **_: Any,
    ) -> None:
        super().__init__(base_url, timeout_seconds=timeout_seconds, transport=transport, rng=rng)
        self.paths = list(paths)

    def steps(self) -> Sequence[Step]:
        return [Step(f"get {path}", self._getter(path)) for path in self.paths]

    def new_identity(self, user_id: int, iteration: int) -> str:
        return f"smoke.u{user_id}.i{iteration}"

    def _getter(self, path: str):
        async def run(context: StepContext) -> StepResult:
            response = await self.api(context).get(path)
            return StepResult(response.success, response.error)

        return run


def _summarize(responses: Sequence[Any]) -> StepResult:
    failed = [r for r in responses if not r.success]
    if failed:
        return StepResult.failed(
            f"{len(failed)}/{len(responses)} calls failed: {failed[0].error}"
        )
    return StepResult.ok(calls=len(responses))


# Registry of available workloads
WORKLOADS: dict[str, type[_HttpWorkload]] = {
    "tracesource": TraceSourceWorkload,
    "smoke": SmokeWorkload,
}


def get_workload(name: str, base_url: str, **kwargs: Any) -> Workload:
    """
    Get a workload by name.

    Args:
        name: Workload name
        base_url: Target service
        **kwargs: Workload constructor options

    Returns:
        Configured workload instance
    """
    if name not in WORKLOADS:
        raise ValueError(f"Unknown workload: {name}. Available: {list(WORKLOADS.keys())}")

    return WORKLOADS[name](base_url, **kwargs)


def list_workloads() -> list[dict[str, str]]:
    """List available workloads."""
    return [
        {"name": name, "description": cls.description}
        for name, cls in WORKLOADS.items()
    ]
