"""
Timed HTTP client.

Every call made through ``ApiClient`` produces exactly one sample in the
phase recorder, whatever the outcome. Failures are classified (timeout,
network, non-2xx, unexpected) and returned, never raised.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any

import httpx

from surge.errors import ErrorKind, describe_failure
from surge.metrics import PhaseRecorder

logger = logging.getLogger("surge.client")

DEFAULT_TIMEOUT_SECONDS = 30.0


@dataclass
class ApiResponse:
    """Result of one timed call."""

    status_code: int
    success: bool
    latency_ms: int
    data: Any = None
    error: str | None = None
    error_kind: ErrorKind | None = None

    def get(self, *path: str) -> Any:
        """Walk nested keys of a JSON object body, returning None when absent."""
        node = self.data
        for key in path:
            if not isinstance(node, dict):
                return None
            node = node.get(key)
        return node


class ApiClient:
    """
    httpx-based client that records a sample per request.

    Usage:
        async with ApiClient(base_url, recorder) as api:
            response = await api.post("/api/v1/auth/login", json={...})
            if response.success:
                api.set_auth_token(response.get("token", "accessToken"))
    """

    def __init__(
        self,
        base_url: str,
        recorder: PhaseRecorder,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.recorder = recorder
        self.timeout_seconds = timeout_seconds
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    async def __aenter__(self) -> ApiClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def set_auth_token(self, token: str) -> None:
        self._client.headers["Authorization"] = f"Bearer {token}"

    def clear_auth_token(self) -> None:
        self._client.headers.pop("Authorization", None)

    async def get(self, endpoint: str) -> ApiResponse:
        return await self.request("GET", endpoint)

    async def post(self, endpoint: str, json: Any | None = None) -> ApiResponse:
        return await self.request("POST", endpoint, json=json)

    async def request(self, method: str, endpoint: str, json: Any | None = None) -> ApiResponse:
        """
        Issue one request and record it.

        The call is bounded by the client's fixed timeout, independently of
        any phase deadline.
        """
        method = method.upper()
        status_code = 0
        success = False
        data: Any = None
        error: str | None = None
        kind: ErrorKind | None = None

        started = time.perf_counter()
        try:
            response = await self._client.request(method, endpoint, json=json)
            status_code = response.status_code
            success = response.is_success
            if success:
                data = _decode_body(response)
            else:
                kind = ErrorKind.PROTOCOL
                error = describe_failure(
                    kind,
                    status_code=status_code,
                    reason=response.reason_phrase,
                    body=response.text,
                )
        except httpx.TimeoutException:
            kind = ErrorKind.TIMEOUT
            error = describe_failure(kind)
        except httpx.TransportError as e:
            kind = ErrorKind.NETWORK
            error = describe_failure(kind, exc=e)
        except Exception as e:
            kind = ErrorKind.UNEXPECTED
            error = describe_failure(kind, exc=e)
        latency_ms = int((time.perf_counter() - started) * 1000)

        self.recorder.record(endpoint, method, status_code, latency_ms, success, error)
        if error:
            logger.debug(f"{method} {endpoint} failed after {latency_ms}ms: {error}")

        return ApiResponse(
            status_code=status_code,
            success=success,
            latency_ms=latency_ms,
            data=data,
            error=error,
            error_kind=kind,
        )


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text
