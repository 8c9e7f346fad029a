"""Retrying HTTP client shared by every tenant task.

Each attempt is classified into an outcome value (Ok, Retryable, Fatal) and
an explicit loop consumes the outcomes. requests is synchronous, so every
send is dispatched with asyncio.to_thread and other tenants keep running
while one waits on the network.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, Union

import requests

from scripts.school_sync.config import HttpConfig
from scripts.school_sync.errors import TransientNetworkError, UpstreamError
from scripts.school_sync.models import TenantConfig

if TYPE_CHECKING:
    from scripts.school_sync.auth import CredentialCache
    from scripts.school_sync.sources.base import SourceAdapter

logger = logging.getLogger("school_sync.http")

EXPECT_JSON = "json"
EXPECT_FILE = "file"


def backoff_delay(attempt: int, base_seconds: float = 1.0, cap_seconds: float = 60.0) -> float:
    """Exponential backoff for a zero-based attempt number, capped."""
    return min(base_seconds * (2 ** attempt), cap_seconds)


@dataclass(frozen=True)
class UpstreamRequest:
    path: str
    params: dict[str, Any] = field(default_factory=dict)
    method: str = "GET"
    expect: str = EXPECT_JSON


@dataclass(frozen=True)
class FileResponse:
    content: bytes
    content_type: str = ""


@dataclass(frozen=True)
class Ok:
    payload: Any


@dataclass(frozen=True)
class Retryable:
    error: Exception


@dataclass(frozen=True)
class Fatal:
    error: Exception


Outcome = Union[Ok, Retryable, Fatal]


def classify_response(resp: requests.Response, expect: str = EXPECT_JSON) -> Outcome:
    """Turn one HTTP response into an outcome. 401 is handled by the caller."""
    if not 200 <= resp.status_code < 300:
        return Retryable(UpstreamError(resp.status_code, resp.text, resp.url))

    if expect == EXPECT_FILE:
        return Ok(FileResponse(
            content=resp.content or b"",
            content_type=resp.headers.get("Content-Type", ""),
        ))

    if not resp.content:
        return Ok(None)
    try:
        return Ok(resp.json())
    except ValueError:
        return Fatal(UpstreamError(
            resp.status_code, f"undecodable JSON body: {resp.text}", resp.url
        ))


class RetryingHttpClient:
    """Executes upstream requests for any tenant.

    One requests.Session is kept per tenant so connection reuse never
    crosses tenant boundaries.
    """

    def __init__(
        self,
        adapters: Mapping[str, "SourceAdapter"],
        credentials: "CredentialCache",
        config: HttpConfig,
        session_factory: Callable[[], requests.Session] = requests.Session,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.adapters = adapters
        self.credentials = credentials
        self.config = config
        self._session_factory = session_factory
        self._sessions: dict[tuple[str, int], requests.Session] = {}
        self._sleep = sleep

    def _session(self, tenant: TenantConfig) -> requests.Session:
        session = self._sessions.get(tenant.key)
        if session is None:
            session = self._session_factory()
            self._sessions[tenant.key] = session
        return session

    def close(self) -> None:
        for session in self._sessions.values():
            session.close()
        self._sessions.clear()

    def _send(self, tenant: TenantConfig, request: UpstreamRequest, token: str) -> requests.Response:
        adapter = self.adapters[tenant.source]
        return self._session(tenant).request(
            request.method,
            adapter.url_for(tenant, request.path),
            params=request.params or None,
            headers=adapter.auth_headers(token, request.expect),
            timeout=self.config.timeout_s,
        )

    async def execute(self, tenant: TenantConfig, request: UpstreamRequest) -> Any:
        """Run one logical request with retries. Returns the decoded payload.

        A 401 forces one token refresh and one immediate retry that does not
        count against the retry budget; later 401s take the generic path.
        """
        token = await self.credentials.get_token(tenant)
        attempts = max(1, self.config.retry_attempts)
        refreshed = False
        attempt = 0

        while True:
            try:
                resp = await asyncio.to_thread(self._send, tenant, request, token)
            except requests.RequestException as exc:
                outcome: Outcome = Retryable(
                    TransientNetworkError(f"{request.method} {request.path}: {exc}")
                )
            else:
                if resp.status_code == 401 and not refreshed:
                    refreshed = True
                    logger.warning(
                        "401 from %s, refreshing token and retrying once",
                        request.path,
                        extra={"source": tenant.source, "config_id": tenant.config_id},
                    )
                    token = await self.credentials.get_token(tenant, force_refresh=True)
                    continue
                outcome = classify_response(resp, request.expect)

            if isinstance(outcome, Ok):
                return outcome.payload
            if isinstance(outcome, Fatal):
                raise outcome.error

            attempt += 1
            if attempt >= attempts:
                raise outcome.error
            delay = backoff_delay(
                attempt - 1, self.config.backoff_base_s, self.config.backoff_cap_s
            )
            logger.warning(
                "Request to %s failed (%s), retrying in %.1fs (attempt %d/%d)",
                request.path, outcome.error, delay, attempt, attempts,
                extra={"source": tenant.source, "config_id": tenant.config_id},
            )
            await self._sleep(delay)
