"""Per-tenant credential cache.

Tokens are keyed by (source, config_id) and handed out until they come
within the refresh buffer of expiry. Two tasks refreshing the same tenant
at once is harmless: both exchanges succeed and the later write wins.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, Optional

from scripts.school_sync.config import HttpConfig
from scripts.school_sync.errors import AuthError
from scripts.school_sync.http_client import backoff_delay
from scripts.school_sync.models import CachedToken, TenantConfig

if TYPE_CHECKING:
    from scripts.school_sync.sources.base import SourceAdapter

logger = logging.getLogger("school_sync.auth")


@dataclass(frozen=True)
class TokenGrant:
    """What a source's token exchange returns. expires_in=None never expires."""

    token: str
    expires_in: Optional[float] = None


class CredentialCache:
    def __init__(
        self,
        adapters: Mapping[str, "SourceAdapter"],
        config: HttpConfig,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.adapters = adapters
        self.config = config
        self._clock = clock
        self._sleep = sleep
        self._tokens: dict[tuple[str, int], CachedToken] = {}

    async def get_token(self, tenant: TenantConfig, force_refresh: bool = False) -> str:
        cached = self._tokens.get(tenant.key)
        if (
            cached is not None
            and not force_refresh
            and cached.is_fresh(self._clock(), self.config.token_refresh_buffer_s)
        ):
            return cached.token

        grant = await self._exchange(tenant)
        expires_at = None
        if grant.expires_in is not None:
            expires_at = self._clock() + grant.expires_in
        self._tokens[tenant.key] = CachedToken(token=grant.token, expires_at=expires_at)
        return grant.token

    def invalidate(self, tenant: Optional[TenantConfig] = None) -> None:
        """Drop one tenant's token, or every token when tenant is None."""
        if tenant is None:
            self._tokens.clear()
        else:
            self._tokens.pop(tenant.key, None)

    async def _exchange(self, tenant: TenantConfig) -> TokenGrant:
        adapter = self.adapters[tenant.source]
        attempts = max(1, self.config.retry_attempts)
        last_error: Optional[Exception] = None

        for attempt in range(attempts):
            try:
                grant = await asyncio.to_thread(adapter.exchange_token, tenant)
                logger.debug(
                    "Obtained token for %s", tenant.label,
                    extra={"source": tenant.source, "config_id": tenant.config_id},
                )
                return grant
            except AuthError:
                # Configuration problems (missing credentials) never improve on retry.
                raise
            except Exception as exc:
                last_error = exc
                if attempt < attempts - 1:
                    delay = backoff_delay(
                        attempt, self.config.backoff_base_s, self.config.backoff_cap_s
                    )
                    logger.warning(
                        "Token exchange for %s failed (%s), retrying in %.1fs",
                        tenant.label, exc, delay,
                        extra={"source": tenant.source, "config_id": tenant.config_id},
                    )
                    await self._sleep(delay)

        raise AuthError(
            f"Token exchange for {tenant.label} failed after {attempts} attempt(s): {last_error}"
        ) from last_error
