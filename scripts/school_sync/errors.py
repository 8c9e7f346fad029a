"""Error taxonomy for the sync pipeline.

Unresolved foreign keys are deliberately absent: they are counted on
StepResult.unresolved and loaded as NULL.
"""

from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """Base class for pipeline errors."""


class AuthError(SyncError):
    """Token exchange or refresh failed. Fatal for the tenant's job."""


class UpstreamError(SyncError):
    """Upstream answered with a non-2xx status or an unusable body."""

    def __init__(self, status: int, body: str = "", url: str = "") -> None:
        self.status = status
        self.body = (body or "")[:500]
        self.url = url
        where = f" from {url}" if url else ""
        super().__init__(f"HTTP {status}{where}: {self.body[:200]}")


class TransientNetworkError(SyncError):
    """Connection-level failure (refused, reset, timeout)."""


class LoadError(SyncError):
    """A bulk load failed; the whole load_batch transaction was rolled back."""

    def __init__(self, table: str, cause: Optional[BaseException] = None) -> None:
        self.table = table
        self.cause = cause
        super().__init__(f"Bulk load into {table} failed: {cause}")


class SyncCancelledError(SyncError):
    """Cooperative cancellation was observed between ingestion steps."""


class RefreshError(SyncError):
    """A downstream refresh procedure failed; later procedures were not run."""

    def __init__(self, step: str, cause: Optional[BaseException] = None) -> None:
        self.step = step
        self.cause = cause
        super().__init__(f"Refresh step {step} failed: {cause}")
