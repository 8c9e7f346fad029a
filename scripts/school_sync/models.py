"""Value types shared across the pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Optional

SOURCE_NEXQUARE = "nex"
SOURCE_MANAGEBAC = "mb"
SOURCES = (SOURCE_NEXQUARE, SOURCE_MANAGEBAC)

# SyncRun.status
RUN_PENDING = "pending"
RUN_RUNNING = "running"
RUN_COMPLETED = "completed"
RUN_FAILED = "failed"
RUN_CANCELLED = "cancelled"

# SyncRunSchool.status
SCHOOL_PENDING = "pending"
SCHOOL_RUNNING = "running"
SCHOOL_COMPLETED = "completed"
SCHOOL_FAILED = "failed"
SCHOOL_SKIPPED = "skipped"


@dataclass(frozen=True)
class TenantConfig:
    """One school's credentials and routing for one upstream source."""

    config_id: int
    source: str
    school_name: str
    base_url: str
    school_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    api_token: Optional[str] = None
    is_active: bool = True

    @property
    def key(self) -> tuple[str, int]:
        return (self.source, self.config_id)

    @property
    def label(self) -> str:
        return f"{self.school_name} ({self.source})"

    def __repr__(self) -> str:
        # Keep credential material out of logs and tracebacks.
        return (
            f"TenantConfig(source={self.source!r}, config_id={self.config_id!r}, "
            f"school_id={self.school_id!r}, school_name={self.school_name!r})"
        )


@dataclass(frozen=True)
class CachedToken:
    token: str
    expires_at: Optional[float] = None  # epoch seconds; None = never expires

    def is_fresh(self, now: float, refresh_buffer: float) -> bool:
        if self.expires_at is None:
            return True
        return now < self.expires_at - refresh_buffer


@dataclass(frozen=True)
class DateRange:
    start: date
    end: date

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def as_params(self) -> dict[str, str]:
        return {"startDate": self.start.isoformat(), "endDate": self.end.isoformat()}


@dataclass(frozen=True)
class PageRequest:
    offset: int
    limit: int
    params: dict[str, Any] = field(default_factory=dict)
    date_range: Optional[DateRange] = None

    @property
    def page(self) -> int:
        """1-based page number for page-numbered upstreams."""
        return self.offset // self.limit + 1


@dataclass
class StepResult:
    step: str
    fetched: int = 0
    inserted: int = 0
    unresolved: int = 0
    duration_s: float = 0.0


@dataclass
class SyncOptions:
    academic_year: Optional[str] = None
    triggered_by: str = "scheduler"
    schedule_id: Optional[int] = None
    endpoints_nex: Optional[list[str]] = None
    endpoints_mb: Optional[list[str]] = None
    run_refresh: bool = False


@dataclass
class SyncScope:
    """Which tenants a run covers. Resolution is done by scope.ConfigRepository."""

    node_ids: list[str] = field(default_factory=list)
    include_descendants: bool = False
    all: bool = False
    config_ids_nex: Optional[list[int]] = None
    config_ids_mb: Optional[list[int]] = None

    def describe(self) -> str:
        if self.all:
            return "all"
        parts = []
        if self.node_ids:
            parts.append(",".join(self.node_ids))
        if self.config_ids_nex:
            parts.append("nex:" + ",".join(str(i) for i in self.config_ids_nex))
        if self.config_ids_mb:
            parts.append("mb:" + ",".join(str(i) for i in self.config_ids_mb))
        return ";".join(parts)


@dataclass
class SyncRunSchool:
    id: int
    run_id: int
    source: str
    config_id: int
    school_id: str
    school_name: str
    status: str = SCHOOL_PENDING
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


@dataclass
class SyncResult:
    run_id: int
    status: str
    total_schools: int
    schools_succeeded: int
    schools_failed: int
    error_summary: Optional[str] = None
    refreshes: list[Any] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "status": self.status,
            "totalSchools": self.total_schools,
            "schoolsSucceeded": self.schools_succeeded,
            "schoolsFailed": self.schools_failed,
            "errorSummary": self.error_summary,
        }
