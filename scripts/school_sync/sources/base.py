"""Abstract base class for upstream source adapters."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from scripts.school_sync.config import HttpConfig
from scripts.school_sync.models import PageRequest, TenantConfig
from scripts.school_sync.resolver import ReferenceSpec
from scripts.school_sync.tables import TableSpec

if TYPE_CHECKING:
    from scripts.school_sync.auth import TokenGrant
    from scripts.school_sync.jobs import IngestionContext

# Step fetch modes
MODE_LIST = "list"  # offset-paginated JSON
MODE_DATE_RANGE = "date_range"  # month-chunked, optionally paginated within each chunk
MODE_FILE = "file"  # paginated CSV/XLSX export
MODE_SINGLE = "single"  # one JSON object


@dataclass
class Mapped:
    """Rows produced by one step's transform, in load order."""

    loads: list[tuple[TableSpec, list[tuple]]] = field(default_factory=list)
    unresolved: int = 0

    def add(self, spec: TableSpec, rows: list[tuple]) -> "Mapped":
        self.loads.append((spec, list(rows)))
        return self

    @property
    def row_count(self) -> int:
        return sum(len(rows) for _, rows in self.loads)


Transform = Callable[["IngestionContext", list[dict]], Awaitable[Mapped]]
ParamsFn = Callable[["IngestionContext"], dict[str, Any]]


@dataclass(frozen=True)
class StepDefinition:
    name: str
    path: str  # may contain {school_id}
    transform: Transform
    mode: str = MODE_LIST
    page_size: Optional[int] = 100  # None: unpaginated
    params: Optional[ParamsFn] = None
    date_params: tuple[str, str] = ("startDate", "endDate")
    wrapper_keys: tuple[str, ...] = ()

    def path_for(self, tenant: TenantConfig) -> str:
        return self.path.format(school_id=tenant.school_id or "")


class SourceAdapter(ABC):
    """Each source declares SOURCE, knows its auth and its ordered steps."""

    SOURCE: str = ""
    SCHOOL_REFS: Optional[ReferenceSpec] = None

    def __init__(self, http_config: Optional[HttpConfig] = None) -> None:
        self.http_config = http_config or HttpConfig()

    @abstractmethod
    def base_url(self, tenant: TenantConfig) -> str:
        """Root URL all step paths are joined onto."""

    def url_for(self, tenant: TenantConfig, path: str) -> str:
        return f"{self.base_url(tenant).rstrip('/')}/{path.lstrip('/')}"

    @abstractmethod
    def auth_headers(self, token: str, expect: str = "json") -> dict[str, str]:
        """Headers carrying the token on a data request."""

    @abstractmethod
    def exchange_token(self, tenant: TenantConfig) -> "TokenGrant":
        """Obtain a token. Blocking; called off the event loop."""

    @abstractmethod
    def page_params(self, page: PageRequest) -> dict[str, Any]:
        """Query parameters that select one page."""

    @abstractmethod
    def steps(self) -> list[StepDefinition]:
        """Ordered ingestion steps for one tenant."""

    def select_steps(self, names: Optional[list[str]] = None) -> list[StepDefinition]:
        """Steps filtered to names (None = all), keeping the defined order."""
        steps = self.steps()
        if not names:
            return steps
        known = {s.name for s in steps}
        unknown = [n for n in names if n not in known]
        if unknown:
            raise ValueError(f"Unknown {self.SOURCE} step(s): {', '.join(unknown)}")
        wanted = set(names)
        return [s for s in steps if s.name in wanted]
