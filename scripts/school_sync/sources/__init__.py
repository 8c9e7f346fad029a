"""Upstream source adapters, keyed by source code."""

from __future__ import annotations

from typing import Optional

from scripts.school_sync.config import HttpConfig
from scripts.school_sync.sources.base import SourceAdapter
from scripts.school_sync.sources.managebac import ManageBacAdapter
from scripts.school_sync.sources.nexquare import NexquareAdapter

ADAPTER_CLASSES: dict[str, type[SourceAdapter]] = {
    NexquareAdapter.SOURCE: NexquareAdapter,
    ManageBacAdapter.SOURCE: ManageBacAdapter,
}


def build_adapters(http_config: Optional[HttpConfig] = None) -> dict[str, SourceAdapter]:
    return {source: cls(http_config) for source, cls in ADAPTER_CLASSES.items()}
