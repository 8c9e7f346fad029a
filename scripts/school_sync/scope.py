"""Resolve a SyncScope into the tenant configs a run covers.

Explicit config ids win over nodes and `all` for their source. Node scopes
go through admin.node_schools, optionally expanded to descendant nodes.
Credential columns may hold secret references; they are resolved here so
the rest of the pipeline only sees plain values.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from scripts.school_sync.db import Database
from scripts.school_sync.models import SOURCE_MANAGEBAC, SOURCE_NEXQUARE, SyncScope, TenantConfig
from scripts.school_sync.secrets import resolve_secret

logger = logging.getLogger("school_sync.scope")

_MB_COLUMNS = "mb.id, mb.api_token, mb.base_url, mb.school_name, mb.school_id"
_NEX_COLUMNS = "nsc.id, nsc.client_id, nsc.client_secret, nsc.domain_url, nsc.school_name, nsc.school_id"


def _mb_tenant(row: dict[str, Any]) -> TenantConfig:
    return TenantConfig(
        config_id=int(row["id"]),
        source=SOURCE_MANAGEBAC,
        school_name=row.get("school_name") or f"mb-{row['id']}",
        base_url=row.get("base_url") or "",
        school_id=str(row["school_id"]).strip() if row.get("school_id") is not None else None,
        api_token=resolve_secret(row.get("api_token")),
    )


def _nex_tenant(row: dict[str, Any]) -> TenantConfig:
    return TenantConfig(
        config_id=int(row["id"]),
        source=SOURCE_NEXQUARE,
        school_name=row.get("school_name") or f"nex-{row['id']}",
        base_url=row.get("domain_url") or "",
        school_id=(row.get("school_id") or "").strip() or None,
        client_id=resolve_secret(row.get("client_id")),
        client_secret=resolve_secret(row.get("client_secret")),
    )


class ConfigRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def resolve(self, scope: SyncScope) -> list[TenantConfig]:
        """ManageBac tenants first, then Nexquare, each in configured order."""
        return await asyncio.to_thread(self._resolve, scope)

    def _resolve(self, scope: SyncScope) -> list[TenantConfig]:
        if scope.config_ids_mb or scope.config_ids_nex:
            mb = self._by_ids_mb(scope.config_ids_mb) if scope.config_ids_mb else []
            nex = self._by_ids_nex(scope.config_ids_nex) if scope.config_ids_nex else []
        elif scope.all:
            mb = self.db.fetch_all(
                f"SELECT {_MB_COLUMNS} FROM mb.managebac_school_configs mb "
                "WHERE mb.is_active ORDER BY mb.country, mb.school_name"
            )
            nex = self.db.fetch_all(
                f"SELECT {_NEX_COLUMNS} FROM nex.nexquare_school_configs nsc "
                "WHERE nsc.is_active ORDER BY nsc.country, nsc.school_name"
            )
        elif scope.node_ids:
            nodes = self._expand_nodes(scope.node_ids) if scope.include_descendants else list(scope.node_ids)
            mb, nex = self._by_nodes(nodes)
        else:
            return []

        tenants = [_mb_tenant(r) for r in mb] + [_nex_tenant(r) for r in nex]
        logger.info("Scope %s resolved to %d tenant config(s)", scope.describe() or "-", len(tenants))
        return tenants

    def _by_ids_mb(self, ids: list[int]) -> list[dict[str, Any]]:
        return self.db.fetch_all(
            f"SELECT {_MB_COLUMNS} FROM mb.managebac_school_configs mb "
            "WHERE mb.id = ANY(%s) AND mb.is_active ORDER BY mb.school_name",
            (list(ids),),
        )

    def _by_ids_nex(self, ids: list[int]) -> list[dict[str, Any]]:
        return self.db.fetch_all(
            f"SELECT {_NEX_COLUMNS} FROM nex.nexquare_school_configs nsc "
            "WHERE nsc.id = ANY(%s) AND nsc.is_active ORDER BY nsc.school_name",
            (list(ids),),
        )

    def _expand_nodes(self, node_ids: list[str]) -> list[str]:
        rows = self.db.fetch_all(
            """WITH RECURSIVE node_tree AS (
                   SELECT node_id FROM admin.nodes WHERE node_id = ANY(%s)
                   UNION
                   SELECT n.node_id FROM admin.nodes n
                   JOIN node_tree nt ON n.parent_node_id = nt.node_id
               )
               SELECT DISTINCT node_id FROM node_tree""",
            (list(node_ids),),
        )
        return [r["node_id"] for r in rows] or list(node_ids)

    def _by_nodes(self, node_ids: list[str]) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        mb = self.db.fetch_all(
            f"""SELECT DISTINCT {_MB_COLUMNS}, mb.country
                FROM mb.managebac_school_configs mb
                JOIN admin.node_schools ns
                  ON ns.school_source = 'mb' AND ns.school_id = mb.school_id::text
                WHERE mb.is_active AND mb.school_id IS NOT NULL
                  AND ns.node_id = ANY(%s)
                ORDER BY mb.country, mb.school_name""",
            (list(node_ids),),
        )
        nex = self.db.fetch_all(
            f"""SELECT DISTINCT {_NEX_COLUMNS}, nsc.country
                FROM nex.nexquare_school_configs nsc
                JOIN admin.node_schools ns
                  ON ns.school_source = 'nex' AND ns.school_id = nsc.school_id
                WHERE nsc.is_active AND nsc.school_id IS NOT NULL
                  AND ns.node_id = ANY(%s)
                ORDER BY nsc.country, nsc.school_name""",
            (list(node_ids),),
        )
        return mb, nex
