from __future__ import annotations

from typing import List, Optional

from src.core.branch_scope import BranchScope
from src.core.supabase import SupabaseClient
from src.models.guide_metrics import GuideScopeRecord


class GuidesRepository:
    def __init__(self, client: Optional[SupabaseClient] = None) -> None:
        self.client = client or SupabaseClient()

    def get_guide_scope(self, guide_id: str) -> Optional[GuideScopeRecord]:
        row = self.client.select_first(
            table="users",
            select="id,branch_id,role",
            filters=[("id", f"eq.{guide_id}")],
        )
        return GuideScopeRecord.model_validate(row) if row else None

    def list_branch_guide_ids(self, scope: BranchScope, limit: int) -> List[str]:
        rows = self.client.select(
            table="users",
            select="id",
            filters=scope.apply([("role", "eq.guide")]),
            limit=limit,
            order="id.asc",
        )
        return [str(row["id"]) for row in rows if row.get("id")]
