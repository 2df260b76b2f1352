from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from src.core.branch_scope import BranchScope
from src.core.supabase import SupabaseClient
from src.models.guide_metrics import AssessmentRecord, SkillRecord
from src.repositories.query_filters import MAX_QUERY_ROWS, window_filters

SKILL_SELECT = "id,level:current_level,validated_at,updated_at"


class GuideDevelopmentRepository:
    def __init__(self, client: Optional[SupabaseClient] = None) -> None:
        self.client = client or SupabaseClient()

    def list_skills_updated(
        self,
        guide_id: str,
        start: datetime,
        end: datetime,
        scope: BranchScope,
        min_level_exclusive: Optional[int] = None,
    ) -> List[SkillRecord]:
        filters = [
            ("guide_id", f"eq.{guide_id}"),
            *window_filters("updated_at", start, end),
        ]
        if min_level_exclusive is not None:
            filters.append(("current_level", f"gt.{min_level_exclusive}"))
        rows = self.client.select(
            table="guide_skills",
            select=SKILL_SELECT,
            filters=scope.apply(filters),
            limit=MAX_QUERY_ROWS,
        )
        return [SkillRecord.model_validate(row) for row in rows]

    def list_skills(self, guide_id: str, scope: BranchScope) -> List[SkillRecord]:
        rows = self.client.select(
            table="guide_skills",
            select=SKILL_SELECT,
            filters=scope.apply([("guide_id", f"eq.{guide_id}")]),
            limit=MAX_QUERY_ROWS,
        )
        return [SkillRecord.model_validate(row) for row in rows]

    def list_completed_assessments(
        self,
        guide_id: str,
        start: datetime,
        end: datetime,
        limit: Optional[int] = None,
    ) -> List[AssessmentRecord]:
        # guide_assessments has no branch column; callers pass a guide whose scope is already resolved.
        rows = self.client.select(
            table="guide_assessments",
            select="id,status,score,completed_at",
            filters=[
                ("guide_id", f"eq.{guide_id}"),
                ("status", "eq.completed"),
                *window_filters("completed_at", start, end),
            ],
            limit=limit if limit is not None else MAX_QUERY_ROWS,
            order="completed_at.desc",
        )
        return [AssessmentRecord.model_validate(row) for row in rows]
