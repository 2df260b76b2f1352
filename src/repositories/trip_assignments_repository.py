from __future__ import annotations

from typing import List, Optional

from src.core.branch_scope import BranchScope
from src.core.supabase import SupabaseClient
from src.models.guide_metrics import TripAssignmentRecord
from src.repositories.query_filters import MAX_QUERY_ROWS, window_filters
from src.schemas.guide_metrics import MetricsPeriod

ASSIGNMENT_SELECT = (
    "trip_id,guide_id,guide_role,check_in_at,check_out_at,is_late,fee_amount,documentation_uploaded,"
    "trip:trips(status,guest_count,scheduled_start_at,scheduled_end_at)"
)


class TripAssignmentsRepository:
    def __init__(self, client: Optional[SupabaseClient] = None) -> None:
        self.client = client or SupabaseClient()

    def list_checked_out(
        self, guide_id: str, period: MetricsPeriod, scope: BranchScope
    ) -> List[TripAssignmentRecord]:
        """Assignments finished inside the period, in query order (trip ids stay positional)."""
        filters = [
            ("guide_id", f"eq.{guide_id}"),
            ("check_in_at", "not.is.null"),
            *window_filters("check_out_at", period.start, period.end),
        ]
        rows = self.client.select(
            table="trip_guides",
            select=ASSIGNMENT_SELECT,
            filters=scope.apply(filters),
            limit=MAX_QUERY_ROWS,
        )
        return [TripAssignmentRecord.model_validate(row) for row in rows]

    def list_checked_in(
        self,
        guide_id: str,
        period: MetricsPeriod,
        scope: BranchScope,
        require_check_out: bool = True,
    ) -> List[TripAssignmentRecord]:
        filters = [
            ("guide_id", f"eq.{guide_id}"),
            *window_filters("check_in_at", period.start, period.end),
        ]
        if require_check_out:
            filters.append(("check_out_at", "not.is.null"))
        rows = self.client.select(
            table="trip_guides",
            select=ASSIGNMENT_SELECT,
            filters=scope.apply(filters),
            limit=MAX_QUERY_ROWS,
        )
        return [TripAssignmentRecord.model_validate(row) for row in rows]

    def list_branch_checked_in(
        self, period: MetricsPeriod, scope: BranchScope
    ) -> List[TripAssignmentRecord]:
        filters = [
            *window_filters("check_in_at", period.start, period.end),
            ("check_out_at", "not.is.null"),
        ]
        rows = self.client.select(
            table="trip_guides",
            select="trip_id,guide_id,is_late",
            filters=scope.apply(filters),
            limit=MAX_QUERY_ROWS,
        )
        return [TripAssignmentRecord.model_validate(row) for row in rows]
