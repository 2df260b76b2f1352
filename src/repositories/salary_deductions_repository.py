from __future__ import annotations

from typing import List, Optional

from src.core.branch_scope import BranchScope
from src.core.supabase import SupabaseClient
from src.models.guide_metrics import SalaryDeductionRecord
from src.repositories.query_filters import MAX_QUERY_ROWS, window_filters
from src.schemas.guide_metrics import MetricsPeriod


class SalaryDeductionsRepository:
    def __init__(self, client: Optional[SupabaseClient] = None) -> None:
        self.client = client or SupabaseClient()

    def list_deductions(
        self, guide_id: str, period: MetricsPeriod, scope: BranchScope
    ) -> List[SalaryDeductionRecord]:
        rows = self.client.select(
            table="salary_deductions",
            select="id,amount,deduction_type,created_at",
            filters=scope.apply(
                [
                    ("guide_id", f"eq.{guide_id}"),
                    *window_filters("created_at", period.start, period.end),
                ]
            ),
            limit=MAX_QUERY_ROWS,
        )
        return [SalaryDeductionRecord.model_validate(row) for row in rows]
