from __future__ import annotations

from typing import Any, Dict, List, Optional

from src.core.supabase import SupabaseClient
from src.models.guide_metrics import PerformanceSnapshotRecord
from src.schemas.guide_metrics import MetricsPeriod

SNAPSHOT_SELECT = (
    "guide_id,period_type,period_start,period_end,total_trips,completed_trips,cancelled_trips,"
    "total_earnings,average_per_trip,average_rating,total_ratings,overall_score,performance_tier,"
    "on_time_rate,skills_improved,assessments_completed,customer_satisfaction_score"
)


class PerformanceSnapshotsRepository:
    """Precomputed per-period rows in guide_performance_metrics."""

    def __init__(self, client: Optional[SupabaseClient] = None) -> None:
        self.client = client or SupabaseClient()

    def get_snapshot(self, guide_id: str, period: MetricsPeriod) -> Optional[PerformanceSnapshotRecord]:
        row = self.client.select_first(
            table="guide_performance_metrics",
            select=SNAPSHOT_SELECT,
            filters=[
                ("guide_id", f"eq.{guide_id}"),
                ("period_type", f"eq.{period.type}"),
                ("period_start", f"eq.{period.start.date().isoformat()}"),
                ("period_end", f"eq.{period.last_day.isoformat()}"),
            ],
        )
        return PerformanceSnapshotRecord.model_validate(row) if row else None

    def get_satisfaction_score(self, guide_id: str, period: MetricsPeriod) -> Optional[float]:
        row = self.client.select_first(
            table="guide_performance_metrics",
            select="customer_satisfaction_score",
            filters=[
                ("guide_id", f"eq.{guide_id}"),
                ("period_start", f"gte.{period.start.date().isoformat()}"),
                ("period_end", f"lte.{period.last_day.isoformat()}"),
                ("customer_satisfaction_score", "not.is.null"),
            ],
            order="period_start.desc",
        )
        if not row:
            return None
        return float(row["customer_satisfaction_score"])

    def upsert_snapshots(self, rows: List[Dict[str, Any]]) -> List[PerformanceSnapshotRecord]:
        if not rows:
            return []
        inserted = self.client.insert(
            table="guide_performance_metrics",
            payload=rows,
            upsert=True,
            on_conflict="guide_id,period_type,period_start",
        )
        return [PerformanceSnapshotRecord.model_validate(row) for row in inserted]
