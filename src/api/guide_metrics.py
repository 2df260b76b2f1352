from __future__ import annotations

from datetime import date, datetime, timezone
from typing import List

from fastapi import APIRouter, Depends, Query
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError

from src.api.dependencies import get_guide_metrics_service
from src.schemas.guide_metrics import (
    GuideMetricsQuery,
    MetricsCalculationOptions,
    MetricsPeriod,
    UnifiedMetrics,
)
from src.services.guide_metrics_service import GuideMetricsService
from src.shared.response import Meta, ResponseEnvelope
from src.shared.time import resolve_period_window

router = APIRouter(prefix="/guides", tags=["guide-metrics"])

CALCULATED_SOURCES = (
    "trip_guides,trip_bookings,reviews,guide_wallets,guide_wallet_transactions,"
    "guide_skills,guide_assessments,salary_deductions"
)
PRECOMPUTED_SOURCE = "guide_performance_metrics"


def get_guide_metrics_query(
    period_type: str = Query(default="monthly", pattern="^(monthly|weekly|custom)$"),
    year: int | None = Query(default=None, ge=2000, le=2100),
    month: int | None = Query(default=None, ge=1, le=12),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    include: List[str] | None = Query(default=None),
    calculate_trends: bool = Query(default=True),
    compare_with_previous: bool = Query(default=False),
) -> GuideMetricsQuery:
    try:
        options = MetricsCalculationOptions(
            include=include,
            calculate_trends=calculate_trends,
            compare_with_previous=compare_with_previous,
        )
    except ValidationError as exc:
        raise RequestValidationError(exc.errors(include_url=False, include_context=False)) from exc
    return GuideMetricsQuery(
        period_type=period_type,
        year=year,
        month=month,
        start=start,
        end=end,
        options=options,
    )


@router.get("/{guide_id}/metrics")
def guide_unified_metrics(
    guide_id: str,
    query: GuideMetricsQuery = Depends(get_guide_metrics_query),
    service: GuideMetricsService = Depends(get_guide_metrics_service),
) -> ResponseEnvelope[UnifiedMetrics]:
    period_start, period_end = resolve_period_window(
        query.period_type, query.year, query.month, query.start, query.end
    )
    period = MetricsPeriod(start=period_start, end=period_end, type=query.period_type)
    data = service.calculate_unified_metrics(guide_id, period, query.options)
    meta = Meta(
        as_of_date=date.today().isoformat(),
        source=PRECOMPUTED_SOURCE if data.source == "precomputed" else CALCULATED_SOURCES,
        time_window=query.period_type,
        calculation_version="v1",
        degraded=data.source == "fallback",
        generated_at=datetime.now(timezone.utc).isoformat(),
    )
    return ResponseEnvelope(data=data, pagination=None, meta=meta)
