from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Dict, List, Optional

from pydantic import ConfigDict, Field, field_validator, model_validator

from src.shared.base import BaseSchema, FrozenSchema
from src.shared.time import ensure_utc

BASE_DIMENSIONS = ("trips", "earnings", "ratings", "performance", "development")
EXTENDED_DIMENSIONS = (
    "customerSatisfaction",
    "efficiency",
    "financial",
    "quality",
    "growth",
    "comparative",
)
METRICS_DIMENSIONS = BASE_DIMENSIONS + EXTENDED_DIMENSIONS + ("trends",)
DEFAULT_INCLUDE = ("trips", "earnings", "ratings", "performance", "development", "trends")
RATING_BUCKETS = ("1", "2", "3", "4", "5")


class MetricsPeriod(FrozenSchema):
    start: datetime
    end: datetime
    type: str = Field(default="monthly", pattern="^(monthly|weekly|custom)$")

    @field_validator("start", "end")
    @classmethod
    def _normalize_timezone(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _check_ordering(self) -> "MetricsPeriod":
        if self.start >= self.end:
            raise ValueError("period start must be before period end")
        return self

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def last_day(self) -> date:
        # Stored snapshots key periods by their inclusive last calendar day.
        return (self.end - timedelta(microseconds=1)).date()


class MetricsCalculationOptions(BaseSchema):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    include: Optional[List[str]] = None
    calculate_trends: bool = True
    compare_with_previous: bool = False

    @field_validator("include")
    @classmethod
    def _check_dimensions(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return None
        unknown = sorted(set(value) - set(METRICS_DIMENSIONS))
        if unknown:
            raise ValueError(f"Unsupported metrics dimensions: {', '.join(unknown)}")
        return value

    def resolved_include(self) -> List[str]:
        return list(self.include) if self.include is not None else list(DEFAULT_INCLUDE)


class TrendDelta(FrozenSchema):
    value: float
    direction: str = Field(pattern="^(up|down|stable)$")


class TripsMetrics(FrozenSchema):
    total: int = 0
    completed: int = 0
    cancelled: int = 0
    trend: Optional[TrendDelta] = None


class EarningsMetrics(FrozenSchema):
    total: float = 0.0
    average: float = 0.0
    by_trip: int = 0
    trend: Optional[TrendDelta] = None


class RatingsMetrics(FrozenSchema):
    average: Optional[float] = None
    total: int = 0
    trend: List[int] = Field(default_factory=list)
    distribution: Optional[Dict[str, int]] = None


class PerformanceMetrics(FrozenSchema):
    score: float = 0.0
    tier: str = "needs_improvement"
    on_time_rate: Optional[float] = None
    percentile: int = 50


class DevelopmentMetrics(FrozenSchema):
    skills_improved: int = 0
    assessments_completed: int = 0


class CustomerSatisfactionMetrics(FrozenSchema):
    response_rate: Optional[float] = None
    repeat_customer_rate: Optional[float] = None
    complaint_resolution_rate: Optional[float] = None
    satisfaction_score: Optional[float] = None


class EfficiencyMetrics(FrozenSchema):
    avg_trip_duration: Optional[float] = None
    guest_to_trip_ratio: Optional[float] = None
    revenue_per_guest: Optional[float] = None
    utilization_rate: Optional[float] = None
    avg_response_time: Optional[float] = None


class FinancialMetrics(FrozenSchema):
    net_earnings: float = 0.0
    penalty_impact: float = 0.0
    savings_rate: Optional[float] = None
    withdrawal_frequency: int = 0
    earnings_trend: List[float] = Field(default_factory=list)


class QualityMetrics(FrozenSchema):
    on_time_completion_rate: Optional[float] = None
    no_show_rate: Optional[float] = None
    documentation_completion_rate: Optional[float] = None
    issue_resolution_rate: Optional[float] = None
    late_check_in_rate: Optional[float] = None


class GrowthMomentum(FrozenSchema):
    trips: Optional[float] = None
    earnings: Optional[float] = None
    ratings: Optional[float] = None


class GrowthMetrics(FrozenSchema):
    mom_growth: GrowthMomentum = Field(default_factory=GrowthMomentum)
    skill_progression_rate: Optional[float] = None
    certification_completion_rate: Optional[float] = None
    assessment_improvement: Optional[float] = None


class TopPerformerGap(FrozenSchema):
    trips: Optional[float] = None
    earnings: Optional[float] = None
    ratings: Optional[float] = None


class ComparativeMetrics(FrozenSchema):
    peer_ranking: Optional[float] = None
    peer_count: int = 0
    top_percent: Optional[int] = None
    percentile_improvement: Optional[float] = None
    top_performer_gap: TopPerformerGap = Field(default_factory=TopPerformerGap)
    market_share: Optional[float] = None


class UnifiedMetrics(FrozenSchema):
    period: MetricsPeriod
    trips: TripsMetrics = Field(default_factory=TripsMetrics)
    earnings: EarningsMetrics = Field(default_factory=EarningsMetrics)
    ratings: RatingsMetrics = Field(default_factory=RatingsMetrics)
    performance: PerformanceMetrics = Field(default_factory=PerformanceMetrics)
    development: DevelopmentMetrics = Field(default_factory=DevelopmentMetrics)
    # None means "not requested"; a requested dimension that found nothing carries null fields instead.
    customer_satisfaction: Optional[CustomerSatisfactionMetrics] = None
    efficiency: Optional[EfficiencyMetrics] = None
    financial: Optional[FinancialMetrics] = None
    quality: Optional[QualityMetrics] = None
    growth: Optional[GrowthMetrics] = None
    comparative: Optional[ComparativeMetrics] = None
    dimensions: List[str] = Field(default_factory=list)
    source: str = Field(default="calculated", pattern="^(calculated|precomputed|fallback)$")


class GuideMetricsQuery(BaseSchema):
    # Keep query parameter names in snake_case for API contract consistency.
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    period_type: str = Field(default="monthly", pattern="^(monthly|weekly|custom)$")
    year: Optional[int] = Field(default=None, ge=2000, le=2100)
    month: Optional[int] = Field(default=None, ge=1, le=12)
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    options: MetricsCalculationOptions = Field(default_factory=MetricsCalculationOptions)
