from __future__ import annotations

import logging
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FuturesTimeoutError
from threading import Event, Lock, Thread
from typing import Any, Dict, FrozenSet, List, Optional, Set

import httpx

from src.core.config import Settings, get_settings
from src.core.errors import CalculationCancelled, ScopeResolutionError
from src.models.guide_metrics import PerformanceSnapshotRecord
from src.repositories.performance_snapshots_repository import PerformanceSnapshotsRepository
from src.schemas.guide_metrics import (
    BASE_DIMENSIONS,
    EXTENDED_DIMENSIONS,
    DevelopmentMetrics,
    EarningsMetrics,
    MetricsCalculationOptions,
    MetricsPeriod,
    PerformanceMetrics,
    RatingsMetrics,
    TripsMetrics,
    UnifiedMetrics,
)
from src.services.branch_scope_service import BranchScopeResolver
from src.services.guide_comparison_service import (
    GuideComparisonService,
    build_trend_delta,
    get_previous_period,
)
from src.services.guide_metrics_calculator import GuideMetricsCalculator, tier_for_score

logger = logging.getLogger(__name__)

# Dimensions whose calculation reads other dimensions' results.
DIMENSION_DEPENDENCIES: Dict[str, FrozenSet[str]] = {
    "performance": frozenset({"trips", "earnings", "ratings"}),
    "efficiency": frozenset({"trips", "earnings"}),
    "financial": frozenset({"earnings"}),
    "growth": frozenset({"trips", "earnings", "ratings"}),
    "comparative": frozenset({"trips", "earnings", "ratings"}),
}
PREVIOUS_PERIOD_INCLUDE = ["trips", "earnings", "ratings", "development"]
PEER_INCLUDE = ["trips", "earnings", "ratings"]
# Stored snapshots only carry the base dimensions.
PRECOMPUTED_DIMENSIONS = frozenset(BASE_DIMENSIONS) | {"trends"}


def build_default_snapshot(period: MetricsPeriod) -> UnifiedMetrics:
    """The zero/neutral snapshot served whenever calculation cannot complete."""
    return UnifiedMetrics(period=period, source="fallback")


def snapshot_to_record_row(guide_id: str, metrics: UnifiedMetrics) -> Dict[str, Any]:
    """A guide_performance_metrics row that ``snapshot_from_record`` reads back."""
    period = metrics.period
    return {
        "guide_id": guide_id,
        "period_type": period.type,
        "period_start": period.start.date().isoformat(),
        "period_end": period.last_day.isoformat(),
        "total_trips": metrics.trips.total,
        "completed_trips": metrics.trips.completed,
        "cancelled_trips": metrics.trips.cancelled,
        "total_earnings": metrics.earnings.total,
        "average_per_trip": metrics.earnings.average,
        "average_rating": metrics.ratings.average,
        "total_ratings": metrics.ratings.total,
        "overall_score": metrics.performance.score,
        "performance_tier": metrics.performance.tier,
        "on_time_rate": metrics.performance.on_time_rate,
        "skills_improved": metrics.development.skills_improved,
        "assessments_completed": metrics.development.assessments_completed,
    }


def snapshot_from_record(record: PerformanceSnapshotRecord, period: MetricsPeriod) -> UnifiedMetrics:
    total_ratings = record.total_ratings or 0
    score = min(max(record.overall_score or 0.0, 0.0), 100.0)
    return UnifiedMetrics(
        period=period,
        trips=TripsMetrics(
            total=record.total_trips or 0,
            completed=record.completed_trips or 0,
            cancelled=record.cancelled_trips or 0,
        ),
        earnings=EarningsMetrics(
            total=record.total_earnings or 0.0,
            average=record.average_per_trip or 0.0,
            # Transaction counts are not stored with snapshots.
            by_trip=0,
        ),
        ratings=RatingsMetrics(
            average=record.average_rating if total_ratings else None,
            total=total_ratings,
        ),
        performance=PerformanceMetrics(
            score=score,
            tier=record.performance_tier or tier_for_score(score),
            on_time_rate=record.on_time_rate,
        ),
        development=DevelopmentMetrics(
            skills_improved=record.skills_improved or 0,
            assessments_completed=record.assessments_completed or 0,
        ),
        dimensions=list(BASE_DIMENSIONS),
        source="precomputed",
    )


_inflight_lock = Lock()
_inflight: Set[Event] = set()


def cancel_inflight_calculations() -> None:
    """Signal every running calculation to stop at its next checkpoint."""
    with _inflight_lock:
        pending = list(_inflight)
    for cancelled in pending:
        cancelled.set()


def _raise_if_cancelled(cancelled: Optional[Event], guide_id: str) -> None:
    if cancelled is not None and cancelled.is_set():
        raise CalculationCancelled(f"Metrics calculation for guide {guide_id} abandoned")


class GuideMetricsService:
    def __init__(
        self,
        scope_resolver: BranchScopeResolver,
        calculator: GuideMetricsCalculator,
        comparison: GuideComparisonService,
        snapshots_repository: PerformanceSnapshotsRepository,
        settings: Optional[Settings] = None,
    ) -> None:
        self.scope_resolver = scope_resolver
        self.calculator = calculator
        self.comparison = comparison
        self.snapshots_repository = snapshots_repository
        self.settings = settings or get_settings()

    def calculate_unified_metrics(
        self,
        guide_id: str,
        period: MetricsPeriod,
        options: Optional[MetricsCalculationOptions] = None,
        recursion_guard: bool = False,
    ) -> UnifiedMetrics:
        """Compute the metrics snapshot for one guide and period.

        Never raises for data or infrastructure problems: those produce the
        default snapshot. ``ScopeResolutionError`` is the only error that
        reaches the caller. Nested calls (previous period, peers) pass
        ``recursion_guard=True``, which runs them inline and disables any
        further previous-period or peer comparison.

        Top-level calls run on their own worker thread. When the timeout
        expires the caller gets the default snapshot and the abandoned work
        stops at its next dimension or peer boundary.
        """
        resolved_options = options or MetricsCalculationOptions()
        if recursion_guard:
            return self._calculate_or_default(guide_id, period, resolved_options, True, None)

        cancelled = Event()
        future: Future[UnifiedMetrics] = Future()

        def run() -> None:
            try:
                metrics = self._calculate_or_default(guide_id, period, resolved_options, False, cancelled)
                future.set_result(metrics)
            except CalculationCancelled:
                logger.debug("Abandoned metrics calculation for guide %s stopped", guide_id)
                future.set_result(build_default_snapshot(period))
            except Exception as exc:
                future.set_exception(exc)
            finally:
                with _inflight_lock:
                    _inflight.discard(cancelled)

        with _inflight_lock:
            _inflight.add(cancelled)
        Thread(target=run, name=f"guide-metrics-{guide_id}", daemon=True).start()
        try:
            return future.result(timeout=self.settings.metrics_timeout_seconds)
        except FuturesTimeoutError:
            cancelled.set()
            logger.error(
                "Timed out after %.1fs calculating metrics for guide %s (%s..%s, %s)",
                self.settings.metrics_timeout_seconds,
                guide_id,
                period.start.isoformat(),
                period.end.isoformat(),
                period.type,
            )
            return build_default_snapshot(period)

    def _calculate_or_default(
        self,
        guide_id: str,
        period: MetricsPeriod,
        options: MetricsCalculationOptions,
        recursion_guard: bool,
        cancelled: Optional[Event],
    ) -> UnifiedMetrics:
        try:
            return self._calculate(guide_id, period, options, recursion_guard, cancelled)
        except (ScopeResolutionError, CalculationCancelled):
            raise
        except Exception:
            logger.exception(
                "Failed to calculate unified metrics for guide %s (%s..%s, %s)",
                guide_id,
                period.start.isoformat(),
                period.end.isoformat(),
                period.type,
            )
            return build_default_snapshot(period)

    def _calculate_nested(
        self,
        guide_id: str,
        period: MetricsPeriod,
        include: List[str],
        cancelled: Optional[Event],
    ) -> UnifiedMetrics:
        options = MetricsCalculationOptions(
            include=include, calculate_trends=False, compare_with_previous=False
        )
        return self._calculate_or_default(guide_id, period, options, True, cancelled)

    def _calculate(
        self,
        guide_id: str,
        period: MetricsPeriod,
        options: MetricsCalculationOptions,
        recursion_guard: bool,
        cancelled: Optional[Event] = None,
    ) -> UnifiedMetrics:
        _raise_if_cancelled(cancelled, guide_id)
        scope = self.scope_resolver.resolve(guide_id)
        include = options.resolved_include()

        if (
            self.settings.metrics_snapshot_store_enabled
            and not options.calculate_trends
            and set(include) <= PRECOMPUTED_DIMENSIONS
        ):
            _raise_if_cancelled(cancelled, guide_id)
            precomputed = self._read_precomputed(guide_id, period)
            if precomputed is not None:
                return precomputed

        requested = self._expand_dimensions(include)
        computed: List[str] = []

        trips = TripsMetrics()
        if "trips" in requested:
            _raise_if_cancelled(cancelled, guide_id)
            trips = self.calculator.calculate_trips(guide_id, period, scope)
            computed.append("trips")
        earnings = EarningsMetrics()
        if "earnings" in requested:
            _raise_if_cancelled(cancelled, guide_id)
            earnings = self.calculator.calculate_earnings(guide_id, period, scope)
            computed.append("earnings")
        ratings = RatingsMetrics()
        if "ratings" in requested:
            _raise_if_cancelled(cancelled, guide_id)
            ratings = self.calculator.calculate_ratings(
                guide_id, period, scope, include_trend=options.calculate_trends
            )
            computed.append("ratings")
        performance = PerformanceMetrics()
        if "performance" in requested:
            _raise_if_cancelled(cancelled, guide_id)
            performance = self.calculator.calculate_performance(
                guide_id, period, scope, trips, ratings, earnings
            )
            computed.append("performance")
        development = DevelopmentMetrics()
        if "development" in requested:
            _raise_if_cancelled(cancelled, guide_id)
            development = self.calculator.calculate_development(guide_id, period, scope)
            computed.append("development")

        extended: Dict[str, object] = {}
        if "customerSatisfaction" in requested:
            _raise_if_cancelled(cancelled, guide_id)
            extended["customer_satisfaction"] = self.calculator.calculate_customer_satisfaction(
                guide_id, period, scope
            )
        if "efficiency" in requested:
            _raise_if_cancelled(cancelled, guide_id)
            extended["efficiency"] = self.calculator.calculate_efficiency(
                guide_id, period, scope, trips, earnings
            )
        if "financial" in requested:
            _raise_if_cancelled(cancelled, guide_id)
            extended["financial"] = self.calculator.calculate_financial(guide_id, period, scope, earnings)
        if "quality" in requested:
            _raise_if_cancelled(cancelled, guide_id)
            extended["quality"] = self.calculator.calculate_quality(guide_id, period, scope)

        wants_growth = "growth" in requested and options.compare_with_previous and not recursion_guard
        wants_trends = (
            "trends" in requested
            and options.calculate_trends
            and options.compare_with_previous
            and not recursion_guard
        )
        if wants_growth or wants_trends:
            _raise_if_cancelled(cancelled, guide_id)
            previous = self._calculate_nested(
                guide_id, get_previous_period(period), PREVIOUS_PERIOD_INCLUDE, cancelled
            )
            if wants_growth:
                _raise_if_cancelled(cancelled, guide_id)
                extended["growth"] = self.comparison.calculate_growth(
                    guide_id, period, scope, trips, earnings, ratings, previous
                )
            if wants_trends:
                trips = trips.model_copy(update={"trend": build_trend_delta(trips.total, previous.trips.total)})
                earnings = earnings.model_copy(
                    update={"trend": build_trend_delta(earnings.total, previous.earnings.total)}
                )

        if "comparative" in requested and not recursion_guard:
            _raise_if_cancelled(cancelled, guide_id)
            extended["comparative"] = self.comparison.calculate_comparative(
                guide_id,
                scope,
                trips,
                earnings,
                ratings,
                compute_peer=lambda peer_id: self._calculate_nested(
                    peer_id, period, PEER_INCLUDE, cancelled
                ),
                should_stop=cancelled.is_set if cancelled is not None else None,
            )

        computed.extend(name for name in EXTENDED_DIMENSIONS if _field_name(name) in extended)
        if wants_trends:
            computed.append("trends")
        return UnifiedMetrics(
            period=period,
            trips=trips,
            earnings=earnings,
            ratings=ratings,
            performance=performance,
            development=development,
            dimensions=computed,
            source="calculated",
            **extended,
        )

    def _read_precomputed(self, guide_id: str, period: MetricsPeriod) -> Optional[UnifiedMetrics]:
        try:
            record = self.snapshots_repository.get_snapshot(guide_id, period)
        except httpx.HTTPError:
            logger.debug(
                "guide_performance_metrics unavailable for guide %s, calculating from scratch",
                guide_id,
                exc_info=True,
            )
            return None
        if record is None:
            return None
        return snapshot_from_record(record, period)

    @staticmethod
    def _expand_dimensions(include: List[str]) -> Set[str]:
        requested = set(include)
        for dimension in list(requested):
            requested |= DIMENSION_DEPENDENCIES.get(dimension, frozenset())
        return requested


def _field_name(dimension: str) -> str:
    return "customer_satisfaction" if dimension == "customerSatisfaction" else dimension
