from __future__ import annotations

import logging
from collections import Counter, defaultdict
from datetime import timedelta
from typing import Callable, Dict, List, Optional, TypeVar

import httpx

from src.core.branch_scope import BranchScope
from src.core.errors import ScopeResolutionError
from src.models.guide_metrics import ReviewRecord, TripAssignmentRecord
from src.repositories.guide_development_repository import GuideDevelopmentRepository
from src.repositories.guide_wallets_repository import GuideWalletsRepository
from src.repositories.performance_snapshots_repository import PerformanceSnapshotsRepository
from src.repositories.query_filters import unique_ids
from src.repositories.reviews_repository import ReviewsRepository
from src.repositories.salary_deductions_repository import SalaryDeductionsRepository
from src.repositories.trip_assignments_repository import TripAssignmentsRepository
from src.schemas.guide_metrics import (
    RATING_BUCKETS,
    CustomerSatisfactionMetrics,
    DevelopmentMetrics,
    EarningsMetrics,
    EfficiencyMetrics,
    FinancialMetrics,
    MetricsPeriod,
    PerformanceMetrics,
    QualityMetrics,
    RatingsMetrics,
    TripsMetrics,
)
from src.shared.time import add_months, month_window

logger = logging.getLogger(__name__)

T = TypeVar("T")

RATING_WEIGHT = 40.0
TRIPS_WEIGHT = 30.0
EARNINGS_WEIGHT = 30.0
TRIPS_TARGET = 10
EARNINGS_TARGET = 5_000_000.0
TIER_THRESHOLDS = ((80.0, "excellent"), (65.0, "good"), (50.0, "average"))
LOWEST_TIER = "needs_improvement"
NEUTRAL_PERCENTILE = 50
RATING_TREND_TRIPS = 5
MAX_TRIP_DURATION_HOURS = 168.0
ON_TIME_COMPLETION_TOLERANCE = timedelta(minutes=30)
EARNINGS_TREND_MONTHS = 3

TRIP_COMPLETED = "completed"
TRIP_CANCELLED = "cancelled"


def score_performance(
    rating_average: Optional[float], completed_trips: int, earnings_total: float
) -> float:
    rating_score = min((rating_average or 0.0) / 5 * RATING_WEIGHT, RATING_WEIGHT)
    trips_score = min(completed_trips / TRIPS_TARGET * TRIPS_WEIGHT, TRIPS_WEIGHT)
    earnings_score = min(earnings_total / EARNINGS_TARGET * EARNINGS_WEIGHT, EARNINGS_WEIGHT)
    score = max(rating_score, 0.0) + max(trips_score, 0.0) + max(earnings_score, 0.0)
    return min(score, 100.0)


def tier_for_score(score: float) -> str:
    for threshold, tier in TIER_THRESHOLDS:
        if score >= threshold:
            return tier
    return LOWEST_TIER


def empty_distribution() -> Dict[str, int]:
    return {bucket: 0 for bucket in RATING_BUCKETS}


def _valid_ratings(reviews: List[ReviewRecord]) -> List[int]:
    return [
        review.guide_rating
        for review in reviews
        if review.guide_rating is not None and 1 <= review.guide_rating <= 5
    ]


class GuideMetricsCalculator:
    """Per-dimension calculators for one guide and period.

    Each public ``calculate_*`` method is independent and never raises for data
    problems: failures are logged and replaced with the dimension's neutral
    shape. Branch scope failures are the exception and always propagate.
    """

    def __init__(
        self,
        trip_assignments: TripAssignmentsRepository,
        wallets: GuideWalletsRepository,
        reviews: ReviewsRepository,
        development: GuideDevelopmentRepository,
        deductions: SalaryDeductionsRepository,
        snapshots: PerformanceSnapshotsRepository,
        snapshot_store_enabled: bool = False,
    ) -> None:
        self.trip_assignments = trip_assignments
        self.wallets = wallets
        self.reviews = reviews
        self.development = development
        self.deductions = deductions
        self.snapshots = snapshots
        self.snapshot_store_enabled = snapshot_store_enabled

    def _guarded(
        self,
        dimension: str,
        guide_id: str,
        period: MetricsPeriod,
        compute: Callable[[], T],
        fallback: T,
    ) -> T:
        try:
            return compute()
        except ScopeResolutionError:
            raise
        except Exception:
            logger.exception(
                "Failed to calculate %s metrics for guide %s (%s..%s)",
                dimension,
                guide_id,
                period.start.isoformat(),
                period.end.isoformat(),
            )
            return fallback

    def calculate_trips(self, guide_id: str, period: MetricsPeriod, scope: BranchScope) -> TripsMetrics:
        return self._guarded(
            "trips", guide_id, period, lambda: self._trips(guide_id, period, scope), TripsMetrics()
        )

    def calculate_earnings(
        self, guide_id: str, period: MetricsPeriod, scope: BranchScope
    ) -> EarningsMetrics:
        return self._guarded(
            "earnings", guide_id, period, lambda: self._earnings(guide_id, period, scope), EarningsMetrics()
        )

    def calculate_ratings(
        self,
        guide_id: str,
        period: MetricsPeriod,
        scope: BranchScope,
        include_trend: bool = True,
    ) -> RatingsMetrics:
        return self._guarded(
            "ratings",
            guide_id,
            period,
            lambda: self._ratings(guide_id, period, scope, include_trend),
            RatingsMetrics(),
        )

    def calculate_performance(
        self,
        guide_id: str,
        period: MetricsPeriod,
        scope: BranchScope,
        trips: TripsMetrics,
        ratings: RatingsMetrics,
        earnings: EarningsMetrics,
    ) -> PerformanceMetrics:
        return self._guarded(
            "performance",
            guide_id,
            period,
            lambda: self._performance(guide_id, period, scope, trips, ratings, earnings),
            PerformanceMetrics(),
        )

    def calculate_development(
        self, guide_id: str, period: MetricsPeriod, scope: BranchScope
    ) -> DevelopmentMetrics:
        return self._guarded(
            "development",
            guide_id,
            period,
            lambda: self._development(guide_id, period, scope),
            DevelopmentMetrics(),
        )

    def calculate_customer_satisfaction(
        self, guide_id: str, period: MetricsPeriod, scope: BranchScope
    ) -> CustomerSatisfactionMetrics:
        return self._guarded(
            "customer satisfaction",
            guide_id,
            period,
            lambda: self._customer_satisfaction(guide_id, period, scope),
            CustomerSatisfactionMetrics(),
        )

    def calculate_efficiency(
        self,
        guide_id: str,
        period: MetricsPeriod,
        scope: BranchScope,
        trips: TripsMetrics,
        earnings: EarningsMetrics,
    ) -> EfficiencyMetrics:
        return self._guarded(
            "efficiency",
            guide_id,
            period,
            lambda: self._efficiency(guide_id, period, scope, trips, earnings),
            EfficiencyMetrics(),
        )

    def calculate_financial(
        self,
        guide_id: str,
        period: MetricsPeriod,
        scope: BranchScope,
        earnings: EarningsMetrics,
    ) -> FinancialMetrics:
        return self._guarded(
            "financial",
            guide_id,
            period,
            lambda: self._financial(guide_id, period, scope, earnings),
            FinancialMetrics(net_earnings=earnings.total),
        )

    def calculate_quality(
        self, guide_id: str, period: MetricsPeriod, scope: BranchScope
    ) -> QualityMetrics:
        return self._guarded(
            "quality", guide_id, period, lambda: self._quality(guide_id, period, scope), QualityMetrics()
        )

    def _trips(self, guide_id: str, period: MetricsPeriod, scope: BranchScope) -> TripsMetrics:
        assignments = self.trip_assignments.list_checked_out(guide_id, period, scope)
        statuses = Counter(assignment.trip_status for assignment in assignments)
        return TripsMetrics(
            total=len(assignments),
            completed=statuses[TRIP_COMPLETED],
            cancelled=statuses[TRIP_CANCELLED],
        )

    def _earnings(self, guide_id: str, period: MetricsPeriod, scope: BranchScope) -> EarningsMetrics:
        wallet = self.wallets.get_wallet(guide_id, scope)
        if wallet is None:
            logger.debug("No wallet found for guide %s", guide_id)
            return EarningsMetrics()

        assignments = self.trip_assignments.list_checked_out(guide_id, period, scope)
        trip_ids = unique_ids(assignment.trip_id for assignment in assignments)
        transactions = self.wallets.list_trip_earnings(wallet.id, trip_ids) if trip_ids else []
        total = sum(transaction.amount or 0.0 for transaction in transactions)
        completed = sum(1 for assignment in assignments if assignment.trip_status == TRIP_COMPLETED)
        return EarningsMetrics(
            total=total,
            average=total / completed if completed else 0.0,
            # Counts earning transactions, not distinct trips.
            by_trip=len(transactions),
        )

    def _ratings(
        self,
        guide_id: str,
        period: MetricsPeriod,
        scope: BranchScope,
        include_trend: bool,
    ) -> RatingsMetrics:
        assignments = self.trip_assignments.list_checked_out(guide_id, period, scope)
        trip_ids = unique_ids(assignment.trip_id for assignment in assignments)
        if not trip_ids:
            return RatingsMetrics(distribution=empty_distribution())

        bookings = self.reviews.list_trip_bookings(trip_ids, scope)
        booking_ids = unique_ids(booking.booking_id for booking in bookings)
        if not booking_ids:
            return RatingsMetrics(distribution=empty_distribution())

        reviews = self.reviews.list_reviews(booking_ids)
        ratings = _valid_ratings(reviews)
        distribution = empty_distribution()
        for rating in ratings:
            distribution[str(rating)] += 1

        trend: List[int] = []
        if include_trend:
            # "Most recent" follows the positional order of trip ids, not trip dates.
            recent_trip_ids = set(trip_ids[-RATING_TREND_TRIPS:])
            recent_booking_ids = {
                booking.booking_id for booking in bookings if booking.trip_id in recent_trip_ids
            }
            trend = _valid_ratings(
                [review for review in reviews if review.booking_id in recent_booking_ids]
            )

        return RatingsMetrics(
            average=sum(ratings) / len(ratings) if ratings else None,
            total=len(ratings),
            trend=trend,
            distribution=distribution,
        )

    def _performance(
        self,
        guide_id: str,
        period: MetricsPeriod,
        scope: BranchScope,
        trips: TripsMetrics,
        ratings: RatingsMetrics,
        earnings: EarningsMetrics,
    ) -> PerformanceMetrics:
        assignments = self.trip_assignments.list_checked_in(guide_id, period, scope)
        on_time_rate = self._on_time_rate(assignments)

        percentile: float = NEUTRAL_PERCENTILE
        if on_time_rate is not None:
            by_guide: Dict[str, List[TripAssignmentRecord]] = defaultdict(list)
            for assignment in self.trip_assignments.list_branch_checked_in(period, scope):
                if assignment.guide_id:
                    by_guide[assignment.guide_id].append(assignment)
            branch_rates = [
                rate for rate in (self._on_time_rate(rows) for rows in by_guide.values()) if rate is not None
            ]
            if branch_rates:
                # Ties count as not better.
                lower = sum(1 for rate in branch_rates if rate < on_time_rate)
                percentile = lower / len(branch_rates) * 100

        score = score_performance(ratings.average, trips.completed, earnings.total)
        return PerformanceMetrics(
            score=score,
            tier=tier_for_score(score),
            on_time_rate=on_time_rate,
            percentile=round(percentile),
        )

    @staticmethod
    def _on_time_rate(assignments: List[TripAssignmentRecord]) -> Optional[float]:
        if not assignments:
            return None
        on_time = sum(1 for assignment in assignments if not assignment.is_late)
        return on_time / len(assignments) * 100

    def _development(
        self, guide_id: str, period: MetricsPeriod, scope: BranchScope
    ) -> DevelopmentMetrics:
        skills = self.development.list_skills_updated(
            guide_id, period.start, period.end, scope, min_level_exclusive=1
        )
        assessments = self.development.list_completed_assessments(guide_id, period.start, period.end)
        return DevelopmentMetrics(skills_improved=len(skills), assessments_completed=len(assessments))

    def _customer_satisfaction(
        self, guide_id: str, period: MetricsPeriod, scope: BranchScope
    ) -> CustomerSatisfactionMetrics:
        assignments = self.trip_assignments.list_checked_out(guide_id, period, scope)
        trip_ids = unique_ids(assignment.trip_id for assignment in assignments)
        reviews: List[ReviewRecord] = []
        if trip_ids:
            bookings = self.reviews.list_trip_bookings(trip_ids, scope)
            booking_ids = unique_ids(booking.booking_id for booking in bookings)
            if booking_ids:
                reviews = self.reviews.list_reviews(booking_ids, rated_only=False)
        responded = sum(1 for review in reviews if review.guide_response)

        satisfaction_score: Optional[float] = None
        if self.snapshot_store_enabled:
            try:
                satisfaction_score = self.snapshots.get_satisfaction_score(guide_id, period)
            except httpx.HTTPError:
                logger.warning("Satisfaction score unavailable for guide %s", guide_id, exc_info=True)

        return CustomerSatisfactionMetrics(
            response_rate=responded / len(reviews) * 100 if reviews else None,
            # Repeat-customer and complaint data are not wired yet.
            repeat_customer_rate=None,
            complaint_resolution_rate=None,
            satisfaction_score=satisfaction_score,
        )

    def _efficiency(
        self,
        guide_id: str,
        period: MetricsPeriod,
        scope: BranchScope,
        trips: TripsMetrics,
        earnings: EarningsMetrics,
    ) -> EfficiencyMetrics:
        assignments = self.trip_assignments.list_checked_in(guide_id, period, scope)
        durations: List[float] = []
        total_guests = 0
        for assignment in assignments:
            if assignment.check_in_at and assignment.check_out_at:
                hours = (assignment.check_out_at - assignment.check_in_at).total_seconds() / 3600
                if 0 < hours < MAX_TRIP_DURATION_HOURS:
                    durations.append(hours)
            if assignment.trip and assignment.trip.guest_count:
                total_guests += assignment.trip.guest_count

        return EfficiencyMetrics(
            avg_trip_duration=sum(durations) / len(durations) if durations else None,
            guest_to_trip_ratio=total_guests / trips.completed if trips.completed else None,
            revenue_per_guest=earnings.total / total_guests if total_guests else None,
            # Needs availability calendars and assignment acknowledgement timestamps.
            utilization_rate=None,
            avg_response_time=None,
        )

    def _financial(
        self,
        guide_id: str,
        period: MetricsPeriod,
        scope: BranchScope,
        earnings: EarningsMetrics,
    ) -> FinancialMetrics:
        deductions = self.deductions.list_deductions(guide_id, period, scope)
        total_penalties = sum(deduction.amount or 0.0 for deduction in deductions)

        wallet = self.wallets.get_wallet(guide_id, scope)
        savings_rate: Optional[float] = None
        withdrawal_frequency = 0
        earnings_trend = [0.0] * EARNINGS_TREND_MONTHS
        if wallet is not None:
            goal = self.wallets.get_savings_goal(wallet.id)
            savings_rate = goal.auto_save_percentage if goal else None
            withdrawal_frequency = len(
                self.wallets.list_transactions(wallet.id, "withdraw_request", period.start, period.end)
            )
            earnings_trend = []
            for offset in range(EARNINGS_TREND_MONTHS - 1, -1, -1):
                anchor = add_months(period.start, -offset)
                month_start, month_end = month_window(anchor.year, anchor.month)
                transactions = self.wallets.list_transactions(wallet.id, "earning", month_start, month_end)
                earnings_trend.append(sum(transaction.amount or 0.0 for transaction in transactions))

        return FinancialMetrics(
            net_earnings=earnings.total - total_penalties,
            penalty_impact=total_penalties / earnings.total * 100 if earnings.total > 0 else 0.0,
            savings_rate=savings_rate,
            withdrawal_frequency=withdrawal_frequency,
            earnings_trend=earnings_trend,
        )

    def _quality(self, guide_id: str, period: MetricsPeriod, scope: BranchScope) -> QualityMetrics:
        assignments = self.trip_assignments.list_checked_in(
            guide_id, period, scope, require_check_out=False
        )
        total = len(assignments)
        if total == 0:
            return QualityMetrics()

        late = sum(1 for assignment in assignments if assignment.is_late is True)
        documented = sum(1 for assignment in assignments if assignment.documentation_uploaded is True)
        cancelled = sum(1 for assignment in assignments if assignment.trip_status == TRIP_CANCELLED)

        completed = 0
        on_time_completions = 0
        for assignment in assignments:
            scheduled_end = assignment.trip.scheduled_end_at if assignment.trip else None
            if assignment.trip_status != TRIP_COMPLETED or not assignment.check_out_at or not scheduled_end:
                continue
            completed += 1
            if abs(assignment.check_out_at - scheduled_end) <= ON_TIME_COMPLETION_TOLERANCE:
                on_time_completions += 1

        return QualityMetrics(
            on_time_completion_rate=on_time_completions / completed * 100 if completed else None,
            no_show_rate=cancelled / total * 100,
            documentation_completion_rate=documented / total * 100,
            # Issue tickets are not tracked yet.
            issue_resolution_rate=None,
            late_check_in_rate=late / total * 100,
        )
