from __future__ import annotations

import os
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest

os.environ.setdefault("SUPABASE_URL", "http://localhost:54321")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-service-role-key")

from fastapi.testclient import TestClient  # noqa: E402

from src.api.dependencies import get_guide_metrics_service  # noqa: E402
from src.core.branch_scope import BranchScope  # noqa: E402
from src.core.config import get_settings  # noqa: E402
from src.core.errors import ScopeResolutionError  # noqa: E402
from src.main import create_app  # noqa: E402
from src.models.guide_metrics import (  # noqa: E402
    AssessmentRecord,
    GuideScopeRecord,
    PerformanceSnapshotRecord,
    ReviewRecord,
    SalaryDeductionRecord,
    SkillRecord,
    TripAssignmentRecord,
    TripBookingRecord,
    TripRecord,
    WalletGoalRecord,
    WalletRecord,
    WalletTransactionRecord,
)
from src.schemas.guide_metrics import (  # noqa: E402
    MetricsCalculationOptions,
    MetricsPeriod,
    PerformanceMetrics,
    TripsMetrics,
    UnifiedMetrics,
)
from src.services.branch_scope_service import BranchScopeResolver  # noqa: E402
from src.services.guide_comparison_service import GuideComparisonService  # noqa: E402
from src.services.guide_metrics_calculator import GuideMetricsCalculator  # noqa: E402
from src.services.guide_metrics_service import GuideMetricsService  # noqa: E402

FEBRUARY = MetricsPeriod(
    start=datetime(2026, 2, 1, tzinfo=timezone.utc),
    end=datetime(2026, 3, 1, tzinfo=timezone.utc),
    type="monthly",
)
JANUARY = MetricsPeriod(
    start=datetime(2026, 1, 1, tzinfo=timezone.utc),
    end=datetime(2026, 2, 1, tzinfo=timezone.utc),
    type="monthly",
)


class StubRepository:
    def __init__(self) -> None:
        self.failures: Dict[str, Exception] = {}
        self.calls: List[Tuple[str, Any]] = []

    def _record(self, name: str, scope: Any = None) -> None:
        self.calls.append((name, scope))
        if name in self.failures:
            raise self.failures[name]


class StubGuidesRepository(StubRepository):
    def __init__(self) -> None:
        super().__init__()
        self.guides: Dict[str, GuideScopeRecord] = {}
        self.branch_guides: Dict[str, List[str]] = defaultdict(list)

    def add_guide(self, guide_id: str, branch_id: Optional[str], role: str = "guide") -> None:
        self.guides[guide_id] = GuideScopeRecord(id=guide_id, branch_id=branch_id, role=role)
        if branch_id and role == "guide":
            self.branch_guides[branch_id].append(guide_id)

    def get_guide_scope(self, guide_id: str) -> Optional[GuideScopeRecord]:
        self._record("get_guide_scope")
        return self.guides.get(guide_id)

    def list_branch_guide_ids(self, scope: BranchScope, limit: int) -> List[str]:
        self._record("list_branch_guide_ids", scope)
        return self.branch_guides.get(scope.branch_id or "", [])[:limit]


class StubTripAssignmentsRepository(StubRepository):
    def __init__(self) -> None:
        super().__init__()
        self.checked_out: Dict[Tuple[str, datetime], List[TripAssignmentRecord]] = defaultdict(list)
        self.checked_in: Dict[Tuple[str, datetime], List[TripAssignmentRecord]] = defaultdict(list)
        self.branch_checked_in: Dict[datetime, List[TripAssignmentRecord]] = defaultdict(list)

    def list_checked_out(
        self, guide_id: str, period: MetricsPeriod, scope: BranchScope
    ) -> List[TripAssignmentRecord]:
        self._record("list_checked_out", scope)
        return list(self.checked_out[(guide_id, period.start)])

    def list_checked_in(
        self,
        guide_id: str,
        period: MetricsPeriod,
        scope: BranchScope,
        require_check_out: bool = True,
    ) -> List[TripAssignmentRecord]:
        self._record("list_checked_in", scope)
        rows = self.checked_in[(guide_id, period.start)]
        if require_check_out:
            return [row for row in rows if row.check_out_at is not None]
        return list(rows)

    def list_branch_checked_in(
        self, period: MetricsPeriod, scope: BranchScope
    ) -> List[TripAssignmentRecord]:
        self._record("list_branch_checked_in", scope)
        return list(self.branch_checked_in[period.start])


class StubGuideWalletsRepository(StubRepository):
    def __init__(self) -> None:
        super().__init__()
        self.wallets: Dict[str, WalletRecord] = {}
        self.transactions: Dict[str, List[WalletTransactionRecord]] = defaultdict(list)
        self.goals: Dict[str, WalletGoalRecord] = {}

    def get_wallet(self, guide_id: str, scope: BranchScope) -> Optional[WalletRecord]:
        self._record("get_wallet", scope)
        return self.wallets.get(guide_id)

    def list_trip_earnings(
        self, wallet_id: str, trip_ids: Sequence[str]
    ) -> List[WalletTransactionRecord]:
        self._record("list_trip_earnings")
        return [
            transaction
            for transaction in self.transactions[wallet_id]
            if transaction.transaction_type == "earning"
            and transaction.reference_type == "trip"
            and transaction.reference_id in trip_ids
        ]

    def list_transactions(
        self, wallet_id: str, transaction_type: str, start: datetime, end: datetime
    ) -> List[WalletTransactionRecord]:
        self._record("list_transactions")
        return [
            transaction
            for transaction in self.transactions[wallet_id]
            if transaction.transaction_type == transaction_type
            and transaction.created_at is not None
            and start <= transaction.created_at < end
        ]

    def get_savings_goal(self, wallet_id: str) -> Optional[WalletGoalRecord]:
        self._record("get_savings_goal")
        return self.goals.get(wallet_id)


class StubReviewsRepository(StubRepository):
    def __init__(self) -> None:
        super().__init__()
        self.bookings: List[TripBookingRecord] = []
        self.reviews: List[ReviewRecord] = []

    def list_trip_bookings(self, trip_ids: Sequence[str], scope: BranchScope) -> List[TripBookingRecord]:
        self._record("list_trip_bookings", scope)
        return [booking for booking in self.bookings if booking.trip_id in trip_ids]

    def list_reviews(self, booking_ids: Sequence[str], rated_only: bool = True) -> List[ReviewRecord]:
        self._record("list_reviews")
        return [
            review
            for review in self.reviews
            if review.booking_id in booking_ids and (not rated_only or review.guide_rating is not None)
        ]


class StubGuideDevelopmentRepository(StubRepository):
    def __init__(self) -> None:
        super().__init__()
        self.skills: Dict[str, List[SkillRecord]] = defaultdict(list)
        self.assessments: Dict[str, List[AssessmentRecord]] = defaultdict(list)

    def list_skills_updated(
        self,
        guide_id: str,
        start: datetime,
        end: datetime,
        scope: BranchScope,
        min_level_exclusive: Optional[int] = None,
    ) -> List[SkillRecord]:
        self._record("list_skills_updated", scope)
        return [
            skill
            for skill in self.skills[guide_id]
            if skill.updated_at is not None
            and start <= skill.updated_at < end
            and (min_level_exclusive is None or (skill.level or 0) > min_level_exclusive)
        ]

    def list_skills(self, guide_id: str, scope: BranchScope) -> List[SkillRecord]:
        self._record("list_skills", scope)
        return list(self.skills[guide_id])

    def list_completed_assessments(
        self, guide_id: str, start: datetime, end: datetime, limit: Optional[int] = None
    ) -> List[AssessmentRecord]:
        self._record("list_completed_assessments")
        rows = [
            assessment
            for assessment in self.assessments[guide_id]
            if assessment.completed_at is not None and start <= assessment.completed_at < end
        ]
        return rows[:limit] if limit is not None else rows


class StubSalaryDeductionsRepository(StubRepository):
    def __init__(self) -> None:
        super().__init__()
        self.deductions: Dict[str, List[SalaryDeductionRecord]] = defaultdict(list)

    def list_deductions(
        self, guide_id: str, period: MetricsPeriod, scope: BranchScope
    ) -> List[SalaryDeductionRecord]:
        self._record("list_deductions", scope)
        return [
            deduction
            for deduction in self.deductions[guide_id]
            if deduction.created_at is not None and period.start <= deduction.created_at < period.end
        ]


class StubPerformanceSnapshotsRepository(StubRepository):
    def __init__(self) -> None:
        super().__init__()
        self.snapshots: Dict[Tuple[str, datetime], PerformanceSnapshotRecord] = {}
        self.satisfaction_scores: Dict[str, float] = {}
        self.upserted: List[Dict[str, Any]] = []

    def get_snapshot(self, guide_id: str, period: MetricsPeriod) -> Optional[PerformanceSnapshotRecord]:
        self._record("get_snapshot")
        return self.snapshots.get((guide_id, period.start))

    def get_satisfaction_score(self, guide_id: str, period: MetricsPeriod) -> Optional[float]:
        self._record("get_satisfaction_score")
        return self.satisfaction_scores.get(guide_id)

    def upsert_snapshots(self, rows: List[Dict[str, Any]]) -> List[PerformanceSnapshotRecord]:
        self._record("upsert_snapshots")
        self.upserted.extend(rows)
        return [PerformanceSnapshotRecord.model_validate(row) for row in rows]


def make_assignment(
    trip_id: str,
    guide_id: str = "guide-1",
    status: str = "completed",
    check_in_at: Optional[datetime] = datetime(2026, 2, 10, 8, 0, tzinfo=timezone.utc),
    duration_hours: Optional[float] = 4.0,
    is_late: Optional[bool] = False,
    guest_count: Optional[int] = None,
    scheduled_end_at: Optional[datetime] = None,
    documentation_uploaded: Optional[bool] = None,
) -> TripAssignmentRecord:
    check_out_at = None
    if check_in_at is not None and duration_hours is not None:
        check_out_at = check_in_at + timedelta(hours=duration_hours)
    return TripAssignmentRecord(
        trip_id=trip_id,
        guide_id=guide_id,
        check_in_at=check_in_at,
        check_out_at=check_out_at,
        is_late=is_late,
        documentation_uploaded=documentation_uploaded,
        trip=TripRecord(status=status, guest_count=guest_count, scheduled_end_at=scheduled_end_at),
    )


def make_earning(trip_id: str, amount: float, created_at: Optional[datetime] = None) -> WalletTransactionRecord:
    return WalletTransactionRecord(
        id=f"tx-{trip_id}",
        amount=amount,
        transaction_type="earning",
        reference_type="trip",
        reference_id=trip_id,
        created_at=created_at or datetime(2026, 2, 15, tzinfo=timezone.utc),
    )


class MetricsWorld:
    """In-memory branch of guides wired into the real calculators and service."""

    assignment = staticmethod(make_assignment)
    earning = staticmethod(make_earning)

    def __init__(self) -> None:
        self.guides = StubGuidesRepository()
        self.trips = StubTripAssignmentsRepository()
        self.wallets = StubGuideWalletsRepository()
        self.reviews = StubReviewsRepository()
        self.development = StubGuideDevelopmentRepository()
        self.deductions = StubSalaryDeductionsRepository()
        self.snapshots = StubPerformanceSnapshotsRepository()
        self.guides.add_guide("guide-1", "branch-1")

    def add_trips(
        self,
        guide_id: str,
        period: MetricsPeriod,
        assignments: List[TripAssignmentRecord],
    ) -> None:
        """Register assignments as both checked-out and checked-in inside ``period``."""
        self.trips.checked_out[(guide_id, period.start)].extend(assignments)
        self.trips.checked_in[(guide_id, period.start)].extend(assignments)

    def add_wallet(self, guide_id: str, transactions: List[WalletTransactionRecord]) -> str:
        wallet_id = f"wallet-{guide_id}"
        self.wallets.wallets[guide_id] = WalletRecord(id=wallet_id, guide_id=guide_id)
        self.wallets.transactions[wallet_id].extend(transactions)
        return wallet_id

    def add_review(self, trip_id: str, rating: Optional[int], response: Optional[str] = None) -> None:
        booking_id = f"booking-{trip_id}"
        self.reviews.bookings.append(TripBookingRecord(trip_id=trip_id, booking_id=booking_id))
        self.reviews.reviews.append(
            ReviewRecord(
                id=f"review-{trip_id}",
                booking_id=booking_id,
                guide_rating=rating,
                guide_response=response,
            )
        )

    def calculator(self, snapshot_store_enabled: bool = False) -> GuideMetricsCalculator:
        return GuideMetricsCalculator(
            trip_assignments=self.trips,
            wallets=self.wallets,
            reviews=self.reviews,
            development=self.development,
            deductions=self.deductions,
            snapshots=self.snapshots,
            snapshot_store_enabled=snapshot_store_enabled,
        )

    def comparison(self, peer_limit: int = 50) -> GuideComparisonService:
        return GuideComparisonService(
            guides_repository=self.guides,
            development_repository=self.development,
            peer_limit=peer_limit,
        )

    def service(self, **settings_overrides: Any) -> GuideMetricsService:
        settings = get_settings().model_copy(update=settings_overrides)
        return GuideMetricsService(
            scope_resolver=BranchScopeResolver(self.guides, super_scope_roles=frozenset({"super_admin"})),
            calculator=self.calculator(settings.metrics_snapshot_store_enabled),
            comparison=self.comparison(settings.metrics_peer_limit),
            snapshots_repository=self.snapshots,
            settings=settings,
        )


@pytest.fixture()
def world() -> MetricsWorld:
    return MetricsWorld()


@pytest.fixture()
def branch_scope() -> BranchScope:
    return BranchScope(branch_id="branch-1")


@pytest.fixture()
def february() -> MetricsPeriod:
    return FEBRUARY


@pytest.fixture()
def january() -> MetricsPeriod:
    return JANUARY


class FakeGuideMetricsService:
    def __init__(self) -> None:
        self.calls: List[Tuple[str, MetricsPeriod, MetricsCalculationOptions]] = []

    def calculate_unified_metrics(
        self,
        guide_id: str,
        period: MetricsPeriod,
        options: Optional[MetricsCalculationOptions] = None,
        recursion_guard: bool = False,
    ) -> UnifiedMetrics:
        self.calls.append((guide_id, period, options or MetricsCalculationOptions()))
        if guide_id == "guide-unscoped":
            raise ScopeResolutionError("Guide is not assigned to a branch", guide_id=guide_id)
        if guide_id == "guide-degraded":
            return UnifiedMetrics(period=period, source="fallback")
        return UnifiedMetrics(
            period=period,
            trips=TripsMetrics(total=12, completed=10, cancelled=2),
            performance=PerformanceMetrics(score=96.8, tier="excellent", on_time_rate=100.0, percentile=67),
            dimensions=["trips", "earnings", "ratings", "performance", "development"],
        )


@pytest.fixture()
def fake_metrics_service() -> FakeGuideMetricsService:
    return FakeGuideMetricsService()


@pytest.fixture()
def client(fake_metrics_service: FakeGuideMetricsService) -> TestClient:
    app = create_app()
    app.dependency_overrides[get_guide_metrics_service] = lambda: fake_metrics_service
    return TestClient(app)
