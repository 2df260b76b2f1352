from __future__ import annotations

from functools import lru_cache

from src.core.config import get_settings
from src.repositories.guide_development_repository import GuideDevelopmentRepository
from src.repositories.guide_wallets_repository import GuideWalletsRepository
from src.repositories.guides_repository import GuidesRepository
from src.repositories.performance_snapshots_repository import PerformanceSnapshotsRepository
from src.repositories.reviews_repository import ReviewsRepository
from src.repositories.salary_deductions_repository import SalaryDeductionsRepository
from src.repositories.trip_assignments_repository import TripAssignmentsRepository
from src.services.branch_scope_service import BranchScopeResolver
from src.services.guide_comparison_service import GuideComparisonService
from src.services.guide_metrics_calculator import GuideMetricsCalculator
from src.services.guide_metrics_service import GuideMetricsService


@lru_cache
def get_guides_repository() -> GuidesRepository:
    return GuidesRepository()


@lru_cache
def get_trip_assignments_repository() -> TripAssignmentsRepository:
    return TripAssignmentsRepository()


@lru_cache
def get_guide_wallets_repository() -> GuideWalletsRepository:
    return GuideWalletsRepository()


@lru_cache
def get_reviews_repository() -> ReviewsRepository:
    return ReviewsRepository()


@lru_cache
def get_guide_development_repository() -> GuideDevelopmentRepository:
    return GuideDevelopmentRepository()


@lru_cache
def get_salary_deductions_repository() -> SalaryDeductionsRepository:
    return SalaryDeductionsRepository()


@lru_cache
def get_performance_snapshots_repository() -> PerformanceSnapshotsRepository:
    return PerformanceSnapshotsRepository()


def get_branch_scope_resolver() -> BranchScopeResolver:
    return BranchScopeResolver(repository=get_guides_repository())


def get_guide_metrics_calculator() -> GuideMetricsCalculator:
    return GuideMetricsCalculator(
        trip_assignments=get_trip_assignments_repository(),
        wallets=get_guide_wallets_repository(),
        reviews=get_reviews_repository(),
        development=get_guide_development_repository(),
        deductions=get_salary_deductions_repository(),
        snapshots=get_performance_snapshots_repository(),
        snapshot_store_enabled=get_settings().metrics_snapshot_store_enabled,
    )


def get_guide_comparison_service() -> GuideComparisonService:
    return GuideComparisonService(
        guides_repository=get_guides_repository(),
        development_repository=get_guide_development_repository(),
        peer_limit=get_settings().metrics_peer_limit,
    )


def get_guide_metrics_service() -> GuideMetricsService:
    return GuideMetricsService(
        scope_resolver=get_branch_scope_resolver(),
        calculator=get_guide_metrics_calculator(),
        comparison=get_guide_comparison_service(),
        snapshots_repository=get_performance_snapshots_repository(),
    )
