from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from src.core.branch_scope import BranchScope
from src.core.errors import CalculationCancelled, ScopeResolutionError
from src.models.guide_metrics import AssessmentRecord, SkillRecord
from src.repositories.guide_development_repository import GuideDevelopmentRepository
from src.repositories.guides_repository import GuidesRepository
from src.schemas.guide_metrics import (
    ComparativeMetrics,
    EarningsMetrics,
    GrowthMetrics,
    GrowthMomentum,
    MetricsPeriod,
    RatingsMetrics,
    TopPerformerGap,
    TrendDelta,
    TripsMetrics,
    UnifiedMetrics,
)
from src.shared.time import add_months, is_month_boundary

logger = logging.getLogger(__name__)

RECENT_ASSESSMENTS = 5


def get_previous_period(period: MetricsPeriod) -> MetricsPeriod:
    """The window of the same type ending where ``period`` starts.

    Calendar-aligned monthly periods step back whole months so month lengths
    line up (Jan -> Dec -> Nov); everything else steps back its exact duration.
    """
    if period.type == "monthly" and is_month_boundary(period.start) and is_month_boundary(period.end):
        months = (period.end.year - period.start.year) * 12 + period.end.month - period.start.month
        return MetricsPeriod(start=add_months(period.start, -months), end=period.start, type=period.type)
    return MetricsPeriod(start=period.start - period.duration, end=period.start, type=period.type)


def percent_change(current: Optional[float], previous: Optional[float]) -> Optional[float]:
    if current is None or not previous:
        return None
    return (current - previous) / previous * 100


def build_trend_delta(current: float, previous: float) -> Optional[TrendDelta]:
    change = percent_change(current, previous)
    if change is None:
        return None
    direction = "up" if change > 0 else "down" if change < 0 else "stable"
    return TrendDelta(value=abs(change), direction=direction)


def _average(values: List[float]) -> Optional[float]:
    return sum(values) / len(values) if values else None


@dataclass
class PeerStanding:
    guide_id: str
    trips: int
    earnings: float
    rating: Optional[float]


class GuideComparisonService:
    def __init__(
        self,
        guides_repository: GuidesRepository,
        development_repository: GuideDevelopmentRepository,
        peer_limit: int = 50,
    ) -> None:
        self.guides_repository = guides_repository
        self.development_repository = development_repository
        self.peer_limit = peer_limit

    def calculate_growth(
        self,
        guide_id: str,
        period: MetricsPeriod,
        scope: BranchScope,
        trips: TripsMetrics,
        earnings: EarningsMetrics,
        ratings: RatingsMetrics,
        previous: UnifiedMetrics,
    ) -> GrowthMetrics:
        try:
            return self._growth(guide_id, period, scope, trips, earnings, ratings, previous)
        except ScopeResolutionError:
            raise
        except Exception:
            logger.exception("Failed to calculate growth metrics for guide %s", guide_id)
            return GrowthMetrics()

    def _growth(
        self,
        guide_id: str,
        period: MetricsPeriod,
        scope: BranchScope,
        trips: TripsMetrics,
        earnings: EarningsMetrics,
        ratings: RatingsMetrics,
        previous: UnifiedMetrics,
    ) -> GrowthMetrics:
        previous_period = get_previous_period(period)
        current_skills = self.development_repository.list_skills_updated(
            guide_id, period.start, period.end, scope
        )
        previous_skills = self.development_repository.list_skills_updated(
            guide_id, previous_period.start, previous_period.end, scope
        )
        all_skills = self.development_repository.list_skills(guide_id, scope)
        current_assessments = self.development_repository.list_completed_assessments(
            guide_id, period.start, period.end, limit=RECENT_ASSESSMENTS
        )
        previous_assessments = self.development_repository.list_completed_assessments(
            guide_id, previous_period.start, previous_period.end, limit=RECENT_ASSESSMENTS
        )

        certified = sum(1 for skill in all_skills if skill.is_certified)
        return GrowthMetrics(
            mom_growth=GrowthMomentum(
                trips=percent_change(trips.total, previous.trips.total),
                earnings=percent_change(earnings.total, previous.earnings.total),
                ratings=percent_change(ratings.average, previous.ratings.average),
            ),
            skill_progression_rate=self._development_change(
                self._average_level(current_skills), self._average_level(previous_skills)
            ),
            certification_completion_rate=certified / len(all_skills) * 100 if all_skills else None,
            assessment_improvement=self._development_change(
                self._average_score(current_assessments), self._average_score(previous_assessments)
            ),
        )

    @staticmethod
    def _development_change(current: Optional[float], previous: Optional[float]) -> Optional[float]:
        # A zero average on either side yields no rate.
        if not current:
            return None
        return percent_change(current, previous)

    @staticmethod
    def _average_level(skills: List[SkillRecord]) -> Optional[float]:
        return _average([float(skill.level or 0) for skill in skills])

    @staticmethod
    def _average_score(assessments: List[AssessmentRecord]) -> Optional[float]:
        return _average([float(assessment.score or 0) for assessment in assessments])

    def calculate_comparative(
        self,
        guide_id: str,
        scope: BranchScope,
        trips: TripsMetrics,
        earnings: EarningsMetrics,
        ratings: RatingsMetrics,
        compute_peer: Callable[[str], UnifiedMetrics],
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> ComparativeMetrics:
        if not scope.branch_id:
            logger.info("Comparative metrics skipped for guide %s: no branch context", guide_id)
            return ComparativeMetrics()
        try:
            return self._comparative(guide_id, scope, trips, earnings, ratings, compute_peer, should_stop)
        except (ScopeResolutionError, CalculationCancelled):
            raise
        except Exception:
            logger.exception("Failed to calculate comparative metrics for guide %s", guide_id)
            return ComparativeMetrics()

    def _comparative(
        self,
        guide_id: str,
        scope: BranchScope,
        trips: TripsMetrics,
        earnings: EarningsMetrics,
        ratings: RatingsMetrics,
        compute_peer: Callable[[str], UnifiedMetrics],
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> ComparativeMetrics:
        # Peers come from the guide's own branch even for super-scope principals.
        branch_scope = BranchScope(branch_id=scope.branch_id)
        peer_ids = self.guides_repository.list_branch_guide_ids(branch_scope, limit=self.peer_limit)

        standings = [
            PeerStanding(guide_id=guide_id, trips=trips.total, earnings=earnings.total, rating=ratings.average)
        ]
        for peer_id in peer_ids:
            if peer_id == guide_id:
                continue
            if should_stop is not None and should_stop():
                raise CalculationCancelled(f"Peer comparison for guide {guide_id} abandoned")
            try:
                peer_metrics = compute_peer(peer_id)
            except CalculationCancelled:
                raise
            except Exception:
                logger.warning("Skipping peer %s in comparison for guide %s", peer_id, guide_id, exc_info=True)
                continue
            if peer_metrics.source == "fallback":
                logger.warning("Skipping degraded peer %s in comparison for guide %s", peer_id, guide_id)
                continue
            standings.append(
                PeerStanding(
                    guide_id=peer_id,
                    trips=peer_metrics.trips.total,
                    earnings=peer_metrics.earnings.total,
                    rating=peer_metrics.ratings.average,
                )
            )

        by_trips = sorted(standings, key=lambda standing: standing.trips, reverse=True)
        by_earnings = sorted(standings, key=lambda standing: standing.earnings, reverse=True)
        by_ratings = sorted(
            (standing for standing in standings if standing.rating is not None),
            key=lambda standing: standing.rating or 0.0,
            reverse=True,
        )
        ranks = [
            rank
            for rank in (
                self._rank_of(guide_id, by_trips),
                self._rank_of(guide_id, by_earnings),
                self._rank_of(guide_id, by_ratings),
            )
            if rank is not None
        ]
        peer_ranking = sum(ranks) / len(ranks) if ranks else None
        peer_count = len(standings)

        top_trips = by_trips[0].trips if by_trips else 0
        top_earnings = by_earnings[0].earnings if by_earnings else 0.0
        top_rating = by_ratings[0].rating if by_ratings else None
        pooled_trips = sum(standing.trips for standing in standings)

        return ComparativeMetrics(
            peer_ranking=peer_ranking,
            peer_count=peer_count,
            top_percent=round(peer_ranking / peer_count * 100) if peer_ranking is not None else None,
            # Needs the previous period's ranking; not computed yet.
            percentile_improvement=None,
            top_performer_gap=TopPerformerGap(
                trips=(top_trips - trips.total) / top_trips * 100 if top_trips > 0 else None,
                earnings=(top_earnings - earnings.total) / top_earnings * 100 if top_earnings > 0 else None,
                ratings=(
                    (top_rating - ratings.average) / top_rating * 100
                    if top_rating and ratings.average
                    else None
                ),
            ),
            market_share=trips.total / pooled_trips * 100 if pooled_trips > 0 else None,
        )

    @staticmethod
    def _rank_of(guide_id: str, ordered: List[PeerStanding]) -> Optional[int]:
        for index, standing in enumerate(ordered):
            if standing.guide_id == guide_id:
                return index + 1
        return None
