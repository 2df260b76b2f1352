from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional, Sequence

from src.core.branch_scope import BranchScope
from src.core.supabase import SupabaseClient
from src.models.guide_metrics import ReviewRecord, TripBookingRecord
from src.repositories.query_filters import (
    IN_FILTER_CHUNK_SIZE,
    MAX_QUERY_ROWS,
    chunked,
    in_filter,
)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class ReviewsRepository:
    def __init__(self, client: Optional[SupabaseClient] = None) -> None:
        self.client = client or SupabaseClient()

    def list_trip_bookings(
        self, trip_ids: Sequence[str], scope: BranchScope
    ) -> List[TripBookingRecord]:
        bookings: List[TripBookingRecord] = []
        for chunk in chunked(list(trip_ids)):
            rows = self.client.select(
                table="trip_bookings",
                select="trip_id,booking_id",
                filters=scope.apply([("trip_id", in_filter(chunk))]),
                limit=MAX_QUERY_ROWS,
            )
            bookings.extend(TripBookingRecord.model_validate(row) for row in rows)
        return bookings

    def list_reviews(
        self, booking_ids: Sequence[str], rated_only: bool = True
    ) -> List[ReviewRecord]:
        """Reviews for already-scoped bookings, oldest first."""
        reviews: List[ReviewRecord] = []
        for chunk in chunked(list(booking_ids)):
            filters = [("booking_id", in_filter(chunk))]
            if rated_only:
                filters.append(("guide_rating", "not.is.null"))
            rows = self.client.select(
                table="reviews",
                select="id,booking_id,guide_rating,guide_response,created_at",
                filters=filters,
                limit=MAX_QUERY_ROWS,
                order="created_at.asc",
            )
            reviews.extend(ReviewRecord.model_validate(row) for row in rows)
        if len(booking_ids) > IN_FILTER_CHUNK_SIZE:
            # Chunks are each ordered; restore a single chronological order across them.
            reviews.sort(key=lambda review: (review.created_at is None, review.created_at or _EPOCH))
        return reviews
