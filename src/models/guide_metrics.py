from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel


class GuideScopeRecord(BaseModel):
    id: str
    branch_id: Optional[str] = None
    role: Optional[str] = None


class TripRecord(BaseModel):
    status: Optional[str] = None
    guest_count: Optional[int] = None
    scheduled_start_at: Optional[datetime] = None
    scheduled_end_at: Optional[datetime] = None


class TripAssignmentRecord(BaseModel):
    trip_id: str
    guide_id: Optional[str] = None
    guide_role: Optional[str] = None
    check_in_at: Optional[datetime] = None
    check_out_at: Optional[datetime] = None
    is_late: Optional[bool] = None
    fee_amount: Optional[float] = None
    documentation_uploaded: Optional[bool] = None
    trip: Optional[TripRecord] = None

    @property
    def trip_status(self) -> Optional[str]:
        return self.trip.status if self.trip else None


class WalletRecord(BaseModel):
    id: str
    guide_id: Optional[str] = None


class WalletTransactionRecord(BaseModel):
    id: Optional[str] = None
    amount: Optional[float] = None
    transaction_type: Optional[str] = None
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    created_at: Optional[datetime] = None


class WalletGoalRecord(BaseModel):
    auto_save_percentage: Optional[float] = None


class TripBookingRecord(BaseModel):
    trip_id: str
    booking_id: str


class ReviewRecord(BaseModel):
    id: Optional[str] = None
    booking_id: Optional[str] = None
    guide_rating: Optional[int] = None
    guide_response: Optional[str] = None
    created_at: Optional[datetime] = None


class SkillRecord(BaseModel):
    id: Optional[str] = None
    level: Optional[int] = None
    validated_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_certified(self) -> bool:
        return self.validated_at is not None


class AssessmentRecord(BaseModel):
    id: Optional[str] = None
    status: Optional[str] = None
    score: Optional[float] = None
    completed_at: Optional[datetime] = None


class SalaryDeductionRecord(BaseModel):
    id: Optional[str] = None
    amount: Optional[float] = None
    deduction_type: Optional[str] = None
    created_at: Optional[datetime] = None


class PerformanceSnapshotRecord(BaseModel):
    guide_id: str
    period_type: Optional[str] = None
    period_start: date
    period_end: date
    total_trips: Optional[int] = None
    completed_trips: Optional[int] = None
    cancelled_trips: Optional[int] = None
    total_earnings: Optional[float] = None
    average_per_trip: Optional[float] = None
    average_rating: Optional[float] = None
    total_ratings: Optional[int] = None
    overall_score: Optional[float] = None
    performance_tier: Optional[str] = None
    on_time_rate: Optional[float] = None
    skills_improved: Optional[int] = None
    assessments_completed: Optional[int] = None
    customer_satisfaction_score: Optional[float] = None
