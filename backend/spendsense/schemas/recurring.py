"""Pydantic schemas for recurring patterns."""

from pydantic import BaseModel
from typing import Optional, List
from datetime import date, datetime
from decimal import Decimal

from spendsense.models.recurring import DetectionMethod, Frequency, TransactionType


class RecurringPatternResponse(BaseModel):
    id: str
    account_id: str
    merchant_group_id: str
    transaction_type: TransactionType
    frequency: Frequency
    interval_days: int
    amount_min: Decimal
    amount_max: Decimal
    amount_typical: Decimal
    first_seen_date: date
    last_seen_date: date
    next_expected_date: date
    confidence_score: float
    occurrence_count: int
    transaction_ids: List[str] = []
    is_lapsed: bool
    is_confirmed: bool
    is_active: bool
    detection_method: DetectionMethod
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class RecurringPatternUpdate(BaseModel):
    is_confirmed: Optional[bool] = None
    is_active: Optional[bool] = None


class DetectionRequest(BaseModel):
    """Request to run recurrence detection for an account."""
    lookback_months: Optional[int] = None
    dry_run: bool = False


class DetectedPatternResponse(BaseModel):
    """A pattern as detected, before reconciliation."""
    merchant_group_id: Optional[str] = None
    transaction_type: TransactionType
    frequency: Frequency
    interval_days: int
    amount_min: Decimal
    amount_max: Decimal
    amount_typical: Decimal
    first_seen: date
    last_seen: date
    next_expected: date
    confidence: float
    occurrence_count: int
    transaction_ids: List[str]
    lapsed: bool

    class Config:
        from_attributes = True


class PatternOutcomeResponse(BaseModel):
    status: str
    frequency: Frequency
    transaction_type: TransactionType
    pattern_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False


class ReconcileCounts(BaseModel):
    inserted: int
    updated: int
    saved: int
    skipped: int
    errors: int
    decayed: int


class GroupDetectionResponse(BaseModel):
    """Detection result for one merchant group."""
    merchant_group_id: str
    merchant_group_name: str
    patterns: List[DetectedPatternResponse]
    outcomes: List[PatternOutcomeResponse] = []
    counts: Optional[ReconcileCounts] = None
    error: Optional[str] = None
    retryable: bool = False


class DetectionResponse(BaseModel):
    """Response from an account-wide detection run."""
    account_id: str
    lookback_months: int
    dry_run: bool
    cancelled: bool
    groups_processed: int
    groups_failed: int
    patterns_detected: int
    inserted: int
    updated: int
    skipped: int
    errors: int
    groups: List[GroupDetectionResponse]
