"""API endpoints for recurring pattern detection and management."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional

from spendsense.dependencies import get_db
from spendsense.schemas.recurring import (
    DetectedPatternResponse,
    DetectionRequest,
    DetectionResponse,
    GroupDetectionResponse,
    PatternOutcomeResponse,
    ReconcileCounts,
    RecurringPatternResponse,
    RecurringPatternUpdate,
)
from spendsense.services import recurring_service
from spendsense.services.recurring_service import GroupDetectionResult

router = APIRouter(prefix="/accounts/{account_id}/recurring", tags=["recurring"])


def _group_detection_response(group: GroupDetectionResult) -> GroupDetectionResponse:
    response = GroupDetectionResponse(
        merchant_group_id=group.merchant_group_id,
        merchant_group_name=group.merchant_group_name,
        patterns=[DetectedPatternResponse.model_validate(p) for p in group.patterns],
        error=group.error,
        retryable=group.retryable,
    )
    if group.reconcile is not None:
        rec = group.reconcile
        response.outcomes = [
            PatternOutcomeResponse(
                status=o.status,
                frequency=o.pattern.frequency,
                transaction_type=o.pattern.transaction_type,
                pattern_id=o.pattern_id,
                error=o.error,
                retryable=o.retryable,
            )
            for o in rec.outcomes
        ]
        response.counts = ReconcileCounts(
            inserted=rec.inserted,
            updated=rec.updated,
            saved=rec.saved,
            skipped=rec.skipped,
            errors=rec.errors,
            decayed=rec.decayed,
        )
    return response


@router.post("/detect", response_model=DetectionResponse)
def detect_recurring(
    account_id: str,
    request: DetectionRequest,
    db: Session = Depends(get_db)
):
    """
    Run recurrence detection over every merchant group of the account.
    With dry_run the detected patterns are returned but not stored.
    """
    run = recurring_service.run_detection(
        db, account_id, lookback_months=request.lookback_months, dry_run=request.dry_run
    )

    return DetectionResponse(
        account_id=run.account_id,
        lookback_months=run.lookback_months,
        dry_run=run.dry_run,
        cancelled=run.cancelled,
        groups_processed=len(run.groups),
        groups_failed=run.groups_failed,
        patterns_detected=run.patterns_detected,
        inserted=run.inserted,
        updated=run.updated,
        skipped=run.skipped,
        errors=run.errors,
        groups=[_group_detection_response(g) for g in run.groups],
    )


@router.get("", response_model=List[RecurringPatternResponse])
def get_recurring_patterns(
    account_id: str,
    merchant_group_id: Optional[str] = Query(None),
    include_lapsed: bool = Query(True),
    include_inactive: bool = Query(False),
    db: Session = Depends(get_db)
):
    """Get stored recurring patterns."""
    return recurring_service.get_patterns(
        db, account_id, merchant_group_id, include_lapsed, include_inactive
    )


@router.get("/{pattern_id}", response_model=RecurringPatternResponse)
def get_recurring_pattern(
    account_id: str,
    pattern_id: str,
    db: Session = Depends(get_db)
):
    return recurring_service.get_pattern(db, account_id, pattern_id)


@router.patch("/{pattern_id}", response_model=RecurringPatternResponse)
def update_recurring_pattern(
    account_id: str,
    pattern_id: str,
    update: RecurringPatternUpdate,
    db: Session = Depends(get_db)
):
    """Confirm a pattern or toggle whether it is active."""
    return recurring_service.update_pattern(
        db, account_id, pattern_id, update.model_dump(exclude_unset=True)
    )


@router.delete("/{pattern_id}")
def delete_recurring_pattern(
    account_id: str,
    pattern_id: str,
    db: Session = Depends(get_db)
):
    """Explicitly remove a recurring pattern."""
    recurring_service.delete_pattern(db, account_id, pattern_id)
    return {"deleted": True}
