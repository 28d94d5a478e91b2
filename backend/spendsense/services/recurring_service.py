"""Service for recurring pattern detection, reconciliation and management."""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
import logging
from typing import Any, Dict, List, Optional, Sequence, Set

from sqlalchemy.orm import Session

from spendsense.config import settings
from spendsense.engine import settings as engine_settings
from spendsense.engine.recurrence import (
    DetectedPattern,
    TransactionPoint,
    calculate_next_expected,
    detect,
    validate_lookback,
    window_start_for,
)
from spendsense.exceptions import (
    InvalidInputError,
    MerchantGroupNotFoundError,
    RecurringPatternNotFoundError,
    StoreError,
    store_errors,
)
from spendsense.models.merchant import MerchantGroup
from spendsense.models.recurring import DetectionMethod, RecurringPattern
from spendsense.models.transaction import Transaction
from spendsense.services.merchant_group_service import require_account

logger = logging.getLogger(__name__)

INSERTED = "inserted"
UPDATED = "updated"
SKIPPED = "skipped"
ERROR = "error"


@dataclass
class PatternOutcome:
    status: str
    pattern: DetectedPattern
    pattern_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False


@dataclass
class ReconcileResult:
    merchant_group_id: str
    outcomes: List[PatternOutcome] = field(default_factory=list)
    decayed: int = 0

    def _count(self, status: str) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def inserted(self) -> int:
        return self._count(INSERTED)

    @property
    def updated(self) -> int:
        return self._count(UPDATED)

    @property
    def saved(self) -> int:
        return self.inserted + self.updated

    @property
    def skipped(self) -> int:
        return self._count(SKIPPED)

    @property
    def errors(self) -> int:
        return self._count(ERROR)


@dataclass
class GroupDetectionResult:
    merchant_group_id: str
    merchant_group_name: str
    patterns: List[DetectedPattern] = field(default_factory=list)
    reconcile: Optional[ReconcileResult] = None
    error: Optional[str] = None
    retryable: bool = False


@dataclass
class DetectionRunResult:
    account_id: str
    lookback_months: int
    dry_run: bool
    cancelled: bool = False
    groups: List[GroupDetectionResult] = field(default_factory=list)

    @property
    def patterns_detected(self) -> int:
        return sum(len(g.patterns) for g in self.groups)

    @property
    def groups_failed(self) -> int:
        return sum(1 for g in self.groups if g.error)

    def _total(self, attr: str) -> int:
        return sum(getattr(g.reconcile, attr) for g in self.groups if g.reconcile)

    @property
    def inserted(self) -> int:
        return self._total("inserted")

    @property
    def updated(self) -> int:
        return self._total("updated")

    @property
    def skipped(self) -> int:
        return self._total("skipped")

    @property
    def errors(self) -> int:
        return self._total("errors") + self.groups_failed


def band_overlap(stored_min: Decimal, stored_max: Decimal, new_min: Decimal, new_max: Decimal) -> float:
    """
    Share of the new band that lies inside the stored band.

    A zero-width new band overlaps fully when its single amount lies inside
    the stored band.
    """
    stored_min, stored_max, new_min, new_max = (
        Decimal(v) for v in (stored_min, stored_max, new_min, new_max)
    )
    intersection = min(stored_max, new_max) - max(stored_min, new_min)
    if intersection < 0:
        return 0.0
    width = new_max - new_min
    if width <= 0:
        return 1.0
    return min(1.0, float(intersection / width))


def _find_match(
    stored: Sequence[RecurringPattern],
    pattern: DetectedPattern,
    claimed: Set[str],
    overlap_min: float,
) -> Optional[RecurringPattern]:
    best, best_overlap = None, 0.0
    for candidate in stored:
        # Deactivated patterns never absorb a re-detection
        if candidate.id in claimed or not candidate.is_active:
            continue
        if candidate.transaction_type != pattern.transaction_type:
            continue
        if candidate.frequency != pattern.frequency:
            continue
        overlap = band_overlap(candidate.amount_min, candidate.amount_max,
                               pattern.amount_min, pattern.amount_max)
        if overlap >= overlap_min and overlap > best_overlap:
            best, best_overlap = candidate, overlap
    return best


def _insert_pattern(db: Session, account_id: str, group_id: str, pattern: DetectedPattern) -> RecurringPattern:
    record = RecurringPattern(
        account_id=account_id,
        merchant_group_id=group_id,
        transaction_type=pattern.transaction_type,
        frequency=pattern.frequency,
        interval_days=pattern.interval_days,
        amount_min=pattern.amount_min,
        amount_max=pattern.amount_max,
        amount_typical=pattern.amount_typical,
        first_seen_date=pattern.first_seen,
        last_seen_date=pattern.last_seen,
        next_expected_date=pattern.next_expected,
        confidence_score=pattern.confidence,
        occurrence_count=pattern.occurrence_count,
        transaction_ids=list(pattern.transaction_ids),
        is_lapsed=pattern.lapsed,
        is_confirmed=False,
        is_active=True,
        detection_method=DetectionMethod.automatic,
    )
    db.add(record)
    db.flush()
    return record


def _merge_pattern(record: RecurringPattern, pattern: DetectedPattern) -> bool:
    """Fold a re-detected pattern into its stored record. Returns True when anything changed."""
    known = list(record.transaction_ids or [])
    known_set = set(known)
    new_ids = [tid for tid in pattern.transaction_ids if tid not in known_set]
    last_seen = max(record.last_seen_date, pattern.last_seen)

    changes: Dict[str, Any] = {
        "amount_min": min(Decimal(record.amount_min), pattern.amount_min),
        "amount_max": max(Decimal(record.amount_max), pattern.amount_max),
        "amount_typical": pattern.amount_typical,
        "first_seen_date": min(record.first_seen_date, pattern.first_seen),
        "last_seen_date": last_seen,
        "next_expected_date": calculate_next_expected(last_seen, pattern.frequency, pattern.interval_days),
        "confidence_score": pattern.confidence,
        "interval_days": pattern.interval_days,
        "is_lapsed": pattern.lapsed,
    }
    if new_ids:
        changes["transaction_ids"] = known + new_ids
        changes["occurrence_count"] = len(known) + len(new_ids)

    changed = False
    for attr, value in changes.items():
        current = getattr(record, attr)
        if isinstance(value, float):
            if current is not None and abs(current - value) < 1e-9:
                continue
        elif current == value:
            continue
        setattr(record, attr, value)
        changed = True
    return changed


def _decay_unmatched(
    stored: Sequence[RecurringPattern],
    matched: Set[str],
    as_of: date,
    decay: float,
) -> int:
    decayed = 0
    for record in stored:
        if record.id in matched:
            continue
        record.confidence_score = round(record.confidence_score * decay, 4)
        record.is_lapsed = (as_of - record.next_expected_date).days > record.interval_days
        decayed += 1
    return decayed


def _lock_group(db: Session, account_id: str, merchant_group_id: str) -> MerchantGroup:
    group = db.query(MerchantGroup).filter(
        MerchantGroup.id == merchant_group_id,
        MerchantGroup.account_id == account_id
    ).with_for_update().first()
    if not group:
        raise MerchantGroupNotFoundError(merchant_group_id)
    return group


def reconcile(
    db: Session,
    account_id: str,
    merchant_group_id: str,
    patterns: Sequence[DetectedPattern],
    as_of: Optional[date] = None,
) -> ReconcileResult:
    """
    Reconcile freshly detected patterns against the group's stored patterns.

    A detected pattern matches a stored one of the same direction and
    frequency whose amount band overlaps by at least
    ``recurrence_band_overlap_min``; matches are updated in place, the rest
    inserted. Each pattern is written in its own savepoint and reported
    separately. Stored patterns that were not re-detected decay in confidence
    and are never deleted. The merchant group row stays locked until commit.
    """
    require_account(db, account_id)
    as_of = as_of or date.today()
    result = ReconcileResult(merchant_group_id=merchant_group_id)

    with store_errors("lock merchant group"):
        _lock_group(db, account_id, merchant_group_id)
        stored = db.query(RecurringPattern).filter(
            RecurringPattern.account_id == account_id,
            RecurringPattern.merchant_group_id == merchant_group_id
        ).order_by(RecurringPattern.created_at, RecurringPattern.id).all()

    matched: Set[str] = set()
    for pattern in patterns:
        if pattern.merchant_group_id not in (None, merchant_group_id):
            result.outcomes.append(PatternOutcome(
                ERROR, pattern,
                error=f"Pattern belongs to merchant group {pattern.merchant_group_id}",
            ))
            continue
        try:
            with store_errors("reconcile pattern"):
                with db.begin_nested():
                    record = _find_match(stored, pattern, matched, settings.recurrence_band_overlap_min)
                    if record is None:
                        record = _insert_pattern(db, account_id, merchant_group_id, pattern)
                        stored.append(record)
                        status = INSERTED
                    elif _merge_pattern(record, pattern):
                        db.flush()
                        status = UPDATED
                    else:
                        status = SKIPPED
                    matched.add(record.id)
            result.outcomes.append(PatternOutcome(status, pattern, pattern_id=record.id))
        except StoreError as e:
            logger.warning("Failed to persist %s pattern for group %s: %s",
                           pattern.frequency.value, merchant_group_id, e)
            result.outcomes.append(PatternOutcome(ERROR, pattern, error=str(e), retryable=e.retryable))

    try:
        with store_errors("decay stale patterns"):
            with db.begin_nested():
                result.decayed = _decay_unmatched(stored, matched, as_of, settings.recurrence_stale_decay)
                db.flush()
    except StoreError as e:
        logger.warning("Failed to decay stale patterns for group %s: %s", merchant_group_id, e)

    with store_errors("commit reconciliation"):
        db.commit()

    logger.info(
        "Reconciled group %s: %d inserted, %d updated, %d skipped, %d errors",
        merchant_group_id, result.inserted, result.updated, result.skipped, result.errors
    )
    return result


def load_group_history(
    db: Session,
    merchant_group_id: str,
    window_start: Optional[date] = None,
    as_of: Optional[date] = None,
) -> List[TransactionPoint]:
    """Read one merchant group's transactions, oldest first."""
    with store_errors("load group history"):
        query = db.query(Transaction.id, Transaction.date, Transaction.amount).filter(
            Transaction.merchant_group_id == merchant_group_id
        )
        if window_start:
            query = query.filter(Transaction.date >= window_start)
        if as_of:
            query = query.filter(Transaction.date <= as_of)
        rows = query.order_by(Transaction.date, Transaction.id).all()

    return [TransactionPoint(id=row.id, date=row.date, amount=Decimal(row.amount)) for row in rows]


def run_detection(
    db: Session,
    account_id: str,
    lookback_months: Optional[int] = None,
    dry_run: bool = False,
    as_of: Optional[date] = None,
    cancel_event=None,
) -> DetectionRunResult:
    """
    Detect and reconcile recurring patterns for every merchant group of an account.

    Groups are processed in creation order; a failing group is reported and
    the run moves on. ``cancel_event`` (anything with ``is_set()``) stops the
    run between groups and the partial result is marked cancelled.
    """
    if lookback_months is None:
        lookback_months = settings.recurrence_lookback_months
    lookback_months = validate_lookback(lookback_months)
    require_account(db, account_id)

    as_of = as_of or date.today()
    window_start = window_start_for(as_of, lookback_months)
    config = engine_settings.detector_config()
    run = DetectionRunResult(account_id=account_id, lookback_months=lookback_months, dry_run=dry_run)

    with store_errors("list merchant groups"):
        groups = [
            (g.id, g.display_name)
            for g in db.query(MerchantGroup).filter(
                MerchantGroup.account_id == account_id
            ).order_by(MerchantGroup.created_at, MerchantGroup.id).all()
        ]

    for group_id, group_name in groups:
        if cancel_event is not None and cancel_event.is_set():
            logger.info("Detection run for account %s cancelled after %d groups", account_id, len(run.groups))
            run.cancelled = True
            break

        group_result = GroupDetectionResult(merchant_group_id=group_id, merchant_group_name=group_name)
        try:
            history = load_group_history(db, group_id, window_start, as_of)
            group_result.patterns = detect(history, lookback_months, group_id, as_of, config)
            if not dry_run:
                group_result.reconcile = reconcile(db, account_id, group_id, group_result.patterns, as_of)
        except StoreError as e:
            db.rollback()
            logger.warning("Detection failed for merchant group %s: %s", group_id, e)
            group_result.error = str(e)
            group_result.retryable = e.retryable
        run.groups.append(group_result)

    logger.info(
        "Detection run for account %s: %d groups, %d patterns, %d inserted, %d updated",
        account_id, len(run.groups), run.patterns_detected, run.inserted, run.updated
    )
    return run


def get_patterns(
    db: Session,
    account_id: str,
    merchant_group_id: Optional[str] = None,
    include_lapsed: bool = True,
    include_inactive: bool = False,
) -> List[RecurringPattern]:
    """Get stored recurring patterns for an account."""
    require_account(db, account_id)
    with store_errors("list recurring patterns"):
        query = db.query(RecurringPattern).filter(RecurringPattern.account_id == account_id)
        if merchant_group_id:
            query = query.filter(RecurringPattern.merchant_group_id == merchant_group_id)
        if not include_lapsed:
            query = query.filter(RecurringPattern.is_lapsed == False)
        if not include_inactive:
            query = query.filter(RecurringPattern.is_active == True)
        return query.order_by(RecurringPattern.next_expected_date).all()


def get_pattern(db: Session, account_id: str, pattern_id: str) -> RecurringPattern:
    with store_errors("load recurring pattern"):
        pattern = db.query(RecurringPattern).filter(
            RecurringPattern.id == pattern_id,
            RecurringPattern.account_id == account_id
        ).first()
    if not pattern:
        raise RecurringPatternNotFoundError(pattern_id)
    return pattern


def update_pattern(
    db: Session,
    account_id: str,
    pattern_id: str,
    updates: Dict[str, Any],
) -> RecurringPattern:
    """Confirm or (de)activate a stored pattern."""
    pattern = get_pattern(db, account_id, pattern_id)

    allowed = {"is_confirmed", "is_active"}
    unknown = set(updates) - allowed
    if unknown:
        raise InvalidInputError(f"Cannot update fields: {', '.join(sorted(unknown))}")

    with store_errors("update recurring pattern"):
        for attr, value in updates.items():
            if value is None:
                raise InvalidInputError(f"{attr} cannot be null")
            setattr(pattern, attr, value)
        db.commit()
        db.refresh(pattern)
    return pattern


def delete_pattern(db: Session, account_id: str, pattern_id: str) -> None:
    """Explicitly remove a stored pattern."""
    pattern = get_pattern(db, account_id, pattern_id)
    with store_errors("delete recurring pattern"):
        db.delete(pattern)
        db.commit()
