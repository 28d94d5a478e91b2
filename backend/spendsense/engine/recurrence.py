"""
Recurring payment detection for one merchant group's history.

Expenses and income are analysed separately. Inside each direction the
transactions are split into amount groups (so two subscriptions at one
merchant stay apart), and each group's day gaps are classified into frequency
bands. A band needs at least ``min_occurrences`` supporting transactions with
stable amounts before a pattern is reported.
"""

import calendar
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
import logging
import math
import statistics
from typing import Dict, List, Optional, Sequence, Tuple

from spendsense.exceptions import InvalidInputError
from spendsense.models.recurring import Frequency, TransactionType

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


@dataclass(frozen=True)
class FrequencyBand:
    frequency: Frequency
    nominal_days: int
    tolerance_days: int

    def contains(self, gap_days: int) -> bool:
        return abs(gap_days - self.nominal_days) <= self.tolerance_days


FREQUENCY_BANDS: Tuple[FrequencyBand, ...] = (
    FrequencyBand(Frequency.weekly, 7, 2),
    FrequencyBand(Frequency.biweekly, 14, 3),
    FrequencyBand(Frequency.monthly, 30, 5),
    FrequencyBand(Frequency.quarterly, 90, 10),
    FrequencyBand(Frequency.annual, 365, 15),
)


@dataclass(frozen=True)
class DetectorConfig:
    """Detection policy. Defaults are the documented business constants."""
    lookback_months: int = 24
    min_occurrences: int = 3
    amount_cv_ceiling: float = 0.15
    confidence_floor: float = 0.5
    evidence_saturation: int = 6
    regularity_weight: float = 0.4
    amount_weight: float = 0.35
    evidence_weight: float = 0.25
    amount_group_abs_tolerance: Decimal = Decimal("5.00")
    amount_group_rel_tolerance: Decimal = Decimal("0.05")
    irregular_min_occurrences: int = 4
    irregular_max_gap_cv: float = 0.2
    irregular_min_span_days: int = 90
    irregular_min_gap_days: int = 5


@dataclass(frozen=True)
class TransactionPoint:
    """One dated, signed amount from a merchant group's history."""
    id: str
    date: date
    amount: Decimal
    type: Optional[TransactionType] = None

    @property
    def transaction_type(self) -> TransactionType:
        if self.type is not None:
            return TransactionType(self.type)
        return TransactionType.expense if self.amount < 0 else TransactionType.income

    @property
    def magnitude(self) -> Decimal:
        return abs(Decimal(self.amount))


@dataclass
class DetectedPattern:
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
    transaction_ids: List[str] = field(default_factory=list)
    lapsed: bool = False
    merchant_group_id: Optional[str] = None


def add_months(value: date, months: int) -> date:
    """Shift a date by whole months, clamping to the last day of the target month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def calculate_next_expected(last_date: date, frequency: Frequency, interval_days: int = 30) -> date:
    """Calculate the next expected date based on frequency."""
    if frequency == Frequency.weekly:
        return last_date + timedelta(days=7)
    elif frequency == Frequency.biweekly:
        return last_date + timedelta(days=14)
    elif frequency == Frequency.monthly:
        return add_months(last_date, 1)
    elif frequency == Frequency.quarterly:
        return add_months(last_date, 3)
    elif frequency == Frequency.annual:
        return add_months(last_date, 12)
    else:
        return last_date + timedelta(days=max(1, interval_days))


def validate_lookback(lookback_months) -> int:
    if isinstance(lookback_months, bool) or not isinstance(lookback_months, int) or lookback_months <= 0:
        raise InvalidInputError(f"lookback_months must be a positive integer, got {lookback_months!r}")
    return lookback_months


def window_start_for(as_of: date, lookback_months: int) -> date:
    return add_months(as_of, -lookback_months)


def coefficient_of_variation(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    mean = statistics.fmean(values)
    if mean == 0:
        return math.inf
    return statistics.pstdev(values) / mean


def evidence_score(count: int, saturation: int) -> float:
    """Grows with diminishing returns and reaches 1.0 at ``saturation`` occurrences."""
    if count <= 1:
        return 0.0
    if saturation <= 1:
        return 1.0
    return min(1.0, math.log(count) / math.log(saturation))


def group_by_similar_amount(
    points: Sequence[TransactionPoint],
    config: DetectorConfig = DetectorConfig(),
) -> List[List[TransactionPoint]]:
    """
    Greedily group points whose amounts sit within ``max(abs, rel)`` of the
    group's first amount. Groups smaller than ``min_occurrences`` are dropped.
    """
    groups = []
    taken = set()
    for i, point in enumerate(points):
        if i in taken:
            continue
        reference = point.magnitude
        tolerance = max(config.amount_group_abs_tolerance,
                        reference * config.amount_group_rel_tolerance)
        members = [point]
        taken.add(i)
        for j in range(i + 1, len(points)):
            if j in taken:
                continue
            if abs(points[j].magnitude - reference) <= tolerance:
                members.append(points[j])
                taken.add(j)
        if len(members) >= config.min_occurrences:
            groups.append(members)
    return groups


def _dominant_band(gaps: Sequence[int]) -> Tuple[Optional[FrequencyBand], List[int]]:
    best_band = None
    best_indices: List[int] = []
    for band in FREQUENCY_BANDS:
        indices = [i for i, gap in enumerate(gaps) if band.contains(gap)]
        # strict ">" keeps the earlier (shorter) band on ties
        if len(indices) > len(best_indices):
            best_band, best_indices = band, indices
    return best_band, best_indices


def _build_pattern(
    qualifying: Sequence[TransactionPoint],
    transaction_type: TransactionType,
    frequency: Frequency,
    interval_days: int,
    regularity: float,
    as_of: date,
    config: DetectorConfig,
) -> Optional[DetectedPattern]:
    amounts = [p.magnitude for p in qualifying]
    cv = coefficient_of_variation([float(a) for a in amounts])
    if cv > config.amount_cv_ceiling:
        logger.debug("Rejected %s %s series: amount CV %.3f above ceiling",
                     frequency.value, transaction_type.value, cv)
        return None

    weight_total = config.regularity_weight + config.amount_weight + config.evidence_weight
    confidence = (
        config.regularity_weight * regularity
        + config.amount_weight * max(0.0, 1.0 - cv)
        + config.evidence_weight * evidence_score(len(qualifying), config.evidence_saturation)
    ) / weight_total if weight_total > 0 else 0.0

    last_seen = qualifying[-1].date
    next_expected = calculate_next_expected(last_seen, frequency, interval_days)

    return DetectedPattern(
        transaction_type=transaction_type,
        frequency=frequency,
        interval_days=interval_days,
        amount_min=min(amounts).quantize(CENT),
        amount_max=max(amounts).quantize(CENT),
        amount_typical=Decimal(statistics.median(amounts)).quantize(CENT),
        first_seen=qualifying[0].date,
        last_seen=last_seen,
        next_expected=next_expected,
        confidence=round(min(1.0, max(0.0, confidence)), 4),
        occurrence_count=len(qualifying),
        transaction_ids=[p.id for p in qualifying],
        lapsed=(as_of - next_expected).days > interval_days,
    )


def _analyze_banded(
    series: Sequence[TransactionPoint],
    gaps: Sequence[int],
    transaction_type: TransactionType,
    as_of: date,
    config: DetectorConfig,
) -> Optional[DetectedPattern]:
    band, gap_indices = _dominant_band(gaps)
    if band is None or len(gap_indices) < config.min_occurrences - 1:
        return None

    endpoints = sorted({i for g in gap_indices for i in (g, g + 1)})
    qualifying = [series[i] for i in endpoints]
    if len(qualifying) < config.min_occurrences:
        return None

    band_gaps = [gaps[i] for i in gap_indices]
    regularity = max(0.0, 1.0 - statistics.pstdev(band_gaps) / band.tolerance_days)

    return _build_pattern(qualifying, transaction_type, band.frequency,
                          band.nominal_days, regularity, as_of, config)


def _analyze_irregular(
    series: Sequence[TransactionPoint],
    gaps: Sequence[int],
    transaction_type: TransactionType,
    as_of: date,
    config: DetectorConfig,
) -> Optional[DetectedPattern]:
    if len(series) < config.irregular_min_occurrences:
        return None
    if min(gaps) < config.irregular_min_gap_days:
        return None
    if max(gaps) > 2 * min(gaps):
        return None
    if (series[-1].date - series[0].date).days < config.irregular_min_span_days:
        return None

    gap_cv = coefficient_of_variation(gaps)
    if gap_cv > config.irregular_max_gap_cv:
        return None

    interval_days = int(round(statistics.median(gaps)))
    return _build_pattern(series, transaction_type, Frequency.irregular,
                          interval_days, max(0.0, 1.0 - gap_cv), as_of, config)


def analyze_series(
    series: Sequence[TransactionPoint],
    transaction_type: TransactionType,
    as_of: date,
    config: DetectorConfig = DetectorConfig(),
) -> Optional[DetectedPattern]:
    """Infer a periodic pattern from one date-sorted, same-direction amount group."""
    if len(series) < config.min_occurrences:
        return None

    gaps = [(b.date - a.date).days for a, b in zip(series, series[1:])]
    pattern = _analyze_banded(series, gaps, transaction_type, as_of, config)
    if pattern is None:
        pattern = _analyze_irregular(series, gaps, transaction_type, as_of, config)
    return pattern


def detect(
    transactions: Sequence[TransactionPoint],
    lookback_months: Optional[int] = None,
    merchant_group_id: Optional[str] = None,
    as_of: Optional[date] = None,
    config: DetectorConfig = DetectorConfig(),
) -> List[DetectedPattern]:
    """
    Detect recurring patterns in one merchant group's transactions.

    Only transactions inside the lookback window ending at ``as_of`` are
    considered. Patterns below ``config.confidence_floor`` are discarded;
    lapsed patterns are returned with ``lapsed=True``.
    """
    if lookback_months is None:
        lookback_months = config.lookback_months
    lookback_months = validate_lookback(lookback_months)

    as_of = as_of or date.today()
    window_start = window_start_for(as_of, lookback_months)
    in_window = [t for t in transactions if window_start <= t.date <= as_of and t.amount != 0]

    buckets: Dict[TransactionType, List[TransactionPoint]] = {
        TransactionType.expense: [],
        TransactionType.income: [],
    }
    for point in in_window:
        buckets[point.transaction_type].append(point)

    patterns = []
    for transaction_type, points in buckets.items():
        points.sort(key=lambda p: (p.date, str(p.id)))
        for amount_group in group_by_similar_amount(points, config):
            amount_group.sort(key=lambda p: (p.date, str(p.id)))
            pattern = analyze_series(amount_group, transaction_type, as_of, config)
            if pattern is None:
                continue
            if pattern.confidence < config.confidence_floor:
                logger.debug("Discarded %s pattern with confidence %.3f",
                             pattern.frequency.value, pattern.confidence)
                continue
            pattern.merchant_group_id = merchant_group_id
            patterns.append(pattern)
    return patterns
