"""Service for merchant group resolution, auto-grouping and curation."""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from spendsense.config import settings
from spendsense.engine import settings as engine_settings
from spendsense.engine.clustering import (
    MerchantCluster,
    cluster_patterns,
    mapping_confidence,
    rank_candidates,
    validate_threshold,
)
from spendsense.engine.normalizer import display_name, normalize
from spendsense.exceptions import (
    AccountNotFoundError,
    GroupInUseError,
    InvalidInputError,
    MappingNotFoundError,
    MerchantGroupNotFoundError,
    StoreError,
    store_errors,
)
from spendsense.models.account import Account
from spendsense.models.merchant import GlobalMerchant, MerchantGroup, MerchantMapping
from spendsense.models.recurring import RecurringPattern
from spendsense.models.transaction import Transaction

logger = logging.getLogger(__name__)

# Confidence multiplier when two groups tie for the best match
AMBIGUOUS_CONFIDENCE_FACTOR = 0.5
TIE_EPSILON = 1e-9


@dataclass(frozen=True)
class Resolved:
    group: MerchantGroup
    confidence: float
    is_new: bool
    canonical_pattern: str


@dataclass(frozen=True)
class Unresolved:
    reason: str
    canonical_pattern: str


@dataclass(frozen=True)
class AmbiguousLowConfidence:
    group: MerchantGroup
    candidates: List[MerchantGroup]
    confidence: float
    canonical_pattern: str


Resolution = Union[Resolved, Unresolved, AmbiguousLowConfidence]


@dataclass
class BatchResolution:
    description: str
    resolution: Optional[Resolution] = None
    error: Optional[str] = None
    retryable: bool = False


@dataclass
class ApplyClustersResult:
    groups_created: int = 0
    groups_reused: int = 0
    mappings_created: int = 0
    mappings_updated: int = 0
    manual_skipped: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class AutoGroupResult:
    dry_run: bool
    threshold: float
    total_descriptions: int
    clusters: List[MerchantCluster]
    raw_samples: Dict[str, str]
    applied: Optional[ApplyClustersResult] = None


@dataclass
class BackfillResult:
    total: int = 0
    updated: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)


def require_account(db: Session, account_id: str) -> Account:
    """Return the account or reject the call as out of scope."""
    with store_errors("load account"):
        account = db.query(Account).filter(Account.id == account_id).first()
    if not account:
        raise AccountNotFoundError(account_id)
    return account


def _resolve_threshold(threshold: Optional[float]) -> float:
    if threshold is None:
        threshold = settings.merchant_similarity_threshold
    return validate_threshold(threshold)


def _find_mapping(db: Session, account_id: str, canonical: str) -> Optional[MerchantMapping]:
    return db.query(MerchantMapping).filter(
        MerchantMapping.account_id == account_id,
        MerchantMapping.canonical_pattern == canonical
    ).first()


def _record_usage(db: Session, mapping: MerchantMapping, confidence: Optional[float] = None) -> None:
    """Bump usage counters in SQL so concurrent increments are never lost."""
    now = datetime.utcnow()
    values: Dict[Any, Any] = {
        MerchantMapping.usage_count: MerchantMapping.usage_count + 1,
        MerchantMapping.last_used_at: case(
            (MerchantMapping.last_used_at.is_(None), now),
            (MerchantMapping.last_used_at < now, now),
            else_=MerchantMapping.last_used_at,
        ),
    }
    if confidence is not None:
        values[MerchantMapping.confidence_score] = case(
            (MerchantMapping.confidence_score < confidence, confidence),
            else_=MerchantMapping.confidence_score,
        )
    db.query(MerchantMapping).filter(MerchantMapping.id == mapping.id).update(
        values, synchronize_session=False
    )
    db.expire(mapping)


def _account_groups(db: Session, account_id: str) -> List[MerchantGroup]:
    return db.query(MerchantGroup).filter(
        MerchantGroup.account_id == account_id
    ).order_by(MerchantGroup.created_at, MerchantGroup.id).all()


def _resolution_for_mapping(mapping: MerchantMapping, canonical: str) -> Resolution:
    if mapping.merchant_group_id is None:
        reason = "ungrouped" if not mapping.is_automatic else "unassigned"
        return Unresolved(reason=reason, canonical_pattern=canonical)
    return Resolved(
        group=mapping.merchant_group,
        confidence=mapping.confidence_score,
        is_new=False,
        canonical_pattern=canonical,
    )


def _resolve_pattern(
    db: Session,
    account_id: str,
    raw: str,
    canonical: str,
    threshold: float,
) -> Resolution:
    """
    Link one canonical pattern to a merchant group.

    Existing mappings win. Otherwise the pattern joins the best-matching group
    representative or gets a new group. The insert runs in a savepoint: if a
    concurrent caller inserted the same (account, pattern) first, the
    savepoint is rolled back and the winner's mapping is returned.
    """
    mapping = _find_mapping(db, account_id, canonical)
    if mapping:
        _record_usage(db, mapping)
        return _resolution_for_mapping(mapping, canonical)

    groups = _account_groups(db, account_id)
    groups_by_id = {g.id: g for g in groups}
    ranked = rank_candidates(
        canonical,
        [(g.id, g.canonical_pattern) for g in groups],
        threshold,
        engine_settings.similarity_scorer(),
    )

    target: Optional[MerchantGroup] = None
    tied: List[MerchantGroup] = []
    confidence = 1.0
    if ranked:
        top_score = ranked[0][1]
        tied = [groups_by_id[gid] for gid, score in ranked if top_score - score <= TIE_EPSILON]
        target = tied[0]
        confidence = mapping_confidence(top_score)
        if len(tied) > 1:
            confidence = round(confidence * AMBIGUOUS_CONFIDENCE_FACTOR, 2)
            logger.info(
                "Pattern %r matches %d groups equally (%.3f); linked to %s with low confidence",
                canonical, len(tied), top_score, target.id
            )

    is_new = target is None
    try:
        with db.begin_nested():
            if target is None:
                target = MerchantGroup(
                    account_id=account_id,
                    display_name=display_name(canonical),
                    canonical_pattern=canonical,
                    is_automatic=True,
                )
                db.add(target)
                db.flush()
            db.add(MerchantMapping(
                account_id=account_id,
                raw_pattern=raw,
                canonical_pattern=canonical,
                merchant_group_id=target.id,
                is_automatic=True,
                confidence_score=confidence,
                usage_count=1,
                last_used_at=datetime.utcnow(),
            ))
            db.flush()
    except IntegrityError:
        # Lost the race: another caller inserted this pattern first
        winner = _find_mapping(db, account_id, canonical)
        if winner is None:
            raise
        logger.info("Concurrent insert for pattern %r; using existing mapping %s", canonical, winner.id)
        _record_usage(db, winner)
        return _resolution_for_mapping(winner, canonical)

    if len(tied) > 1:
        return AmbiguousLowConfidence(
            group=target, candidates=tied, confidence=confidence, canonical_pattern=canonical
        )
    return Resolved(group=target, confidence=confidence, is_new=is_new, canonical_pattern=canonical)


def get_or_create_group(
    db: Session,
    account_id: str,
    description: str,
    threshold: Optional[float] = None,
) -> Tuple[MerchantGroup, bool]:
    """
    Return the merchant group for a description, creating it if needed.
    Returns (group, is_new).
    """
    threshold = _resolve_threshold(threshold)
    require_account(db, account_id)

    canonical = normalize(description, engine_settings.normalizer_config())
    if not canonical:
        raise InvalidInputError(f"Description {description!r} has no merchant signature")

    with store_errors("get_or_create_group"):
        resolution = _resolve_pattern(db, account_id, description, canonical, threshold)
        db.commit()

    if isinstance(resolution, Unresolved):
        raise InvalidInputError(
            f"Pattern {canonical!r} was ungrouped and will not be linked automatically"
        )
    if isinstance(resolution, Resolved):
        return resolution.group, resolution.is_new
    return resolution.group, False


def resolve_description(
    db: Session,
    account_id: str,
    description: str,
    threshold: Optional[float] = None,
) -> Resolution:
    """Resolve one description to a Resolved / Unresolved / AmbiguousLowConfidence outcome."""
    threshold = _resolve_threshold(threshold)
    require_account(db, account_id)

    canonical = normalize(description, engine_settings.normalizer_config())
    if not canonical:
        return Unresolved(reason="empty", canonical_pattern="")

    with store_errors("resolve_description"):
        resolution = _resolve_pattern(db, account_id, description, canonical, threshold)
        db.commit()
    return resolution


def resolve_descriptions(
    db: Session,
    account_id: str,
    descriptions: List[str],
    threshold: Optional[float] = None,
) -> List[BatchResolution]:
    """Resolve many descriptions; one failing item never aborts the rest."""
    threshold = _resolve_threshold(threshold)
    require_account(db, account_id)
    normalizer = engine_settings.normalizer_config()

    results = []
    for description in descriptions:
        canonical = normalize(description, normalizer)
        if not canonical:
            results.append(BatchResolution(description, Unresolved("empty", "")))
            continue
        try:
            with store_errors("resolve_description"):
                resolution = _resolve_pattern(db, account_id, description, canonical, threshold)
                db.commit()
            results.append(BatchResolution(description, resolution))
        except StoreError as e:
            db.rollback()
            logger.warning("Failed to resolve %r: %s", description, e)
            results.append(BatchResolution(description, error=str(e), retryable=e.retryable))
    return results


def lookup_group_for_description(
    db: Session,
    account_id: str,
    description: str,
) -> Optional[MerchantGroup]:
    """Read-only lookup: the group mapped to this description, if any."""
    require_account(db, account_id)
    canonical = normalize(description, engine_settings.normalizer_config())
    if not canonical:
        return None
    with store_errors("lookup_group_for_description"):
        mapping = _find_mapping(db, account_id, canonical)
        return mapping.merchant_group if mapping else None


def collect_description_patterns(
    db: Session,
    account_id: str,
) -> Tuple[int, Dict[str, int], Dict[str, str]]:
    """
    Aggregate the account's distinct descriptions by canonical pattern.

    Returns (distinct description count, pattern -> occurrences,
    pattern -> most frequent raw spelling).
    """
    with store_errors("collect descriptions"):
        rows = db.query(
            Transaction.description, func.count(Transaction.id)
        ).filter(
            Transaction.account_id == account_id
        ).group_by(
            Transaction.description
        ).order_by(
            func.min(Transaction.date), Transaction.description
        ).all()

    normalizer = engine_settings.normalizer_config()
    counts: Dict[str, int] = {}
    raw_counts: Dict[str, Counter] = {}
    for description, count in rows:
        canonical = normalize(description, normalizer)
        if not canonical:
            continue
        counts[canonical] = counts.get(canonical, 0) + count
        raw_counts.setdefault(canonical, Counter())[description] += count

    raw_samples = {
        pattern: spellings.most_common(1)[0][0] for pattern, spellings in raw_counts.items()
    }
    return len(rows), counts, raw_samples


def _target_group_for_cluster(
    db: Session,
    account_id: str,
    cluster: MerchantCluster,
    existing: Dict[str, MerchantMapping],
) -> Tuple[MerchantGroup, bool]:
    for pattern in cluster.patterns:
        mapping = existing.get(pattern)
        if mapping and mapping.is_automatic and mapping.merchant_group_id:
            return mapping.merchant_group, False

    group = db.query(MerchantGroup).filter(
        MerchantGroup.account_id == account_id,
        MerchantGroup.canonical_pattern == cluster.representative
    ).order_by(MerchantGroup.created_at, MerchantGroup.id).first()
    if group:
        return group, False

    group = MerchantGroup(
        account_id=account_id,
        display_name=cluster.display_name,
        canonical_pattern=cluster.representative,
        is_automatic=True,
    )
    db.add(group)
    db.flush()
    return group, True


def _apply_cluster(
    db: Session,
    account_id: str,
    cluster: MerchantCluster,
    raw_samples: Dict[str, str],
    result: ApplyClustersResult,
) -> None:
    existing = {
        m.canonical_pattern: m
        for m in db.query(MerchantMapping).filter(
            MerchantMapping.account_id == account_id,
            MerchantMapping.canonical_pattern.in_(cluster.patterns)
        ).all()
    }

    writable = [p for p in cluster.patterns if p not in existing or existing[p].is_automatic]
    result.manual_skipped += len(cluster.patterns) - len(writable)
    if not writable:
        return

    group, created = _target_group_for_cluster(db, account_id, cluster, existing)
    if created:
        result.groups_created += 1
    else:
        result.groups_reused += 1

    confidence = mapping_confidence(cluster.confidence, len(cluster.members))
    for member in cluster.members:
        if member.pattern not in writable:
            continue
        mapping = existing.get(member.pattern)
        if mapping is None:
            db.add(MerchantMapping(
                account_id=account_id,
                raw_pattern=raw_samples.get(member.pattern, member.pattern),
                canonical_pattern=member.pattern,
                merchant_group_id=group.id,
                is_automatic=True,
                confidence_score=confidence,
                usage_count=member.occurrences,
            ))
            result.mappings_created += 1
        elif mapping.merchant_group_id != group.id:
            mapping.merchant_group_id = group.id
            mapping.confidence_score = confidence
            result.mappings_updated += 1
        elif mapping.confidence_score < confidence:
            mapping.confidence_score = confidence
            result.mappings_updated += 1
    db.flush()


def apply_clusters(
    db: Session,
    account_id: str,
    clusters: List[MerchantCluster],
    raw_samples: Optional[Dict[str, str]] = None,
) -> ApplyClustersResult:
    """
    Persist clusters as merchant groups and mappings.

    Manual mappings (is_automatic = False) are never touched. Each cluster is
    written in its own savepoint so one failure does not lose the others.
    """
    require_account(db, account_id)
    raw_samples = raw_samples or {}
    result = ApplyClustersResult()

    for cluster in clusters:
        try:
            with db.begin_nested():
                _apply_cluster(db, account_id, cluster, raw_samples, result)
        except SQLAlchemyError as e:
            result.failed += 1
            result.errors.append(f"{cluster.display_name}: {e.__class__.__name__}")
            logger.warning("Failed to apply cluster %r: %s", cluster.representative, e)

    with store_errors("apply_clusters"):
        db.commit()
    logger.info(
        "Applied %d clusters for account %s: %d groups created, %d mappings created, %d failed",
        len(clusters), account_id, result.groups_created, result.mappings_created, result.failed
    )
    return result


def auto_group(
    db: Session,
    account_id: str,
    threshold: Optional[float] = None,
    dry_run: bool = False,
) -> AutoGroupResult:
    """Cluster every distinct description of the account; preview or persist."""
    threshold = _resolve_threshold(threshold)
    require_account(db, account_id)

    total, counts, raw_samples = collect_description_patterns(db, account_id)
    clusters = cluster_patterns(
        counts,
        threshold,
        engine_settings.similarity_scorer(),
        engine_settings.clustering_config(),
    )

    result = AutoGroupResult(
        dry_run=dry_run,
        threshold=threshold,
        total_descriptions=total,
        clusters=clusters,
        raw_samples=raw_samples,
    )
    if not dry_run and clusters:
        result.applied = apply_clusters(db, account_id, clusters, raw_samples)
    elif not dry_run:
        result.applied = ApplyClustersResult()
    return result


def backfill_transaction_groups(db: Session, account_id: str) -> BackfillResult:
    """Link transactions without a merchant group to their description's mapping."""
    require_account(db, account_id)
    normalizer = engine_settings.normalizer_config()

    with store_errors("load unlinked transactions"):
        transactions = db.query(Transaction).filter(
            Transaction.account_id == account_id,
            Transaction.merchant_group_id.is_(None)
        ).order_by(Transaction.date, Transaction.id).all()

    result = BackfillResult(total=len(transactions))
    group_for_pattern: Dict[str, Optional[str]] = {}

    for txn in transactions:
        canonical = normalize(txn.description, normalizer)
        try:
            with db.begin_nested():
                if canonical not in group_for_pattern:
                    mapping = _find_mapping(db, account_id, canonical) if canonical else None
                    group_for_pattern[canonical] = mapping.merchant_group_id if mapping else None
                group_id = group_for_pattern[canonical]
                if group_id is None:
                    result.skipped += 1
                    continue
                txn.merchant_group_id = group_id
                db.flush()
                result.updated += 1
        except SQLAlchemyError as e:
            result.errors.append(f"Transaction {txn.id}: {e.__class__.__name__}")
            logger.warning("Backfill failed for transaction %s: %s", txn.id, e)

    with store_errors("backfill"):
        db.commit()
    return result


def get_group(db: Session, account_id: str, group_id: str) -> MerchantGroup:
    with store_errors("load merchant group"):
        group = db.query(MerchantGroup).filter(
            MerchantGroup.id == group_id,
            MerchantGroup.account_id == account_id
        ).first()
    if not group:
        raise MerchantGroupNotFoundError(group_id)
    return group


def get_groups(db: Session, account_id: str) -> List[MerchantGroup]:
    require_account(db, account_id)
    with store_errors("list merchant groups"):
        return db.query(MerchantGroup).filter(
            MerchantGroup.account_id == account_id
        ).order_by(MerchantGroup.display_name).all()


def get_group_counts(db: Session, group_id: str) -> Tuple[int, int]:
    """Return (mapping count, transaction count) for a group."""
    with store_errors("count group usage"):
        mapping_count = db.query(MerchantMapping).filter(
            MerchantMapping.merchant_group_id == group_id
        ).count()
        transaction_count = db.query(Transaction).filter(
            Transaction.merchant_group_id == group_id
        ).count()
    return mapping_count, transaction_count


def _require_global_merchant(db: Session, global_merchant_id: Optional[str]) -> None:
    if global_merchant_id is None:
        return
    exists = db.query(GlobalMerchant.id).filter(GlobalMerchant.id == global_merchant_id).first()
    if not exists:
        raise InvalidInputError(f"Global merchant {global_merchant_id} not found")


def create_group(
    db: Session,
    account_id: str,
    name: str,
    global_merchant_id: Optional[str] = None,
) -> MerchantGroup:
    """Manually create a merchant group."""
    require_account(db, account_id)
    name = (name or "").strip()
    if not name:
        raise InvalidInputError("display_name is required")

    with store_errors("create merchant group"):
        _require_global_merchant(db, global_merchant_id)
        group = MerchantGroup(
            account_id=account_id,
            display_name=name,
            canonical_pattern=normalize(name, engine_settings.normalizer_config()),
            is_automatic=False,
            global_merchant_id=global_merchant_id,
        )
        db.add(group)
        db.commit()
        db.refresh(group)
    return group


def update_group(
    db: Session,
    account_id: str,
    group_id: str,
    updates: Dict[str, Any],
) -> MerchantGroup:
    """
    Rename a group or change its global merchant link.

    Display-only: neither mappings nor recurring pattern confidence change.
    """
    group = get_group(db, account_id, group_id)

    with store_errors("update merchant group"):
        if "display_name" in updates:
            name = (updates["display_name"] or "").strip()
            if not name:
                raise InvalidInputError("display_name cannot be empty")
            group.display_name = name
        if "global_merchant_id" in updates:
            _require_global_merchant(db, updates["global_merchant_id"])
            group.global_merchant_id = updates["global_merchant_id"]
        db.commit()
        db.refresh(group)
    return group


def delete_group(db: Session, account_id: str, group_id: str) -> None:
    """Delete a group that no mapping or recurring pattern references."""
    group = get_group(db, account_id, group_id)

    with store_errors("delete merchant group"):
        mapping_count = db.query(MerchantMapping).filter(
            MerchantMapping.merchant_group_id == group.id
        ).count()
        pattern_count = db.query(RecurringPattern).filter(
            RecurringPattern.merchant_group_id == group.id
        ).count()
        if mapping_count or pattern_count:
            raise GroupInUseError(group.id, mapping_count, pattern_count)

        db.query(Transaction).filter(
            Transaction.merchant_group_id == group.id
        ).update({Transaction.merchant_group_id: None}, synchronize_session=False)
        db.delete(group)
        db.commit()


def merge_groups(db: Session, account_id: str, source_id: str, target_id: str) -> MerchantGroup:
    """Fold the source group into the target and delete the source."""
    if source_id == target_id:
        raise InvalidInputError("Cannot merge a merchant group into itself")
    source = get_group(db, account_id, source_id)
    target = get_group(db, account_id, target_id)

    with store_errors("merge merchant groups"):
        # Moved mappings become manual so re-clustering cannot undo the merge
        db.query(MerchantMapping).filter(
            MerchantMapping.merchant_group_id == source.id
        ).update(
            {MerchantMapping.merchant_group_id: target.id, MerchantMapping.is_automatic: False},
            synchronize_session=False
        )
        db.query(Transaction).filter(
            Transaction.merchant_group_id == source.id
        ).update({Transaction.merchant_group_id: target.id}, synchronize_session=False)
        db.query(RecurringPattern).filter(
            RecurringPattern.merchant_group_id == source.id
        ).update({RecurringPattern.merchant_group_id: target.id}, synchronize_session=False)

        db.expire_all()
        db.delete(source)
        db.commit()
        db.refresh(target)
    return target


def get_mappings(
    db: Session,
    account_id: str,
    merchant_group_id: Optional[str] = None,
) -> List[MerchantMapping]:
    require_account(db, account_id)
    with store_errors("list merchant mappings"):
        query = db.query(MerchantMapping).filter(MerchantMapping.account_id == account_id)
        if merchant_group_id:
            query = query.filter(MerchantMapping.merchant_group_id == merchant_group_id)
        return query.order_by(MerchantMapping.canonical_pattern).all()


def set_mapping_group(
    db: Session,
    account_id: str,
    mapping_id: str,
    merchant_group_id: Optional[str],
) -> MerchantMapping:
    """
    Manually regroup (or ungroup, with ``None``) a mapping.

    The mapping becomes manual and is skipped by later automatic clustering.
    """
    with store_errors("load merchant mapping"):
        mapping = db.query(MerchantMapping).filter(
            MerchantMapping.id == mapping_id,
            MerchantMapping.account_id == account_id
        ).first()
    if not mapping:
        raise MappingNotFoundError(mapping_id)

    if merchant_group_id is not None:
        get_group(db, account_id, merchant_group_id)

    with store_errors("update merchant mapping"):
        mapping.merchant_group_id = merchant_group_id
        mapping.is_automatic = False
        db.commit()
        db.refresh(mapping)
    return mapping
