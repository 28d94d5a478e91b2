"""API endpoints for merchant group resolution, auto-grouping and curation."""

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from typing import List, Optional

from spendsense.dependencies import get_db
from spendsense.models.merchant import MerchantGroup
from spendsense.schemas.merchant import (
    ApplyClustersCounts,
    AutoGroupRequest,
    AutoGroupResponse,
    BackfillResponse,
    BatchResolutionItem,
    BatchResolveRequest,
    ClusterPreview,
    MergeGroupsRequest,
    MerchantGroupCreate,
    MerchantGroupResponse,
    MerchantGroupUpdate,
    MerchantMappingResponse,
    MerchantMappingUpdate,
    ResolutionResponse,
    ResolveRequest,
)
from spendsense.services import merchant_group_service
from spendsense.services.merchant_group_service import (
    AmbiguousLowConfidence,
    Resolution,
    Resolved,
)

router = APIRouter(prefix="/accounts/{account_id}/merchant-groups", tags=["merchant-groups"])
mappings_router = APIRouter(prefix="/accounts/{account_id}/merchant-mappings", tags=["merchant-mappings"])


def _group_response(db: Session, group: MerchantGroup) -> MerchantGroupResponse:
    response = MerchantGroupResponse.model_validate(group)
    response.mapping_count, response.transaction_count = merchant_group_service.get_group_counts(db, group.id)
    return response


def _resolution_response(resolution: Resolution) -> ResolutionResponse:
    if isinstance(resolution, Resolved):
        return ResolutionResponse(
            status="resolved",
            canonical_pattern=resolution.canonical_pattern,
            group=MerchantGroupResponse.model_validate(resolution.group),
            confidence=resolution.confidence,
            is_new=resolution.is_new,
        )
    if isinstance(resolution, AmbiguousLowConfidence):
        return ResolutionResponse(
            status="ambiguous",
            canonical_pattern=resolution.canonical_pattern,
            group=MerchantGroupResponse.model_validate(resolution.group),
            confidence=resolution.confidence,
            candidate_group_ids=[g.id for g in resolution.candidates],
        )
    return ResolutionResponse(
        status="unresolved",
        canonical_pattern=resolution.canonical_pattern,
        reason=resolution.reason,
    )


@router.post("/resolve", response_model=ResolutionResponse)
def resolve_description(
    account_id: str,
    request: ResolveRequest,
    db: Session = Depends(get_db)
):
    """Resolve a transaction description to its merchant group."""
    resolution = merchant_group_service.resolve_description(
        db, account_id, request.description, request.threshold
    )
    return _resolution_response(resolution)


@router.post("/resolve/batch", response_model=List[BatchResolutionItem])
def resolve_descriptions(
    account_id: str,
    request: BatchResolveRequest,
    db: Session = Depends(get_db)
):
    """Resolve many descriptions; failures are reported per item."""
    results = merchant_group_service.resolve_descriptions(
        db, account_id, request.descriptions, request.threshold
    )
    return [
        BatchResolutionItem(
            description=item.description,
            resolution=_resolution_response(item.resolution) if item.resolution else None,
            error=item.error,
            retryable=item.retryable,
        )
        for item in results
    ]


@router.get("/lookup", response_model=MerchantGroupResponse)
def lookup_group(
    account_id: str,
    description: str = Query(...),
    db: Session = Depends(get_db)
):
    """Find the merchant group already mapped to a description."""
    group = merchant_group_service.lookup_group_for_description(db, account_id, description)
    if not group:
        raise HTTPException(status_code=404, detail="No merchant group for this description")
    return _group_response(db, group)


@router.post("/auto-group", response_model=AutoGroupResponse)
def auto_group(
    account_id: str,
    request: AutoGroupRequest,
    db: Session = Depends(get_db)
):
    """Cluster all distinct descriptions of the account (preview with dry_run)."""
    result = merchant_group_service.auto_group(db, account_id, request.threshold, request.dry_run)

    clusters = [
        ClusterPreview(
            representative=cluster.representative,
            display_name=cluster.display_name,
            patterns=cluster.patterns,
            sample_descriptions=[result.raw_samples.get(p, p) for p in cluster.patterns[:5]],
            occurrences=cluster.occurrences,
            confidence=cluster.confidence,
        )
        for cluster in result.clusters
    ]
    applied = None
    if result.applied is not None:
        applied = ApplyClustersCounts(**vars(result.applied))

    return AutoGroupResponse(
        dry_run=result.dry_run,
        threshold=result.threshold,
        total_descriptions=result.total_descriptions,
        cluster_count=len(clusters),
        clusters=clusters,
        applied=applied,
    )


@router.post("/backfill", response_model=BackfillResponse)
def backfill(
    account_id: str,
    db: Session = Depends(get_db)
):
    """Link historical transactions missing a merchant group."""
    result = merchant_group_service.backfill_transaction_groups(db, account_id)
    return BackfillResponse(**vars(result))


@router.get("", response_model=List[MerchantGroupResponse])
def list_groups(
    account_id: str,
    db: Session = Depends(get_db)
):
    """List merchant groups with usage counts."""
    groups = merchant_group_service.get_groups(db, account_id)
    return [_group_response(db, group) for group in groups]


@router.post("", response_model=MerchantGroupResponse, status_code=201)
def create_group(
    account_id: str,
    data: MerchantGroupCreate,
    db: Session = Depends(get_db)
):
    """Manually create a merchant group."""
    group = merchant_group_service.create_group(db, account_id, data.display_name, data.global_merchant_id)
    return _group_response(db, group)


@router.get("/{group_id}", response_model=MerchantGroupResponse)
def get_group(
    account_id: str,
    group_id: str,
    db: Session = Depends(get_db)
):
    group = merchant_group_service.get_group(db, account_id, group_id)
    return _group_response(db, group)


@router.patch("/{group_id}", response_model=MerchantGroupResponse)
def update_group(
    account_id: str,
    group_id: str,
    update: MerchantGroupUpdate,
    db: Session = Depends(get_db)
):
    """Rename a group or change its global merchant link."""
    group = merchant_group_service.update_group(
        db, account_id, group_id, update.model_dump(exclude_unset=True)
    )
    return _group_response(db, group)


@router.delete("/{group_id}")
def delete_group(
    account_id: str,
    group_id: str,
    db: Session = Depends(get_db)
):
    """Delete a merchant group that nothing references."""
    merchant_group_service.delete_group(db, account_id, group_id)
    return {"deleted": True}


@router.post("/{group_id}/merge", response_model=MerchantGroupResponse)
def merge_group(
    account_id: str,
    group_id: str,
    request: MergeGroupsRequest,
    db: Session = Depends(get_db)
):
    """Merge this group into the target group."""
    target = merchant_group_service.merge_groups(db, account_id, group_id, request.target_group_id)
    return _group_response(db, target)


@mappings_router.get("", response_model=List[MerchantMappingResponse])
def list_mappings(
    account_id: str,
    merchant_group_id: Optional[str] = Query(None),
    db: Session = Depends(get_db)
):
    """List pattern-to-group mappings."""
    return merchant_group_service.get_mappings(db, account_id, merchant_group_id)


@mappings_router.patch("/{mapping_id}", response_model=MerchantMappingResponse)
def update_mapping(
    account_id: str,
    mapping_id: str,
    update: MerchantMappingUpdate,
    db: Session = Depends(get_db)
):
    """Manually regroup a mapping, or ungroup it with merchant_group_id = null."""
    data = update.model_dump(exclude_unset=True)
    if "merchant_group_id" not in data:
        raise HTTPException(status_code=400, detail="merchant_group_id is required (may be null)")
    return merchant_group_service.set_mapping_group(db, account_id, mapping_id, data["merchant_group_id"])
