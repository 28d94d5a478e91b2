"""
Merchant group and mapping Pydantic schemas for API validation.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import List, Literal, Optional


class MerchantGroupBase(BaseModel):
    """Base merchant group schema."""
    display_name: str = Field(..., min_length=1, max_length=100)
    global_merchant_id: Optional[str] = None


class MerchantGroupCreate(MerchantGroupBase):
    """Schema for manually creating a merchant group."""
    pass


class MerchantGroupUpdate(BaseModel):
    """Rename a group or change its global merchant link."""
    display_name: Optional[str] = Field(None, min_length=1, max_length=100)
    global_merchant_id: Optional[str] = None


class MerchantGroupResponse(MerchantGroupBase):
    """Schema for merchant group response."""
    id: str
    account_id: str
    canonical_pattern: Optional[str] = None
    is_automatic: bool
    created_at: datetime
    updated_at: datetime

    # Computed fields added by API
    mapping_count: Optional[int] = None
    transaction_count: Optional[int] = None

    class Config:
        from_attributes = True


class MergeGroupsRequest(BaseModel):
    """Fold the path group into ``target_group_id``."""
    target_group_id: str


class MerchantMappingResponse(BaseModel):
    id: str
    account_id: str
    raw_pattern: str
    canonical_pattern: str
    merchant_group_id: Optional[str] = None
    is_automatic: bool
    confidence_score: float
    usage_count: int
    last_used_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class MerchantMappingUpdate(BaseModel):
    """Move a mapping to another group, or ungroup it with ``null``."""
    merchant_group_id: Optional[str] = None


class ResolveRequest(BaseModel):
    description: str
    threshold: Optional[float] = None


class BatchResolveRequest(BaseModel):
    descriptions: List[str]
    threshold: Optional[float] = None


class ResolutionResponse(BaseModel):
    """One resolution outcome: resolved, unresolved or ambiguous."""
    status: Literal["resolved", "unresolved", "ambiguous"]
    canonical_pattern: str
    group: Optional[MerchantGroupResponse] = None
    confidence: Optional[float] = None
    is_new: bool = False
    reason: Optional[str] = None
    candidate_group_ids: List[str] = []


class BatchResolutionItem(BaseModel):
    description: str
    resolution: Optional[ResolutionResponse] = None
    error: Optional[str] = None
    retryable: bool = False


class AutoGroupRequest(BaseModel):
    threshold: Optional[float] = None
    dry_run: bool = False


class ClusterPreview(BaseModel):
    """A proposed cluster."""
    representative: str
    display_name: str
    patterns: List[str]
    sample_descriptions: List[str]
    occurrences: int
    confidence: float


class ApplyClustersCounts(BaseModel):
    groups_created: int
    groups_reused: int
    mappings_created: int
    mappings_updated: int
    manual_skipped: int
    failed: int
    errors: List[str] = []


class AutoGroupResponse(BaseModel):
    dry_run: bool
    threshold: float
    total_descriptions: int
    cluster_count: int
    clusters: List[ClusterPreview]
    applied: Optional[ApplyClustersCounts] = None


class BackfillResponse(BaseModel):
    total: int
    updated: int
    skipped: int
    errors: List[str] = []
