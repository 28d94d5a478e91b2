"""
Pydantic schemas package.
"""

from spendsense.schemas.merchant import (
    MerchantGroupBase,
    MerchantGroupCreate,
    MerchantGroupUpdate,
    MerchantGroupResponse,
    MergeGroupsRequest,
    MerchantMappingResponse,
    MerchantMappingUpdate,
    ResolveRequest,
    BatchResolveRequest,
    ResolutionResponse,
    BatchResolutionItem,
    AutoGroupRequest,
    AutoGroupResponse,
    BackfillResponse,
)
from spendsense.schemas.recurring import (
    RecurringPatternResponse,
    RecurringPatternUpdate,
    DetectionRequest,
    DetectionResponse,
)

__all__ = [
    "MerchantGroupBase",
    "MerchantGroupCreate",
    "MerchantGroupUpdate",
    "MerchantGroupResponse",
    "MergeGroupsRequest",
    "MerchantMappingResponse",
    "MerchantMappingUpdate",
    "ResolveRequest",
    "BatchResolveRequest",
    "ResolutionResponse",
    "BatchResolutionItem",
    "AutoGroupRequest",
    "AutoGroupResponse",
    "BackfillResponse",
    "RecurringPatternResponse",
    "RecurringPatternUpdate",
    "DetectionRequest",
    "DetectionResponse",
]
