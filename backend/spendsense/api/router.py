"""
Main API router.
"""

from fastapi import APIRouter
from spendsense.api import merchant_groups, recurring

api_router = APIRouter()

api_router.include_router(merchant_groups.router)
api_router.include_router(merchant_groups.mappings_router)
api_router.include_router(recurring.router)
