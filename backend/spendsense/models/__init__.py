"""
Database models package.
"""

from spendsense.models.account import Account
from spendsense.models.transaction import Transaction
from spendsense.models.merchant import GlobalMerchant, MerchantGroup, MerchantMapping
from spendsense.models.recurring import (
    RecurringPattern,
    Frequency,
    TransactionType,
    DetectionMethod,
)

__all__ = [
    "Account",
    "Transaction",
    "GlobalMerchant",
    "MerchantGroup",
    "MerchantMapping",
    "RecurringPattern",
    "Frequency",
    "TransactionType",
    "DetectionMethod",
]
