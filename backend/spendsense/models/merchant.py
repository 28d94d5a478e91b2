"""
Merchant group and mapping database models.
"""

import uuid
from datetime import datetime
from sqlalchemy import (
    Column, String, Boolean, DateTime, Integer, Float, Text, ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship
from spendsense.database import Base


class GlobalMerchant(Base):
    """Cross-account merchant catalog entry. Used for display enrichment only."""

    __tablename__ = "global_merchants"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    display_name = Column(String(100), nullable=False)
    logo_url = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class MerchantGroup(Base):
    """A real-world merchant as perceived by one account."""

    __tablename__ = "merchant_groups"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String(36), ForeignKey("accounts.id"), nullable=False)
    display_name = Column(String(100), nullable=False)
    canonical_pattern = Column(String(255), nullable=True)  # Representative pattern
    is_automatic = Column(Boolean, default=True, nullable=False)
    global_merchant_id = Column(String(36), ForeignKey("global_merchants.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    account = relationship("Account", back_populates="merchant_groups")
    global_merchant = relationship("GlobalMerchant")
    mappings = relationship("MerchantMapping", back_populates="merchant_group")
    transactions = relationship("Transaction", back_populates="merchant_group")
    recurring_patterns = relationship("RecurringPattern", back_populates="merchant_group")

    __table_args__ = (
        Index("idx_merchant_group_account", "account_id", "created_at"),
    )


class MerchantMapping(Base):
    """Edge from one canonical pattern (per account) to a merchant group."""

    __tablename__ = "merchant_mappings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String(36), ForeignKey("accounts.id"), nullable=False)
    raw_pattern = Column(Text, nullable=False)
    canonical_pattern = Column(String(255), nullable=False)
    merchant_group_id = Column(String(36), ForeignKey("merchant_groups.id"), nullable=True)
    is_automatic = Column(Boolean, default=True, nullable=False)
    confidence_score = Column(Float, default=0.0, nullable=False)
    usage_count = Column(Integer, default=0, nullable=False)
    last_used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    merchant_group = relationship("MerchantGroup", back_populates="mappings")

    __table_args__ = (
        UniqueConstraint("account_id", "canonical_pattern", name="uq_mapping_account_pattern"),
        Index("idx_mapping_group", "merchant_group_id"),
    )
