"""
Recurring pattern database model.
"""

import uuid
from datetime import datetime
from sqlalchemy import (
    Column, String, Boolean, DateTime, Date, Numeric, Enum, Float, Integer, JSON, ForeignKey, Index
)
from sqlalchemy.orm import relationship
import enum
from spendsense.database import Base


class Frequency(str, enum.Enum):
    """Recurring frequency enumeration."""
    weekly = "weekly"
    biweekly = "biweekly"
    monthly = "monthly"
    quarterly = "quarterly"
    annual = "annual"
    irregular = "irregular"


class TransactionType(str, enum.Enum):
    """Direction of money for a recurring series."""
    expense = "expense"
    income = "income"


class DetectionMethod(str, enum.Enum):
    automatic = "automatic"
    manual = "manual"


class RecurringPattern(Base):
    """Detected periodic payment or income series for one merchant group."""

    __tablename__ = "recurring_patterns"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String(36), ForeignKey("accounts.id"), nullable=False)
    merchant_group_id = Column(String(36), ForeignKey("merchant_groups.id"), nullable=False)
    transaction_type = Column(Enum(TransactionType), nullable=False)
    frequency = Column(Enum(Frequency), nullable=False)
    interval_days = Column(Integer, nullable=False)
    amount_min = Column(Numeric(12, 2), nullable=False)
    amount_max = Column(Numeric(12, 2), nullable=False)
    amount_typical = Column(Numeric(12, 2), nullable=False)
    first_seen_date = Column(Date, nullable=False)
    last_seen_date = Column(Date, nullable=False)
    next_expected_date = Column(Date, nullable=False)
    confidence_score = Column(Float, nullable=False)
    occurrence_count = Column(Integer, nullable=False)
    transaction_ids = Column(JSON, nullable=False, default=list)
    is_lapsed = Column(Boolean, default=False, nullable=False)
    is_confirmed = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    detection_method = Column(Enum(DetectionMethod), default=DetectionMethod.automatic, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    merchant_group = relationship("MerchantGroup", back_populates="recurring_patterns")

    __table_args__ = (
        Index("idx_recurring_group_frequency", "merchant_group_id", "frequency"),
    )
