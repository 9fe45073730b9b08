"""
Application pricing model.

Each row is one versioned price valid over the half-open interval
[valid_from, valid_to) for a business key of
(application_id, user_type_id, billing_cycle, currency).

Active rows sharing a business key never overlap. On PostgreSQL this is
also enforced by an exclusion constraint (see hub.database.constraints).
Rows are never physically deleted; history is kept for billing
reconstruction.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import relationship

from hub.db_base import Base
from hub.models.base import FAR_FUTURE, TimestampMixin, UTCDateTime, normalize_instant


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


BILLING_CYCLES = frozenset(c.value for c in BillingCycle)


class PricingEntry(TimestampMixin, Base):
    """One price era for an application / user type pair."""

    __tablename__ = "application_pricing"

    id = Column(Integer, primary_key=True, autoincrement=True)
    application_id = Column(
        Integer, ForeignKey("applications.id"), nullable=False, index=True
    )
    user_type_id = Column(Integer, ForeignKey("user_types.id"), nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="BRL")
    billing_cycle = Column(String(10), nullable=False, default=BillingCycle.MONTHLY.value)
    valid_from = Column(UTCDateTime(), nullable=False)
    valid_to = Column(UTCDateTime(), nullable=True, comment="NULL means open ended")
    active = Column(Boolean, nullable=False, default=True)

    application = relationship("Application")
    user_type = relationship("UserType")

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_application_pricing_price_non_negative"),
        CheckConstraint(
            "billing_cycle IN ('monthly', 'yearly')",
            name="ck_application_pricing_billing_cycle",
        ),
        Index(
            "ix_application_pricing_business_key",
            "application_id",
            "user_type_id",
            "billing_cycle",
            "currency",
        ),
    )

    @property
    def business_key(self) -> dict:
        return {
            "application_id": self.application_id,
            "user_type_id": self.user_type_id,
            "billing_cycle": self.billing_cycle,
            "currency": self.currency,
        }

    @property
    def effective_end(self) -> datetime:
        """End of the interval with open-ended rows mapped to FAR_FUTURE."""
        return interval_end(self.valid_to)

    def covers(self, at: datetime) -> bool:
        """Whether this row is active and its interval contains `at`."""
        at = normalize_instant(at)
        return bool(self.active) and normalize_instant(self.valid_from) <= at < self.effective_end

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "application_id": self.application_id,
            "user_type_id": self.user_type_id,
            "price": str(self.price) if self.price is not None else None,
            "currency": self.currency,
            "billing_cycle": self.billing_cycle,
            "valid_from": self.valid_from.isoformat() if self.valid_from else None,
            "valid_to": self.valid_to.isoformat() if self.valid_to else None,
            "active": self.active,
        }

    def __repr__(self) -> str:
        return (
            f"<PricingEntry(id={self.id}, application_id={self.application_id}, "
            f"user_type_id={self.user_type_id}, price={self.price} {self.currency}, "
            f"valid_from={self.valid_from}, valid_to={self.valid_to})>"
        )


def interval_end(valid_to: Optional[datetime]) -> datetime:
    return normalize_instant(valid_to) or FAR_FUTURE
