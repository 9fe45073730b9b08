"""
Tenant application license model.

One row per (tenant, application). The `active` flag mirrors
`status == "active"` and is kept in sync by the license registry; a license
is usable only when both agree and it has not expired.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from hub.db_base import Base
from hub.models.base import TimestampMixin, UTCDateTime, normalize_instant, utc_now


class LicenseStatus(str, Enum):
    ACTIVE = "active"
    TRIAL = "trial"
    SUSPENDED = "suspended"
    EXPIRED = "expired"
    REVOKED = "revoked"


LICENSE_STATUSES = frozenset(s.value for s in LicenseStatus)


class License(TimestampMixin, Base):
    """A tenant's subscription to one application."""

    __tablename__ = "tenant_applications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    application_id = Column(Integer, ForeignKey("applications.id"), nullable=False)
    status = Column(String(20), nullable=False, default=LicenseStatus.ACTIVE.value)
    seats_purchased = Column(Integer, nullable=True, comment="NULL means unlimited")
    seats_used = Column(Integer, nullable=False, default=0)
    activated_at = Column(UTCDateTime(), nullable=False, default=utc_now)
    expires_at = Column(UTCDateTime(), nullable=True)
    trial_used = Column(Boolean, nullable=False, default=False)
    active = Column(Boolean, nullable=False, default=True)

    tenant = relationship("Tenant")
    application = relationship("Application")

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "application_id", name="uq_tenant_applications_tenant_application"
        ),
        CheckConstraint("seats_used >= 0", name="ck_tenant_applications_seats_used"),
        CheckConstraint(
            "seats_purchased IS NULL OR seats_purchased >= 0",
            name="ck_tenant_applications_seats_purchased",
        ),
    )

    def is_expired(self, at: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return normalize_instant(self.expires_at) <= normalize_instant(at or utc_now())

    def is_usable(self, at: Optional[datetime] = None) -> bool:
        """Status active, flagged active and not expired."""
        return (
            self.status == LicenseStatus.ACTIVE.value
            and bool(self.active)
            and not self.is_expired(at)
        )

    def can_add_user(self) -> bool:
        if self.seats_purchased is None:
            return True
        return (self.seats_used or 0) < self.seats_purchased

    @property
    def seats_available(self) -> Optional[int]:
        if self.seats_purchased is None:
            return None
        return max(self.seats_purchased - (self.seats_used or 0), 0)

    def __repr__(self) -> str:
        return (
            f"<License(id={self.id}, tenant_id={self.tenant_id}, "
            f"application_id={self.application_id}, status={self.status})>"
        )
