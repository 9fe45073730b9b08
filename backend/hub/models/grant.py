"""
User application access grant model.

A grant records one user's access to an application within a tenant,
together with the price in effect when it was created. The snapshot
columns are written once and never recomputed.

At most one active grant may exist per (user, tenant, application); a
partial unique index over active rows enforces it.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, Numeric, String, text
from sqlalchemy.orm import relationship

from hub.db_base import Base
from hub.models.base import TimestampMixin, UTCDateTime, normalize_instant, utc_now


class RoleInApp(str, Enum):
    USER = "user"
    OPERATIONS = "operations"
    MANAGER = "manager"
    ADMIN = "admin"


VALID_ROLES = frozenset(r.value for r in RoleInApp)


class AccessGrant(TimestampMixin, Base):
    """Per-user access to an application with a frozen price snapshot."""

    __tablename__ = "user_application_access"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), nullable=False, comment="Identity provider user id")
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False)
    application_id = Column(Integer, ForeignKey("applications.id"), nullable=False)
    role_in_app = Column(String(20), nullable=False, default=RoleInApp.USER.value)

    # Price snapshot, copied verbatim from the pricing entry valid at grant time
    price_snapshot = Column(Numeric(12, 2), nullable=False)
    currency_snapshot = Column(String(3), nullable=False)
    billing_cycle_snapshot = Column(String(10), nullable=False)
    user_type_snapshot_id = Column(Integer, ForeignKey("user_types.id"), nullable=False)
    pricing_entry_id = Column(Integer, ForeignKey("application_pricing.id"), nullable=True)

    granted_at = Column(UTCDateTime(), nullable=False, default=utc_now)
    granted_by = Column(String(255), nullable=True)
    expires_at = Column(UTCDateTime(), nullable=True)
    revoked_at = Column(UTCDateTime(), nullable=True)
    revoked_by = Column(String(255), nullable=True)
    active = Column(Boolean, nullable=False, default=True)

    application = relationship("Application")

    __table_args__ = (
        Index(
            "uq_user_application_access_active",
            "user_id",
            "tenant_id",
            "application_id",
            unique=True,
            postgresql_where=text("active"),
            sqlite_where=text("active = 1"),
        ),
        Index("ix_user_application_access_tenant_app", "tenant_id", "application_id"),
        Index("ix_user_application_access_user_tenant", "user_id", "tenant_id"),
    )

    def is_expired(self, at: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return normalize_instant(self.expires_at) <= normalize_instant(at or utc_now())

    def is_current(self, at: Optional[datetime] = None) -> bool:
        return bool(self.active) and not self.is_expired(at)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "tenant_id": self.tenant_id,
            "application_id": self.application_id,
            "role_in_app": self.role_in_app,
            "price_snapshot": str(self.price_snapshot),
            "currency_snapshot": self.currency_snapshot,
            "billing_cycle_snapshot": self.billing_cycle_snapshot,
            "user_type_snapshot_id": self.user_type_snapshot_id,
            "granted_at": self.granted_at.isoformat() if self.granted_at else None,
            "granted_by": self.granted_by,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "active": self.active,
        }

    def __repr__(self) -> str:
        return (
            f"<AccessGrant(id={self.id}, user_id={self.user_id}, tenant_id={self.tenant_id}, "
            f"application_id={self.application_id}, role={self.role_in_app}, active={self.active})>"
        )
