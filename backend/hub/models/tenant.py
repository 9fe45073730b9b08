"""
Tenant model.

Tenants are managed outside the engine; licensing and access state is
partitioned by tenant id, and the name is surfaced in audit aggregates.
"""

from enum import Enum

from sqlalchemy import Column, Integer, String

from hub.db_base import Base
from hub.models.base import TimestampMixin


class TenantStatus(str, Enum):
    """Lifecycle status of a tenant."""
    ACTIVE = "active"
    SUSPENDED = "suspended"
    INACTIVE = "inactive"


class Tenant(TimestampMixin, Base):
    """An isolated customer organization."""

    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(100), nullable=False, unique=True, index=True)
    schema_name = Column(
        String(100),
        nullable=True,
        comment="Database schema holding the tenant's product tables"
    )
    status = Column(String(20), nullable=False, default=TenantStatus.ACTIVE.value)

    @property
    def is_active(self) -> bool:
        return self.status == TenantStatus.ACTIVE.value

    def __repr__(self) -> str:
        return f"<Tenant(id={self.id}, slug={self.slug}, status={self.status})>"
