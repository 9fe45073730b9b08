"""
Application access log model.

CRITICAL: This table is append-only. Rows are written once per
authorization decision (and per grant / revoke action) and are only ever
removed by the retention job.
"""

from enum import Enum

from sqlalchemy import Column, Index, Integer, String, Text

from hub.db_base import Base
from hub.models.base import UTCDateTime, generate_uuid, utc_now


class AccessDecision(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"


class AccessType(str, Enum):
    """What produced the row: a gated request or an admin grant/revoke."""
    REQUEST = "request"
    GRANTED = "granted"
    REVOKED = "revoked"


class AccessSource(str, Enum):
    """Which data source satisfied the access layer of the gate."""
    CLAIM = "claim"
    STORE = "store"


class AccessLogEntry(Base):
    """One immutable authorization decision."""

    __tablename__ = "application_access_logs"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(255), nullable=True, index=True)  # NULL when unauthenticated
    tenant_id = Column(Integer, nullable=True)
    application_id = Column(Integer, nullable=True)
    application_slug = Column(String(100), nullable=True)
    decision = Column(String(10), nullable=False)
    access_type = Column(String(10), nullable=False, default=AccessType.REQUEST.value)
    reason = Column(String(255), nullable=True)
    access_source = Column(String(10), nullable=True)
    api_path = Column(String(500), nullable=True)
    endpoint = Column(String(520), nullable=True)
    ip_address = Column(String(45), nullable=True)  # IPv6 max length
    user_agent = Column(Text, nullable=True)
    created_at = Column(UTCDateTime(), nullable=False, default=utc_now)

    __table_args__ = (
        Index("ix_application_access_logs_tenant_created", "tenant_id", "created_at"),
        Index("ix_application_access_logs_app_created", "application_id", "created_at"),
        Index("ix_application_access_logs_decision_created", "decision", "created_at"),
        Index("ix_application_access_logs_user_ip", "user_id", "ip_address"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "tenant_id": self.tenant_id,
            "application_id": self.application_id,
            "application_slug": self.application_slug,
            "decision": self.decision,
            "access_type": self.access_type,
            "reason": self.reason,
            "access_source": self.access_source,
            "api_path": self.api_path,
            "endpoint": self.endpoint,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
