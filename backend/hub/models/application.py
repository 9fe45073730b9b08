"""
Application catalog model.

An application is a licensable product module identified by a stable slug.
The slug is the key used by the authorization gate and on the wire.
"""

from enum import Enum

from sqlalchemy import Boolean, Column, Integer, String, Text

from hub.db_base import Base
from hub.models.base import TimestampMixin


class ApplicationStatus(str, Enum):
    """Catalog status of an application."""
    ACTIVE = "active"
    DEPRECATED = "deprecated"
    TRIAL = "trial"


class Application(TimestampMixin, Base):
    """
    Catalog entry for a licensable application.

    Immutable once referenced by pricing or licenses, except for status.
    """

    __tablename__ = "applications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    slug = Column(String(100), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default=ApplicationStatus.ACTIVE.value)
    requires_provisioning = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Whether a first license must provision tenant schema objects"
    )

    def __repr__(self) -> str:
        return f"<Application(id={self.id}, slug={self.slug}, status={self.status})>"
