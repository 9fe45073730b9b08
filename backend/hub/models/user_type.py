"""User type model. Pricing is defined per application and user type."""

from sqlalchemy import Column, Integer, String

from hub.db_base import Base
from hub.models.base import TimestampMixin


class UserType(TimestampMixin, Base):
    __tablename__ = "user_types"

    id = Column(Integer, primary_key=True, autoincrement=True)
    slug = Column(String(50), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    hierarchy_level = Column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<UserType(id={self.id}, slug={self.slug})>"
