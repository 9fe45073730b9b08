"""entitlements_baseline

Revision ID: 5b1e0c7d9a42
Revises: 
Create Date: 2026-10-19 09:12:31.402118

"""
from typing import Sequence, Union

from alembic import op

from hub.db_base import Base
from hub.database.constraints import drop_postgres_constraints, install_postgres_constraints
import hub.models  # noqa: F401 - required to register all model metadata


# revision identifiers, used by Alembic.
revision: str = '5b1e0c7d9a42'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    bind = op.get_bind()
    Base.metadata.create_all(bind=bind)
    install_postgres_constraints(bind)


def downgrade() -> None:
    bind = op.get_bind()
    drop_postgres_constraints(bind)
    Base.metadata.drop_all(bind=bind)
