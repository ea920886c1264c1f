"""Last attempt timestamp on queued moves.

Revision ID: 003
Revises: 002
Create Date: 2026-10-16
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = "003"
down_revision: Union[str, None] = "002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        "pipeline_moves",
        sa.Column("last_attempt_at", sa.DateTime(timezone=True)),
    )


def downgrade() -> None:
    op.drop_column("pipeline_moves", "last_attempt_at")
