"""Opportunity mirror.

Revision ID: 002
Revises: 001
Create Date: 2026-10-16
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "opportunities",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("clinic", sa.String(16), nullable=False),
        sa.Column("name", sa.String(255)),
        sa.Column("contact_id", sa.String(64)),
        sa.Column("assigned_to", sa.String(64)),
        sa.Column("monetary_value", sa.Float, nullable=False, server_default="0"),
        sa.Column("status", sa.String(20)),
        sa.Column("source", sa.String(100)),
        sa.Column("pipeline_stage_id", sa.String(64)),
        sa.Column("stage_name", sa.String(100)),
        sa.Column("super_stage", sa.String(30), nullable=False),
        sa.Column("deal_type", sa.String(100)),
        sa.Column("last_stage_change_at", sa.DateTime(timezone=True)),
        sa.Column("ghl_created_at", sa.DateTime(timezone=True)),
        sa.Column("ghl_updated_at", sa.DateTime(timezone=True)),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_opportunities_contact_id", "opportunities", ["contact_id"])
    op.create_index("ix_opportunities_clinic_stage", "opportunities", ["clinic", "super_stage"])


def downgrade() -> None:
    op.drop_index("ix_opportunities_clinic_stage", table_name="opportunities")
    op.drop_index("ix_opportunities_contact_id", table_name="opportunities")
    op.drop_table("opportunities")
