"""Move queue, stage overrides and GHL OAuth tokens.

Revision ID: 001
Revises:
Create Date: 2026-10-16
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Queued CRM writes (stage moves and field updates share the table)
    op.create_table(
        "pipeline_moves",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("move_type", sa.String(20), nullable=False),
        sa.Column("record_id", sa.String(64), nullable=False),
        sa.Column("clinic", sa.String(16), nullable=False),
        sa.Column("from_stage", sa.String(30)),
        sa.Column("to_stage", sa.String(30)),
        sa.Column("field_key", sa.String(50)),
        sa.Column("field_value", sa.Text),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text),
        sa.Column("last_error_kind", sa.String(20)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("synced_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_pipeline_moves_record_id", "pipeline_moves", ["record_id"])
    op.create_index("ix_pipeline_moves_status_created", "pipeline_moves", ["status", "created_at"])

    # Local stage overrides (one per opportunity)
    op.create_table(
        "stage_overrides",
        sa.Column("record_id", sa.String(64), primary_key=True),
        sa.Column("super_stage", sa.String(30), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    # OAuth credentials per GHL company
    op.create_table(
        "ghl_tokens",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("company_id", sa.String(64)),
        sa.Column("refresh_token", sa.Text),
        sa.Column("access_token", sa.Text),
        sa.Column("access_token_expires_at", sa.DateTime(timezone=True)),
        sa.Column("needs_reauth", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("needs_reauth_at", sa.DateTime(timezone=True)),
        sa.Column("last_error", sa.Text),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("ghl_tokens")
    op.drop_table("stage_overrides")
    op.drop_index("ix_pipeline_moves_status_created", table_name="pipeline_moves")
    op.drop_index("ix_pipeline_moves_record_id", table_name="pipeline_moves")
    op.drop_table("pipeline_moves")
