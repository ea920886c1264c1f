"""
PipelineMove - the persisted queue of writes waiting to reach GoHighLevel.

Two request kinds share one table (single-table inheritance on move_type):
- StageMove: move an opportunity to the CRM stage matching a super stage
- FieldUpdate: set a contact custom field (deal type)

Both share the status/attempts/last_error retry bookkeeping.
Status transitions: pending -> {pending, failed, synced}; synced is terminal.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, Text, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from src.database import Base


class MoveStatus:
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"

    OPEN = (PENDING, FAILED)


class MoveType:
    STAGE_MOVE = "stage_move"
    FIELD_UPDATE = "field_update"


class ErrorKind:
    """Failure classification recorded with last_error."""
    CONFIG = "config"  # unknown clinic / missing field mapping - not retried
    AUTH = "auth"  # transient token broker failure
    REAUTH = "reauth"  # company flagged needs_reauth
    PROVIDER = "provider"  # non-2xx or transport error from GHL
    MAPPING = "mapping"  # no CRM stage matches the target super stage
    UNEXPECTED = "unexpected"


class PipelineMove(Base):
    __tablename__ = "pipeline_moves"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    move_type: Mapped[str] = mapped_column(String(20), nullable=False)

    # Opportunity id for stage moves, contact id for field updates
    record_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    clinic: Mapped[str] = mapped_column(String(16), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), default=MoveStatus.PENDING, nullable=False
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    last_error_kind: Mapped[Optional[str]] = mapped_column(String(20))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Load subclass columns with the base query; no lazy loads under AsyncSession
    __mapper_args__ = {"polymorphic_on": "move_type", "with_polymorphic": "*"}

    __table_args__ = (
        Index("ix_pipeline_moves_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<PipelineMove {self.move_type} {self.record_id} ({self.status})>"


class StageMove(PipelineMove):
    """Move an opportunity to a new super stage."""

    from_stage: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    to_stage: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)

    __mapper_args__ = {"polymorphic_identity": MoveType.STAGE_MOVE}


class FieldUpdate(PipelineMove):
    """Set a contact custom field (record_id is the contact id)."""

    field_key: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    field_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __mapper_args__ = {"polymorphic_identity": MoveType.FIELD_UPDATE}
