"""
StageOverride - the user's latest stage choice for an opportunity, held until
the move reaches GoHighLevel. At most one row per opportunity (upsert).
"""
from datetime import datetime, timezone
from sqlalchemy import String, DateTime
from sqlalchemy.orm import Mapped, mapped_column
from src.database import Base


class StageOverride(Base):
    __tablename__ = "stage_overrides"

    record_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    super_stage: Mapped[str] = mapped_column(String(30), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<StageOverride {self.record_id} -> {self.super_stage}>"
