"""
Opportunity - local mirror of GoHighLevel opportunities in each clinic's
tracked sales pipeline. super_stage is GHL's own stage mapped through the
stage tables; user overrides live in stage_overrides, not here.
"""
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Float, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column
from src.database import Base


class Opportunity(Base):
    __tablename__ = "opportunities"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)  # GHL opportunity id
    clinic: Mapped[str] = mapped_column(String(16), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(255))
    contact_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    assigned_to: Mapped[Optional[str]] = mapped_column(String(64))
    monetary_value: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    status: Mapped[Optional[str]] = mapped_column(String(20))
    source: Mapped[Optional[str]] = mapped_column(String(100))

    pipeline_stage_id: Mapped[Optional[str]] = mapped_column(String(64))
    stage_name: Mapped[Optional[str]] = mapped_column(String(100))
    super_stage: Mapped[str] = mapped_column(String(30), nullable=False)

    # Owned locally (written by the deal-type handler), never overwritten by the mirror
    deal_type: Mapped[Optional[str]] = mapped_column(String(100))

    last_stage_change_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    ghl_created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    ghl_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    __table_args__ = (
        Index("ix_opportunities_clinic_stage", "clinic", "super_stage"),
    )

    def __repr__(self) -> str:
        return f"<Opportunity {self.id} {self.clinic} ({self.super_stage})>"
