"""
Local stage overrides - the user's latest stage choice per opportunity.

Read path rule: effective stage = override if present, else the mirrored
GoHighLevel stage. The move_sync worker clears an override once GHL has
accepted the matching move and no newer move for
the record is still open.
"""
import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.opportunity import Opportunity
from src.models.stage_override import StageOverride

logger = logging.getLogger(__name__)


async def upsert_override(db: AsyncSession, record_id: str, super_stage: str) -> StageOverride:
    """Create or replace the override for a record (never more than one)."""
    override = await db.get(StageOverride, record_id)
    now = datetime.now(timezone.utc)
    if override is None:
        override = StageOverride(record_id=record_id, super_stage=super_stage, updated_at=now)
        db.add(override)
    else:
        override.super_stage = super_stage
        override.updated_at = now
    await db.flush()
    return override


async def clear_override(
    db: AsyncSession, record_id: str, super_stage: Optional[str] = None
) -> bool:
    """
    Delete the override for a record. Returns True if one was deleted.
    With super_stage, only an override still holding that stage is deleted.
    """
    override = await db.get(StageOverride, record_id)
    if override is None:
        return False
    if super_stage is not None and override.super_stage != super_stage:
        return False
    await db.delete(override)
    await db.flush()
    return True


async def get_override(db: AsyncSession, record_id: str) -> Optional[str]:
    override = await db.get(StageOverride, record_id)
    return override.super_stage if override else None


async def get_overrides(db: AsyncSession, record_ids: Iterable[str]) -> dict[str, str]:
    """Bulk lookup: record_id -> super stage for the ids that have overrides."""
    ids = list(record_ids)
    if not ids:
        return {}
    result = await db.execute(
        select(StageOverride.record_id, StageOverride.super_stage)
        .where(StageOverride.record_id.in_(ids))
    )
    return {record_id: stage for record_id, stage in result.all()}


async def get_effective_stage(db: AsyncSession, record_id: str) -> Optional[str]:
    """Override first, then the mirrored GHL super stage. None if neither is known."""
    override = await get_override(db, record_id)
    if override:
        return override
    opportunity = await db.get(Opportunity, record_id)
    return opportunity.super_stage if opportunity else None
