"""
Pipeline board read path - mirrored opportunities grouped by effective stage.

effective stage = local override if present, else the mirrored GHL stage.
Cards with an active override are flagged pending_sync; cards whose latest
stage move failed permanently are flagged sync_failed as well.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.opportunity import Opportunity
from src.models.pipeline_move import PipelineMove, MoveStatus, MoveType
from src.services.stage_mapping import SUPER_STAGES, STAGE_LABELS, is_super_stage
from src.services.stage_overrides import get_overrides

logger = logging.getLogger(__name__)


def days_in_stage(last_stage_change_at: Optional[datetime], now: Optional[datetime] = None) -> int:
    if last_stage_change_at is None:
        return 0
    now = now or datetime.now(timezone.utc)
    if last_stage_change_at.tzinfo is None:
        last_stage_change_at = last_stage_change_at.replace(tzinfo=timezone.utc)
    return max((now - last_stage_change_at).days, 0)


async def build_pipeline_board(
    db: AsyncSession,
    clinic: Optional[str] = None,
    assigned_to: Optional[str] = None,
) -> dict:
    """
    Returns {"pipeline": {stage: [card]}, "totals": {...}, "stages": [...]}.
    Each stage's cards are sorted by days in stage, longest first.
    """
    query = select(Opportunity)
    if clinic:
        query = query.where(Opportunity.clinic == clinic)
    if assigned_to:
        query = query.where(Opportunity.assigned_to == assigned_to)
    result = await db.execute(query)
    opportunities = list(result.scalars().all())

    ids = [o.id for o in opportunities]
    overrides = await get_overrides(db, ids)
    failed_ids = await _records_with_failed_moves(db, ids)

    now = datetime.now(timezone.utc)
    pipeline: dict[str, list[dict]] = {stage: [] for stage in SUPER_STAGES}

    for opp in opportunities:
        override = overrides.get(opp.id)
        stage = override if override else opp.super_stage
        if not is_super_stage(stage):
            continue
        pipeline[stage].append({
            "id": opp.id,
            "name": opp.name,
            "value": opp.monetary_value or 0,
            "clinic": opp.clinic,
            "stage": stage,
            "ghl_stage_id": opp.pipeline_stage_id,
            "ghl_stage_name": opp.stage_name,
            "assigned_to": opp.assigned_to,
            "source": opp.source or "Unknown",
            "contact_id": opp.contact_id,
            "deal_type": opp.deal_type,
            "days_in_stage": days_in_stage(opp.last_stage_change_at, now),
            "pending_sync": override is not None,
            "sync_failed": opp.id in failed_ids,
        })

    for stage in SUPER_STAGES:
        pipeline[stage].sort(key=lambda card: card["days_in_stage"], reverse=True)

    all_cards = [card for cards in pipeline.values() for card in cards]
    totals = {
        "count": len(all_cards),
        "value": sum(card["value"] for card in all_cards),
        "by_stage": {
            stage: {
                "count": len(pipeline[stage]),
                "value": sum(card["value"] for card in pipeline[stage]),
            }
            for stage in SUPER_STAGES
        },
    }

    return {
        "pipeline": pipeline,
        "totals": totals,
        "stages": [{"key": s, "label": STAGE_LABELS[s]} for s in SUPER_STAGES],
    }


async def _records_with_failed_moves(db: AsyncSession, record_ids: list[str]) -> set[str]:
    if not record_ids:
        return set()
    result = await db.execute(
        select(PipelineMove.record_id)
        .where(PipelineMove.move_type == MoveType.STAGE_MOVE)
        .where(PipelineMove.status == MoveStatus.FAILED)
        .where(PipelineMove.record_id.in_(record_ids))
        .distinct()
    )
    return set(result.scalars().all())
