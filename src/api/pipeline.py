"""
Pipeline API - the user-facing board and its write path.

The write path (queue-move, deal-type) records the change locally and queues it
for GoHighLevel. It never calls GHL itself, so a drag-and-drop returns
immediately whatever the CRM is doing.
"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.auth import require_cron_secret
from src.database import get_db
from src.models.opportunity import Opportunity
from src.schemas.api_responses import (
    QueueMoveRequest,
    QueueMoveResponse,
    DealTypeRequest,
    DealTypeResponse,
    SyncStateResponse,
    ProcessSyncResponse,
)
from src.services.clinic_registry import get_clinic_registry
from src.services.move_queue import enqueue_stage_move, enqueue_field_update
from src.services.pipeline_board import build_pipeline_board
from src.services.stage_mapping import is_super_stage
from src.services.stage_overrides import upsert_override
from src.services.sync_status import get_sync_state

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/pipeline", tags=["pipeline"])


def _require_known_clinic(clinic: str):
    config = get_clinic_registry().get_clinic(clinic)
    if config is None:
        raise HTTPException(status_code=400, detail=f"Unknown clinic: {clinic}")
    return config


@router.get("")
async def get_pipeline(
    clinic: Optional[str] = Query(None),
    assigned_to: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """Board of mirrored opportunities grouped by effective stage."""
    if clinic:
        _require_known_clinic(clinic)
    return await build_pipeline_board(db, clinic=clinic, assigned_to=assigned_to)


@router.post("/queue-move", response_model=QueueMoveResponse)
async def queue_move(
    payload: QueueMoveRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Record a card move. The override makes the board show the new stage at
    once; the queued move carries it to GHL on the next processor run.
    """
    _require_known_clinic(payload.clinic)
    if not is_super_stage(payload.to_stage):
        raise HTTPException(status_code=400, detail=f"Unknown stage: {payload.to_stage}")
    if payload.from_stage is not None and not is_super_stage(payload.from_stage):
        raise HTTPException(status_code=400, detail=f"Unknown stage: {payload.from_stage}")

    # Override first: a queued move without its override would let the board flicker back
    await upsert_override(db, payload.opportunity_id, payload.to_stage)
    move_id = await enqueue_stage_move(
        db,
        record_id=payload.opportunity_id,
        clinic=payload.clinic,
        from_stage=payload.from_stage,
        to_stage=payload.to_stage,
    )

    return QueueMoveResponse(move_id=str(move_id), effective_stage=payload.to_stage)


@router.post("/deal-type", response_model=DealTypeResponse)
async def set_deal_type(
    payload: DealTypeRequest,
    db: AsyncSession = Depends(get_db),
):
    """Set a contact's deal type locally and queue the CRM custom-field write."""
    clinic = _require_known_clinic(payload.clinic)
    if not clinic.service_field_id:
        raise HTTPException(status_code=400, detail="Invalid clinic configuration")

    deal_type = payload.deal_type or None
    result = await db.execute(
        update(Opportunity)
        .where(Opportunity.contact_id == payload.contact_id)
        .values(deal_type=deal_type)
        .execution_options(synchronize_session=False)
    )

    move_id = await enqueue_field_update(
        db,
        contact_id=payload.contact_id,
        clinic=payload.clinic,
        field_key="deal_type",
        field_value=deal_type,
    )

    return DealTypeResponse(move_id=str(move_id), opportunities_updated=result.rowcount or 0)


@router.get("/sync-state", response_model=SyncStateResponse)
async def sync_state(
    db: AsyncSession = Depends(get_db),
):
    """Aggregate queue state for the sync indicator."""
    return await get_sync_state(db)


@router.api_route(
    "/process-sync",
    methods=["GET", "POST"],
    response_model=ProcessSyncResponse,
    dependencies=[Depends(require_cron_secret)],
)
async def process_sync():
    """Scheduler trigger: one queue processor run."""
    from src.workers.move_sync import process_pending_moves
    return await process_pending_moves()
