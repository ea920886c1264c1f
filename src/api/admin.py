"""
Admin API - operator recovery tooling for the move queue and OAuth tokens.
All endpoints require the X-API-Key header.
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.auth import require_admin_key
from src.database import get_db
from src.models.pipeline_move import MoveType
from src.schemas.api_responses import (
    QueueInspectionResponse,
    QueuedMoveSummary,
    ResetFailedResponse,
)
from src.services.move_queue import (
    count_by_status,
    has_open_stage_move,
    list_open_moves,
    purge_failed,
    purge_field_updates,
    reset_failed,
)
from src.services.stage_overrides import clear_override

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/api/v1/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin_key)],
)

RESET_ACTIONS = ("reset", "delete", "delete-field-updates")


@router.post("/pipeline/reset-failed", response_model=ResetFailedResponse)
async def reset_failed_moves(
    action: str = Query("reset"),
    db: AsyncSession = Depends(get_db),
):
    """
    reset: failed -> pending with attempts zeroed (retried on the next run)
    delete: drop every failed move, and the overrides they leave orphaned
    delete-field-updates: drop every deal-type write regardless of status
    """
    if action not in RESET_ACTIONS:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid action. Use one of: {', '.join(RESET_ACTIONS)}",
        )

    if action == "reset":
        affected = await reset_failed(db)
        return ResetFailedResponse(action=action, affected=affected)

    if action == "delete-field-updates":
        affected = await purge_field_updates(db)
        return ResetFailedResponse(action=action, affected=affected)

    deleted = await purge_failed(db)
    # An override with no move left behind it would never be cleared
    cleared = 0
    record_ids = {m.record_id for m in deleted if m.move_type == MoveType.STAGE_MOVE}
    for record_id in sorted(record_ids):
        if not await has_open_stage_move(db, record_id):
            if await clear_override(db, record_id):
                cleared += 1

    logger.info("Operator purge: %d failed moves, %d overrides cleared", len(deleted), cleared)
    return ResetFailedResponse(action=action, affected=len(deleted), overrides_cleared=cleared)


@router.get("/pipeline/queue", response_model=QueueInspectionResponse)
async def inspect_queue(
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    """Most recent open moves with their errors."""
    moves = await list_open_moves(db, limit=limit)
    return QueueInspectionResponse(
        counts=await count_by_status(db),
        moves=[
            QueuedMoveSummary(
                id=str(m.id),
                move_type=m.move_type,
                record_id=m.record_id,
                clinic=m.clinic,
                status=m.status,
                attempts=m.attempts,
                to_stage=getattr(m, "to_stage", None),
                field_key=getattr(m, "field_key", None),
                last_error=m.last_error,
                last_error_kind=m.last_error_kind,
                created_at=m.created_at.isoformat() if m.created_at else None,
            )
            for m in moves
        ],
    )


@router.post("/oauth/seed-tokens")
async def seed_tokens():
    """Copy bootstrap refresh tokens from settings into the token store."""
    from src.integrations.ghl_oauth import get_token_broker
    result = await get_token_broker().seed_bootstrap_tokens()
    return {"success": True, **result}
