"""
Move queue store - persistence operations on pipeline_moves.

The store never calls GoHighLevel. Writers enqueue; the move_sync worker is the
only thing that changes status/attempts/last_error (plus operator tooling).
Callers own the transaction: nothing here commits.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update, delete, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.pipeline_move import (
    PipelineMove,
    StageMove,
    FieldUpdate,
    MoveStatus,
    MoveType,
    ErrorKind,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
MAX_ERROR_LENGTH = 2000


async def enqueue_stage_move(
    db: AsyncSession,
    record_id: str,
    clinic: str,
    from_stage: Optional[str],
    to_stage: str,
) -> uuid.UUID:
    """
    Queue a stage move. Always a new pending row - no dedup against earlier
    moves for the same record; each move carries its own target stage.
    """
    move = StageMove(
        id=uuid.uuid4(),
        record_id=record_id,
        clinic=clinic,
        from_stage=from_stage,
        to_stage=to_stage,
        status=MoveStatus.PENDING,
        attempts=0,
    )
    db.add(move)
    await db.flush()
    logger.info(
        "Queued stage move %s -> %s", record_id, to_stage,
        extra={"move_id": str(move.id), "record_id": record_id, "clinic": clinic},
    )
    return move.id


async def enqueue_field_update(
    db: AsyncSession,
    contact_id: str,
    clinic: str,
    field_key: str,
    field_value: Optional[str],
) -> uuid.UUID:
    """Queue a contact custom-field write (deal type)."""
    move = FieldUpdate(
        id=uuid.uuid4(),
        record_id=contact_id,
        clinic=clinic,
        field_key=field_key,
        field_value=field_value or "",
        status=MoveStatus.PENDING,
        attempts=0,
    )
    db.add(move)
    await db.flush()
    logger.info(
        "Queued %s update for contact %s", field_key, contact_id,
        extra={"move_id": str(move.id), "record_id": contact_id, "clinic": clinic},
    )
    return move.id


async def claim_batch(
    db: AsyncSession,
    limit: int = 10,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> list[PipelineMove]:
    """
    Oldest-first batch of moves to process.

    Selects pending and failed rows below the attempt ceiling. Failed rows whose
    last error was a configuration error are left for an operator. Rows are
    not leased: only one processor run may be active at a time.
    """
    result = await db.execute(
        select(PipelineMove)
        .where(PipelineMove.status.in_(MoveStatus.OPEN))
        .where(PipelineMove.attempts < max_attempts)
        .where(
            or_(
                PipelineMove.status == MoveStatus.PENDING,
                PipelineMove.last_error_kind.is_(None),
                PipelineMove.last_error_kind != ErrorKind.CONFIG,
            )
        )
        .order_by(PipelineMove.created_at, PipelineMove.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def mark_synced(db: AsyncSession, move: PipelineMove) -> None:
    now = datetime.now(timezone.utc)
    move.status = MoveStatus.SYNCED
    move.synced_at = now
    move.last_attempt_at = now
    await db.flush()


async def mark_failed(
    db: AsyncSession,
    move: PipelineMove,
    error: str,
    attempts: int,
    error_kind: str = ErrorKind.UNEXPECTED,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    retryable: bool = True,
) -> str:
    """
    Record a failed attempt. Stays pending below the ceiling; becomes sticky
    failed at the ceiling (or immediately when not retryable).
    Returns the resulting status.
    """
    # attempts never decreases here; operator reset is the only way down
    move.attempts = max(attempts, move.attempts or 0)
    move.last_error = (error or "Unknown error")[:MAX_ERROR_LENGTH]
    move.last_error_kind = error_kind
    move.last_attempt_at = datetime.now(timezone.utc)
    if not retryable or move.attempts >= max_attempts:
        move.status = MoveStatus.FAILED
    else:
        move.status = MoveStatus.PENDING
    await db.flush()
    return move.status


async def count_by_status(db: AsyncSession) -> dict[str, int]:
    result = await db.execute(
        select(PipelineMove.status, func.count()).group_by(PipelineMove.status)
    )
    counts = {MoveStatus.PENDING: 0, MoveStatus.FAILED: 0, MoveStatus.SYNCED: 0}
    for status, count in result.all():
        counts[status] = count
    return counts


async def list_open_moves(db: AsyncSession, limit: int = 20) -> list[PipelineMove]:
    """Most recent pending/failed moves, newest first (queue inspection)."""
    result = await db.execute(
        select(PipelineMove)
        .where(PipelineMove.status.in_(MoveStatus.OPEN))
        .order_by(PipelineMove.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def has_open_stage_move(db: AsyncSession, record_id: str) -> bool:
    result = await db.execute(
        select(func.count())
        .select_from(PipelineMove)
        .where(PipelineMove.move_type == MoveType.STAGE_MOVE)
        .where(PipelineMove.record_id == record_id)
        .where(PipelineMove.status.in_(MoveStatus.OPEN))
    )
    return (result.scalar() or 0) > 0


async def has_newer_open_stage_move(db: AsyncSession, move: PipelineMove) -> bool:
    """Another open stage move for the same record queued at or after this one."""
    result = await db.execute(
        select(func.count())
        .select_from(PipelineMove)
        .where(PipelineMove.move_type == MoveType.STAGE_MOVE)
        .where(PipelineMove.record_id == move.record_id)
        .where(PipelineMove.status.in_(MoveStatus.OPEN))
        .where(PipelineMove.id != move.id)
        .where(PipelineMove.created_at >= move.created_at)
    )
    return (result.scalar() or 0) > 0


# ---------------------------------------------------------------------------
# Operator tooling
# ---------------------------------------------------------------------------

async def reset_failed(db: AsyncSession) -> int:
    """Failed -> pending with attempts zeroed. Returns rows reset."""
    result = await db.execute(
        update(PipelineMove)
        .where(PipelineMove.status == MoveStatus.FAILED)
        .values(status=MoveStatus.PENDING, attempts=0)
        .execution_options(synchronize_session=False)
    )
    count = result.rowcount or 0
    logger.info("Reset %d failed moves to pending", count)
    return count


async def purge_failed(db: AsyncSession) -> list[PipelineMove]:
    """Delete every failed move. Returns the deleted rows."""
    result = await db.execute(
        select(PipelineMove).where(PipelineMove.status == MoveStatus.FAILED)
    )
    moves = list(result.scalars().all())
    if moves:
        await db.execute(
            delete(PipelineMove)
            .where(PipelineMove.id.in_([m.id for m in moves]))
            .execution_options(synchronize_session=False)
        )
    logger.info("Deleted %d failed moves", len(moves))
    return moves


async def purge_field_updates(db: AsyncSession) -> int:
    """Delete every field-update request regardless of status."""
    result = await db.execute(
        delete(PipelineMove)
        .where(PipelineMove.move_type == MoveType.FIELD_UPDATE)
        .execution_options(synchronize_session=False)
    )
    count = result.rowcount or 0
    logger.info("Deleted %d field update requests", count)
    return count
