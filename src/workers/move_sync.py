"""
Move sync worker - pushes queued pipeline moves to GoHighLevel.
CRITICAL: Nothing in the user-facing write path calls GHL. This is the only
place queued moves reach the CRM.

One run:
1. Take the single-flight run lock (a second concurrent run is skipped)
2. Claim up to sync_batch_size pending/failed moves, oldest first
3. Process them sequentially, committing each outcome before the next
4. Report {processed, failed, remaining}

Retry logic:
- Every failure costs one attempt and is recorded on the row with its kind
- Below the ceiling (3) the move stays pending for the next run
- At the ceiling it becomes failed and waits for an operator (alert sent)
- Configuration errors fail immediately and are never re-claimed
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import get_settings
from src.integrations.ghl_oauth import GHLAuthError, GHLReauthRequired, get_token_broker
from src.integrations.gohighlevel import GHLAPIError, GoHighLevelClient
from src.models.opportunity import Opportunity
from src.models.pipeline_move import (
    PipelineMove,
    StageMove,
    FieldUpdate,
    MoveStatus,
    ErrorKind,
)
from src.services.clinic_registry import get_clinic_registry
from src.services.move_queue import (
    claim_batch,
    has_newer_open_stage_move,
    mark_synced,
    mark_failed,
)
from src.services.stage_mapping import is_local_only, is_super_stage, resolve_stage_id
from src.services.stage_overrides import clear_override
from src.utils.alerting import AlertType, send_alert
from src.utils.locks import LockUnavailableError, single_flight
from src.utils.logging import generate_correlation_id, set_correlation_id
from src.utils.redis_client import record_heartbeat

logger = logging.getLogger(__name__)

WORKER_NAME = "move_sync"

# FieldUpdate.field_key -> ClinicConfig attribute holding the GHL custom field id
FIELD_ID_ATTRIBUTES = {
    "deal_type": "service_field_id",
}


class MoveSyncError(Exception):
    """Processing failure with a known classification (config / mapping)."""

    def __init__(self, message: str, kind: str):
        super().__init__(message)
        self.kind = kind


async def run_move_sync():
    """Optional in-process poller. The scheduler endpoint is the primary trigger."""
    interval = get_settings().sync_poll_interval_seconds
    logger.info("Move sync worker started (poll every %ds)", interval)

    while True:
        try:
            await process_pending_moves()
        except Exception as e:
            logger.error("Move sync error: %s", str(e))

        await record_heartbeat(WORKER_NAME)
        await asyncio.sleep(interval)


async def process_pending_moves(
    limit: Optional[int] = None,
    broker=None,
    session_factory=None,
    transport=None,
) -> dict:
    """
    One processor run. Returns {"processed", "failed", "remaining"}, plus
    "skipped": True when another run holds the lock.
    """
    settings = get_settings()
    if session_factory is None:
        from src.database import async_session_factory
        session_factory = async_session_factory
    if broker is None:
        broker = get_token_broker()

    set_correlation_id(generate_correlation_id())

    try:
        async with single_flight(WORKER_NAME):
            return await _run_batch(
                session_factory,
                broker,
                limit or settings.sync_batch_size,
                settings.sync_max_attempts,
                transport,
            )
    except LockUnavailableError:
        logger.info("Move sync already running, skipping this run")
        return {"processed": 0, "failed": 0, "remaining": None, "skipped": True}


async def _run_batch(session_factory, broker, limit: int, max_attempts: int, transport) -> dict:
    processed = 0
    failed = 0

    async with session_factory() as db:
        moves = await claim_batch(db, limit=limit, max_attempts=max_attempts)
        move_ids = [m.id for m in moves]

        if move_ids:
            logger.info("Processing %d pipeline moves", len(move_ids))

        # Per-run cache of each clinic's tracked pipeline stages
        stages_cache: dict[str, Optional[list[dict]]] = {}

        for move_id in move_ids:
            move = await db.get(PipelineMove, move_id)
            if move is None:
                continue
            try:
                synced = await process_move(
                    db, move, broker,
                    max_attempts=max_attempts,
                    transport=transport,
                    stages_cache=stages_cache,
                )
                await db.commit()
            except Exception as e:
                # Recording the outcome itself failed; the row keeps its old state
                logger.error(
                    "Failed to record outcome for move %s: %s", str(move_id), str(e),
                    exc_info=True, extra={"move_id": str(move_id)},
                )
                await db.rollback()
                failed += 1
                continue

            if synced:
                processed += 1
            else:
                failed += 1

        remaining = await _count_pending(db)

    summary = {"processed": processed, "failed": failed, "remaining": remaining}
    if move_ids:
        logger.info(
            "Move sync run complete: %d synced, %d failed, %d remaining",
            processed, failed, remaining,
        )
    return summary


async def _count_pending(db: AsyncSession) -> int:
    result = await db.execute(
        select(func.count())
        .select_from(PipelineMove)
        .where(PipelineMove.status == MoveStatus.PENDING)
    )
    return result.scalar() or 0


async def process_move(
    db: AsyncSession,
    move: PipelineMove,
    broker,
    max_attempts: int = 3,
    transport=None,
    stages_cache: Optional[dict] = None,
) -> bool:
    """
    Process one move and record the outcome on its row. Never raises for a
    processing failure. Returns True when the move is now synced.
    """
    if stages_cache is None:
        stages_cache = {}
    log_extra = {"move_id": str(move.id), "record_id": move.record_id, "clinic": move.clinic}

    try:
        if isinstance(move, StageMove):
            await _sync_stage_move(db, move, broker, transport, stages_cache)
        elif isinstance(move, FieldUpdate):
            await _sync_field_update(move, broker, transport)
        else:
            raise MoveSyncError(f"Unknown move type: {move.move_type}", ErrorKind.CONFIG)
    except Exception as e:
        error_kind, message = _classify(e)
        if error_kind == ErrorKind.UNEXPECTED:
            logger.error(
                "Unexpected error syncing move %s: %s", str(move.id), message,
                exc_info=True, extra={**log_extra, "error_kind": error_kind},
            )
        await _record_failure(db, move, message, error_kind, max_attempts, log_extra)
        return False

    await mark_synced(db, move)
    logger.info("Move synced: %s", move.record_id, extra=log_extra)
    return True


def _classify(exc: Exception) -> tuple[str, str]:
    if isinstance(exc, MoveSyncError):
        return exc.kind, str(exc)
    if isinstance(exc, GHLReauthRequired):
        return ErrorKind.REAUTH, str(exc)
    if isinstance(exc, GHLAuthError):
        return ErrorKind.AUTH, str(exc)
    if isinstance(exc, GHLAPIError):
        return ErrorKind.PROVIDER, str(exc)
    return ErrorKind.UNEXPECTED, f"{type(exc).__name__}: {exc}"


async def _record_failure(
    db: AsyncSession,
    move: PipelineMove,
    message: str,
    error_kind: str,
    max_attempts: int,
    log_extra: dict,
) -> None:
    attempts = (move.attempts or 0) + 1
    retryable = error_kind != ErrorKind.CONFIG
    status = await mark_failed(
        db, move, message, attempts,
        error_kind=error_kind,
        max_attempts=max_attempts,
        retryable=retryable,
    )
    logger.warning(
        "Move sync failed for %s (attempt %d/%d): %s",
        move.record_id, move.attempts, max_attempts, message,
        extra={**log_extra, "error_kind": error_kind},
    )

    if status != MoveStatus.FAILED:
        return

    if not retryable:
        await send_alert(
            AlertType.MOVE_SYNC_CONFIG_ERROR,
            f"Move {str(move.id)[:8]} for {move.record_id} cannot be processed: {message}",
            extra={"clinic": move.clinic},
            cooldown_key=move.clinic,
        )
    else:
        await send_alert(
            AlertType.MOVE_SYNC_EXHAUSTED,
            f"Move {str(move.id)[:8]} for {move.record_id} failed after {move.attempts} attempts: {message}",
            extra={"clinic": move.clinic, "error_kind": error_kind},
            cooldown_key=move.clinic,
        )


def _require_clinic(clinic_key: str):
    clinic = get_clinic_registry().get_clinic(clinic_key)
    if clinic is None:
        raise MoveSyncError(f"Unknown clinic: {clinic_key}", ErrorKind.CONFIG)
    return clinic


def _make_client(token: str, location_id: str, transport) -> GoHighLevelClient:
    settings = get_settings()
    return GoHighLevelClient(
        token,
        location_id,
        base_url=settings.ghl_api_base,
        api_version=settings.ghl_api_version,
        transport=transport,
    )


async def _tracked_stages(client: GoHighLevelClient, clinic, stages_cache: dict) -> list[dict]:
    """Stage list of the clinic's tracked sales pipeline (never any other pipeline)."""
    if clinic.key not in stages_cache:
        stages_cache[clinic.key] = await client.get_pipeline_stages(clinic.sales_pipeline_id)
    stages = stages_cache[clinic.key]
    if stages is None:
        raise MoveSyncError(
            f"Sales pipeline {clinic.sales_pipeline_id} not found for {clinic.key}",
            ErrorKind.MAPPING,
        )
    return stages


async def _sync_stage_move(
    db: AsyncSession,
    move: StageMove,
    broker,
    transport,
    stages_cache: dict,
) -> None:
    clinic = _require_clinic(move.clinic)
    if not is_super_stage(move.to_stage):
        raise MoveSyncError(f"Unknown target stage: {move.to_stage}", ErrorKind.CONFIG)

    token = await broker.get_location_token(clinic.location_id)
    client = _make_client(token, clinic.location_id, transport)
    stages = await _tracked_stages(client, clinic, stages_cache)

    stage_id = resolve_stage_id(stages, move.to_stage)
    if stage_id is None:
        if is_local_only(move.to_stage):
            # No CRM stage to write; the override stays as the local record
            logger.info(
                "%s move for %s has no GHL stage, marking synced locally",
                move.to_stage, move.record_id,
                extra={"move_id": str(move.id), "record_id": move.record_id, "clinic": move.clinic},
            )
            return
        available = ", ".join(s.get("name") or "?" for s in stages)
        raise MoveSyncError(
            f"No matching stage for {move.to_stage}. Available: {available}",
            ErrorKind.MAPPING,
        )

    await client.update_opportunity_stage(move.record_id, stage_id)

    # A newer open move still needs the override, even if it holds the same stage
    if not await has_newer_open_stage_move(db, move):
        await clear_override(db, move.record_id, move.to_stage)
    await _update_mirror(db, move, stage_id, stages)


async def _update_mirror(db: AsyncSession, move: StageMove, stage_id: str, stages: list[dict]) -> None:
    opportunity = await db.get(Opportunity, move.record_id)
    if opportunity is None:
        return
    stage_name = next((s.get("name") for s in stages if s.get("id") == stage_id), None)
    opportunity.pipeline_stage_id = stage_id
    opportunity.stage_name = stage_name
    opportunity.super_stage = move.to_stage
    opportunity.last_stage_change_at = datetime.now(timezone.utc)
    await db.flush()


async def _sync_field_update(move: FieldUpdate, broker, transport) -> None:
    clinic = _require_clinic(move.clinic)

    attribute = FIELD_ID_ATTRIBUTES.get(move.field_key or "")
    if attribute is None:
        raise MoveSyncError(f"Unknown field: {move.field_key}", ErrorKind.CONFIG)
    field_id = getattr(clinic, attribute, None)
    if not field_id:
        raise MoveSyncError(
            f"No {move.field_key} field configured for {clinic.key}", ErrorKind.CONFIG
        )

    token = await broker.get_location_token(clinic.location_id)
    client = _make_client(token, clinic.location_id, transport)
    await client.update_contact_custom_field(move.record_id, field_id, move.field_value or "")
