"""
Sync status reporter - one summary of the move queue for the UI indicator.

state precedence: any failed row -> "failed", else any pending -> "pending",
else "synced". A single terminally failed move turns the indicator red.
"""
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.ghl_token import GHLToken
from src.models.pipeline_move import PipelineMove, MoveStatus
from src.services.move_queue import count_by_status

logger = logging.getLogger(__name__)


async def get_sync_state(db: AsyncSession) -> dict:
    """
    Returns {status, pending_count, failed_count, last_sync_at, last_error, needs_reauth}.
    pending_count counts pending + failed (both not yet applied in GHL).
    """
    counts = await count_by_status(db)
    pending = counts.get(MoveStatus.PENDING, 0)
    failed = counts.get(MoveStatus.FAILED, 0)

    if failed > 0:
        status = MoveStatus.FAILED
    elif pending > 0:
        status = MoveStatus.PENDING
    else:
        status = MoveStatus.SYNCED

    last_sync = await db.execute(
        select(PipelineMove.synced_at)
        .where(PipelineMove.status == MoveStatus.SYNCED)
        .where(PipelineMove.synced_at.is_not(None))
        .order_by(PipelineMove.synced_at.desc())
        .limit(1)
    )
    last_sync_at = last_sync.scalar_one_or_none()

    needs_reauth = await _companies_needing_reauth(db)

    return {
        "status": status,
        "pending_count": pending + failed,
        "failed_count": failed,
        "last_sync_at": last_sync_at.isoformat() if last_sync_at else None,
        "last_error": await _most_relevant_error(db, status),
        "needs_reauth": needs_reauth,
    }


async def _most_relevant_error(db: AsyncSession, status: str):
    """Most recent failure among failed rows when red, otherwise among retrying pending rows."""
    if status == MoveStatus.SYNCED:
        return None
    result = await db.execute(
        select(PipelineMove.last_error)
        .where(PipelineMove.status == status)
        .where(PipelineMove.last_error.is_not(None))
        .order_by(PipelineMove.last_attempt_at.desc().nulls_last(), PipelineMove.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _companies_needing_reauth(db: AsyncSession) -> list[str]:
    result = await db.execute(
        select(GHLToken.id).where(GHLToken.needs_reauth.is_(True)).order_by(GHLToken.id)
    )
    return list(result.scalars().all())


async def get_token_status(db: AsyncSession) -> dict:
    """Per-company OAuth health for operators: which companies must re-authorize."""
    from src.services.clinic_registry import get_clinic_registry

    registry = get_clinic_registry()
    result = await db.execute(select(GHLToken))
    rows = {row.id: row for row in result.scalars().all()}

    companies = {}
    for company in registry.list_companies():
        row = rows.get(company.key)
        companies[company.key] = {
            "name": company.name or company.key,
            "has_token": bool(row and row.refresh_token),
            "needs_reauth": bool(row and row.needs_reauth),
            "needs_reauth_at": row.needs_reauth_at.isoformat() if row and row.needs_reauth_at else None,
            "last_error": row.last_error if row else None,
            "updated_at": row.updated_at.isoformat() if row and row.updated_at else None,
        }

    needs_reauth = [
        {
            "company": key,
            "name": info["name"],
            "since": info["needs_reauth_at"],
            "error": info["last_error"],
        }
        for key, info in companies.items()
        if info["needs_reauth"]
    ]
    return {"ok": not needs_reauth, "needs_reauth": needs_reauth, "companies": companies}
