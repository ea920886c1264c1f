"""
Opportunity sync worker - refreshes the local opportunity mirror from GHL.

For each clinic: read the tracked sales pipeline's stages, page through
/opportunities/search, map every stage name to a super stage and upsert the
rows that land in a tracked stage. deal_type is owned locally and is never
overwritten here.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import get_settings
from src.integrations.ghl_oauth import GHLAuthError, get_token_broker
from src.integrations.gohighlevel import GHLAPIError, GoHighLevelClient
from src.models.opportunity import Opportunity
from src.services.clinic_registry import get_clinic_registry
from src.services.stage_mapping import get_super_stage_by_name
from src.utils.alerting import AlertType, send_alert
from src.utils.locks import LockUnavailableError, single_flight
from src.utils.logging import generate_correlation_id, set_correlation_id
from src.utils.redis_client import record_heartbeat

logger = logging.getLogger(__name__)

WORKER_NAME = "opportunity_sync"
LOOKUP_BATCH_SIZE = 100


async def run_opportunity_sync():
    """Optional in-process poller for the mirror refresh."""
    interval = get_settings().opportunity_sync_interval_seconds
    logger.info("Opportunity sync worker started (poll every %ds)", interval)

    while True:
        try:
            await sync_opportunities()
        except Exception as e:
            logger.error("Opportunity sync error: %s", str(e))

        await record_heartbeat(WORKER_NAME)
        await asyncio.sleep(interval)


async def sync_opportunities(
    clinic_key: Optional[str] = None,
    broker=None,
    session_factory=None,
    transport=None,
) -> dict:
    """
    Refresh the mirror for one clinic or all of them.
    Returns clinic -> {fetched, upserted, skipped, error}, or {"skipped": True}
    when another refresh is running.
    """
    registry = get_clinic_registry()
    if clinic_key is not None:
        clinic = registry.get_clinic(clinic_key)
        if clinic is None:
            raise ValueError(f"Unknown clinic: {clinic_key}")
        clinics = [clinic]
    else:
        clinics = registry.list_clinics()

    if session_factory is None:
        from src.database import async_session_factory
        session_factory = async_session_factory
    if broker is None:
        broker = get_token_broker()

    set_correlation_id(generate_correlation_id())

    try:
        async with single_flight(WORKER_NAME):
            results = {}
            for clinic in clinics:
                results[clinic.key] = await sync_clinic(clinic, broker, session_factory, transport)
            return results
    except LockUnavailableError:
        logger.info("Opportunity sync already running, skipping this run")
        return {"skipped": True}


async def sync_clinic(clinic, broker, session_factory, transport=None) -> dict:
    """Mirror one clinic. Provider and token failures are reported, not raised."""
    summary = {"fetched": 0, "upserted": 0, "skipped": 0, "error": None}
    log_extra = {"clinic": clinic.key}

    try:
        opportunities, stage_names = await _fetch_clinic_opportunities(clinic, broker, transport)
    except (GHLAuthError, GHLAPIError) as e:
        summary["error"] = str(e)
        logger.error("Opportunity fetch failed for %s: %s", clinic.key, str(e), extra=log_extra)
        await send_alert(
            AlertType.OPPORTUNITY_SYNC_FAILED,
            f"Opportunity sync failed for {clinic.key}: {e}",
            severity="warning",
            cooldown_key=clinic.key,
        )
        return summary

    summary["fetched"] = len(opportunities)

    async with session_factory() as db:
        upserted, skipped = await upsert_opportunities(db, clinic.key, opportunities, stage_names)
        await db.commit()

    summary["upserted"] = upserted
    summary["skipped"] = skipped
    logger.info(
        "%s: mirrored %d of %d opportunities (%d out of scope)",
        clinic.key, upserted, len(opportunities), skipped, extra=log_extra,
    )
    return summary


async def _fetch_clinic_opportunities(clinic, broker, transport) -> tuple[list[dict], dict[str, str]]:
    settings = get_settings()
    token = await broker.get_location_token(clinic.location_id)
    client = GoHighLevelClient(
        token,
        clinic.location_id,
        base_url=settings.ghl_api_base,
        api_version=settings.ghl_api_version,
        transport=transport,
    )

    stages = await client.get_pipeline_stages(clinic.sales_pipeline_id)
    if stages is None:
        raise GHLAPIError(f"Sales pipeline {clinic.sales_pipeline_id} not found for {clinic.key}")
    stage_names = {s["id"]: s.get("name") or "" for s in stages if s.get("id")}

    opportunities: list[dict] = []
    start_after_id = None
    start_after = None
    for _ in range(settings.opportunity_sync_max_pages):
        data = await client.search_opportunities(
            clinic.sales_pipeline_id,
            start_after_id=start_after_id,
            start_after=start_after,
        )
        page = data.get("opportunities") or []
        if not page:
            break
        opportunities.extend(page)

        meta = data.get("meta") or {}
        start_after_id = meta.get("startAfterId") or page[-1].get("id")
        start_after = meta.get("startAfter")
        if not meta.get("nextPageUrl"):
            break

    return opportunities, stage_names


async def upsert_opportunities(
    db: AsyncSession,
    clinic_key: str,
    opportunities: list[dict],
    stage_names: dict[str, str],
) -> tuple[int, int]:
    """Upsert tracked-stage opportunities. Returns (upserted, skipped)."""
    rows = {}
    skipped = 0
    for opp in opportunities:
        stage_name = stage_names.get(opp.get("pipelineStageId") or "", "")
        super_stage = get_super_stage_by_name(stage_name)
        if not super_stage or not opp.get("id"):
            skipped += 1
            continue
        rows[opp["id"]] = (opp, stage_name, super_stage)

    existing = await _load_existing(db, list(rows))
    now = datetime.now(timezone.utc)

    for opp_id, (opp, stage_name, super_stage) in rows.items():
        row = existing.get(opp_id)
        if row is None:
            row = Opportunity(id=opp_id)
            db.add(row)
        row.clinic = clinic_key
        row.name = opp.get("name")
        row.contact_id = opp.get("contactId")
        row.assigned_to = opp.get("assignedTo") or None
        row.monetary_value = float(opp.get("monetaryValue") or 0)
        row.status = opp.get("status")
        row.source = opp.get("source") or None
        row.pipeline_stage_id = opp.get("pipelineStageId")
        row.stage_name = stage_name
        row.super_stage = super_stage
        row.last_stage_change_at = _parse_timestamp(opp.get("lastStageChangeAt"))
        row.ghl_created_at = _parse_timestamp(opp.get("createdAt"))
        row.ghl_updated_at = _parse_timestamp(opp.get("updatedAt"))
        row.synced_at = now

    await db.flush()
    return len(rows), skipped


async def _load_existing(db: AsyncSession, ids: list[str]) -> dict[str, Opportunity]:
    existing = {}
    for i in range(0, len(ids), LOOKUP_BATCH_SIZE):
        batch = ids[i:i + LOOKUP_BATCH_SIZE]
        result = await db.execute(select(Opportunity).where(Opportunity.id.in_(batch)))
        for row in result.scalars().all():
            existing[row.id] = row
    return existing


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug("Unparseable GHL timestamp: %s", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
