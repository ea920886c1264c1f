"""
Scheduler endpoints - mirror refresh and proactive token refresh.
All guarded by the cron secret.
"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query

from src.api.auth import require_cron_secret
from src.services.clinic_registry import get_clinic_registry

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/api/v1/cron",
    tags=["cron"],
    dependencies=[Depends(require_cron_secret)],
)


@router.api_route("/sync-opportunities", methods=["GET", "POST"])
async def sync_opportunities_endpoint(
    clinic: Optional[str] = Query(None),
):
    """Refresh the opportunity mirror for one clinic (?clinic=) or all."""
    if clinic and get_clinic_registry().get_clinic(clinic) is None:
        raise HTTPException(status_code=400, detail=f"Unknown clinic: {clinic}")

    from src.workers.opportunity_sync import sync_opportunities
    results = await sync_opportunities(clinic_key=clinic)
    if results.get("skipped"):
        return {"success": True, "skipped": True}
    return {
        "success": all(r.get("error") is None for r in results.values()),
        "results": results,
    }


@router.get("/refresh-ghl-tokens")
async def refresh_ghl_tokens():
    """Refresh every company and location token (keeps refresh tokens alive)."""
    from src.workers.token_refresh import refresh_all_tokens
    results = await refresh_all_tokens()
    return {
        "success": all(outcome == "refreshed" for outcome in results.values()),
        "results": results,
    }
