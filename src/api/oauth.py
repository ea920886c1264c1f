"""
GoHighLevel OAuth endpoints - re-authorization flow and token status.

An operator opens /authorize, approves the app in GHL, and GHL redirects to
/callback with a code. Storing that authorization clears needs_reauth.
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from src.database import get_db
from src.integrations.ghl_oauth import GHLAuthError, get_token_broker
from src.services.sync_status import get_token_status

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/oauth", tags=["oauth"])


@router.get("/authorize")
async def authorize(redirect: bool = Query(True)):
    """Send the operator to the GHL consent screen (or return the URL)."""
    broker = get_token_broker()
    if not broker.settings.ghl_oauth_client_id:
        raise HTTPException(status_code=503, detail="GHL OAuth client not configured")

    url = broker.authorization_url()
    if redirect:
        return RedirectResponse(url)
    return {"url": url}


@router.get("/callback")
async def callback(
    code: str = Query(""),
    error: str = Query(""),
):
    """Exchange the authorization code and store the new token pair."""
    if error:
        raise HTTPException(status_code=400, detail=f"Authorization denied: {error}")
    if not code:
        raise HTTPException(status_code=400, detail="Missing authorization code")

    try:
        company_key = await get_token_broker().complete_authorization(code)
    except GHLAuthError as e:
        logger.error("OAuth callback failed: %s", str(e))
        raise HTTPException(status_code=400, detail=str(e))

    logger.info("Re-authorization complete for %s", company_key, extra={"company": company_key})
    return {"success": True, "company": company_key}


@router.get("/token-status")
async def token_status(
    db: AsyncSession = Depends(get_db),
):
    """Which companies need an operator to re-authorize."""
    return await get_token_status(db)
