"""
GoHighLevel CRM client - REST API v2, location-scoped.

Auth: Bearer location access token from the OAuth token broker (ghl_oauth).
Docs: https://highlevel.stoplight.io/docs/integrations
All calls have a 10-second timeout. Non-2xx responses raise GHLAPIError.
"""
import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

BASE_URL = "https://services.leadconnectorhq.com"
API_VERSION = "2021-07-28"
TIMEOUT = 10.0
ERROR_BODY_LIMIT = 500
SEARCH_PAGE_SIZE = 100


class GHLAPIError(Exception):
    """Non-2xx response (status_code set) or transport failure (status_code None)."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body[:ERROR_BODY_LIMIT]


class GoHighLevelClient:
    """GoHighLevel API v2 calls used by the move queue and the opportunity mirror."""

    def __init__(
        self,
        access_token: str,
        location_id: str,
        base_url: str = BASE_URL,
        api_version: str = API_VERSION,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.location_id = location_id
        self.base_url = base_url.rstrip("/")
        self._transport = transport
        self._headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Version": api_version,
        }

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> dict:
        """Make an authenticated request to the GoHighLevel API."""
        try:
            async with httpx.AsyncClient(timeout=TIMEOUT, transport=self._transport) as client:
                response = await client.request(
                    method,
                    f"{self.base_url}{path}",
                    headers=self._headers,
                    json=json,
                    params=params,
                )
        except httpx.HTTPError as e:
            raise GHLAPIError(f"GHL request failed: {type(e).__name__}: {e}") from e

        if not response.is_success:
            body = response.text[:ERROR_BODY_LIMIT]
            raise GHLAPIError(
                f"GHL API error: {response.status_code} - {body}",
                status_code=response.status_code,
                body=body,
            )
        if not response.content:
            return {}
        return response.json()

    async def get_pipelines(self) -> list[dict]:
        """All pipelines (with their stages) for this location."""
        data = await self._request(
            "GET", "/opportunities/pipelines", params={"locationId": self.location_id}
        )
        return data.get("pipelines", [])

    async def get_pipeline_stages(self, pipeline_id: str) -> Optional[list[dict]]:
        """Stages of one pipeline, or None if the location has no such pipeline."""
        for pipeline in await self.get_pipelines():
            if pipeline.get("id") == pipeline_id:
                return pipeline.get("stages") or []
        return None

    async def update_opportunity(self, opportunity_id: str, updates: dict) -> dict:
        data = await self._request("PUT", f"/opportunities/{opportunity_id}", json=updates)
        logger.info("GHL opportunity updated: %s", opportunity_id, extra={"record_id": opportunity_id})
        return data

    async def update_opportunity_stage(self, opportunity_id: str, pipeline_stage_id: str) -> dict:
        return await self.update_opportunity(opportunity_id, {"pipelineStageId": pipeline_stage_id})

    async def update_contact_custom_field(self, contact_id: str, field_id: str, value: str) -> dict:
        """Set one contact custom field. Requires the contacts.write scope."""
        data = await self._request(
            "PUT",
            f"/contacts/{contact_id}",
            json={"customFields": [{"id": field_id, "value": value}]},
        )
        logger.info("GHL contact field %s updated: %s", field_id, contact_id, extra={"record_id": contact_id})
        return data

    async def search_opportunities(
        self,
        pipeline_id: str,
        start_after_id: Optional[str] = None,
        start_after: Optional[str] = None,
        limit: int = SEARCH_PAGE_SIZE,
    ) -> dict:
        """One page of opportunities in a pipeline. Returns {"opportunities": [...], "meta": {...}}."""
        params = {
            "location_id": self.location_id,
            "pipeline_id": pipeline_id,
            "limit": limit,
        }
        if start_after_id:
            params["startAfterId"] = start_after_id
        if start_after:
            params["startAfter"] = start_after
        return await self._request("GET", "/opportunities/search", params=params)
