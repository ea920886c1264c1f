"""
GoHighLevel OAuth token broker - company token -> location token, with
automatic persistence of rotated refresh tokens.

Two-step exchange:
1. Company (agency) access token from the company's refresh token (/oauth/token)
2. Location access token from the company token (/oauth/locationToken)

CRITICAL: GHL refresh tokens are single-use. Every refresh returns a new one
which must replace the stored value, or every later refresh fails.

Both token levels are cached in-process with a 5-minute early-expiry buffer.
A process restart loses the cache; the next call re-derives tokens from the
stored refresh token. Refreshes are serialized per company so two coroutines
never spend the same refresh token.

Once GHL rejects a refresh token the company is flagged needs_reauth in
ghl_tokens and no further refresh is attempted until the OAuth callback
stores a fresh authorization.
"""
import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import httpx

from src.models.ghl_token import GHLToken
from src.utils.alerting import AlertType, send_alert
from src.utils.encryption import decrypt_token, encrypt_token

logger = logging.getLogger(__name__)

TIMEOUT = 10.0
ERROR_BODY_LIMIT = 500
# Response markers meaning the refresh token itself is dead
REAUTH_MARKERS = ("invalid_grant", "expired")
REAUTH_STATUS_CODES = (400, 401)


class GHLAuthError(Exception):
    """Token could not be obtained. Transient: the caller may retry later."""
    pass


class GHLReauthRequired(GHLAuthError):
    """The company's credential was rejected. Needs an interactive re-authorization."""

    def __init__(self, company_key: str, message: str):
        super().__init__(message)
        self.company_key = company_key


class GHLTokenBroker:
    """Process-wide token cache backed by the ghl_tokens table."""

    def __init__(
        self,
        session_factory: Optional[Callable] = None,
        settings=None,
        registry=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ):
        if settings is None:
            from src.config import get_settings
            settings = get_settings()
        if registry is None:
            from src.services.clinic_registry import get_clinic_registry
            registry = get_clinic_registry()
        if session_factory is None:
            from src.database import async_session_factory
            session_factory = async_session_factory

        self.settings = settings
        self.registry = registry
        self._session_factory = session_factory
        self._transport = transport
        self._clock = clock
        self._base_url = settings.ghl_api_base.rstrip("/")
        self._expiry_buffer = settings.token_expiry_buffer_seconds

        self._company_cache: dict[str, dict] = {}
        self._location_cache: dict[str, dict] = {}
        # Rotated refresh tokens that could not be written to the store yet.
        # Newer than whatever the store holds, so they take precedence.
        self._unsaved_refresh_tokens: dict[str, str] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_access_token(self, clinic_key: str) -> str:
        """Location access token for a clinic."""
        clinic = self.registry.get_clinic(clinic_key)
        if clinic is None:
            raise GHLAuthError(f"Unknown clinic: {clinic_key}")
        return await self.get_location_token(clinic.location_id)

    async def get_company_token(self, company_key: str) -> str:
        token = self._cached(self._company_cache, company_key)
        if token:
            return token
        async with self._lock_for(f"company:{company_key}"):
            # Another coroutine may have refreshed while we waited
            token = self._cached(self._company_cache, company_key)
            if token:
                return token
            return await self._refresh_company_token(company_key)

    async def get_location_token(self, location_id: str) -> str:
        token = self._cached(self._location_cache, location_id)
        if token:
            return token

        company = self.registry.get_company_for_location(location_id)
        if company is None:
            raise GHLAuthError(f"Unknown location: {location_id}")

        async with self._lock_for(f"location:{location_id}"):
            token = self._cached(self._location_cache, location_id)
            if token:
                return token
            company_token = await self.get_company_token(company.key)
            return await self._exchange_location_token(company, location_id, company_token)

    def invalidate(self, company_key: Optional[str] = None) -> None:
        """Drop cached tokens for one company (and its locations), or everything."""
        if company_key is None:
            self._company_cache.clear()
            self._location_cache.clear()
            return
        self._company_cache.pop(company_key, None)
        for clinic in self.registry.list_clinics():
            if clinic.company_key == company_key:
                self._location_cache.pop(clinic.location_id, None)

    async def refresh_all(self) -> dict[str, str]:
        """
        Force a refresh of every company token and its location tokens.
        Keeps rotating refresh tokens warm. Returns company/clinic -> outcome.
        """
        results: dict[str, str] = {}
        for company in self.registry.list_companies():
            self.invalidate(company.key)
            try:
                await self.get_company_token(company.key)
                results[company.key] = "refreshed"
            except GHLReauthRequired as e:
                results[company.key] = f"needs_reauth: {e}"
                continue
            except GHLAuthError as e:
                results[company.key] = f"error: {e}"
                continue

            for clinic in self.registry.list_clinics():
                if clinic.company_key != company.key:
                    continue
                try:
                    await self.get_location_token(clinic.location_id)
                    results[clinic.key] = "refreshed"
                except GHLAuthError as e:
                    results[clinic.key] = f"error: {e}"
        return results

    # ------------------------------------------------------------------
    # Re-authorization (operator flow)
    # ------------------------------------------------------------------

    def authorization_url(self) -> str:
        from urllib.parse import urlencode

        query = urlencode({
            "response_type": "code",
            "client_id": self.settings.ghl_oauth_client_id,
            "redirect_uri": self._redirect_uri(),
            "scope": self.settings.ghl_oauth_scopes,
        })
        return f"{self.settings.ghl_oauth_authorize_url}?{query}"

    async def complete_authorization(self, code: str) -> str:
        """
        Exchange an authorization code, store the token pair, clear needs_reauth.
        Returns the company key the authorization belongs to.
        """
        data = await self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self._redirect_uri(),
        })

        company = self.registry.get_company_by_id(data.get("companyId", ""))
        if company is None:
            raise GHLAuthError(f"Authorization is for an unknown company: {data.get('companyId')}")

        await self.store_authorized_tokens(company.key, company.company_id, data)
        return company.key

    async def store_authorized_tokens(self, company_key: str, company_id: str, data: dict) -> None:
        """Persist a fresh authorization and clear the re-auth flag. Raises on store failure."""
        async with self._lock_for(f"company:{company_key}"):
            async with self._session_factory() as db:
                row = await db.get(GHLToken, company_key)
                if row is None:
                    row = GHLToken(id=company_key)
                    db.add(row)
                row.company_id = company_id
                row.refresh_token = encrypt_token(data["refresh_token"])
                row.access_token = encrypt_token(data["access_token"])
                row.access_token_expires_at = self._expires_at(data)
                row.needs_reauth = False
                row.needs_reauth_at = None
                row.last_error = None
                row.updated_at = datetime.now(timezone.utc)
                await db.commit()

            self.invalidate(company_key)
            self._unsaved_refresh_tokens.pop(company_key, None)
            self._company_cache[company_key] = self._cache_entry(data["access_token"], data, company_key)
        logger.info("Stored new authorization for %s", company_key, extra={"company": company_key})

    async def seed_bootstrap_tokens(self) -> dict[str, list[str]]:
        """
        Copy bootstrap refresh tokens from settings into the store.
        Companies that already hold a stored token are skipped: the stored one
        is newer (it rotates) and overwriting it would break refresh.
        """
        seeded, skipped = [], []
        bootstrap = self.settings.ghl_bootstrap_refresh_tokens or {}
        async with self._session_factory() as db:
            for company in self.registry.list_companies():
                token = bootstrap.get(company.key)
                if not token:
                    continue
                row = await db.get(GHLToken, company.key)
                if row is not None and row.refresh_token:
                    skipped.append(company.key)
                    continue
                if row is None:
                    row = GHLToken(id=company.key)
                    db.add(row)
                row.company_id = company.company_id
                row.refresh_token = encrypt_token(token)
                row.updated_at = datetime.now(timezone.utc)
                seeded.append(company.key)
            await db.commit()
        return {"seeded": seeded, "skipped": skipped}

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _cached(self, cache: dict, key: str) -> Optional[str]:
        entry = cache.get(key)
        if entry and entry["expires_at"] > self._clock() + entry["buffer"]:
            return entry["token"]
        return None

    def _cache_entry(self, token: str, data: dict, key: str) -> dict:
        """
        Cache entry for a fresh access token. The expiry buffer is capped at half
        the token's lifetime so short-lived tokens are still reused.
        """
        lifetime = int(data.get("expires_in", 0))
        buffer = self._expiry_buffer
        if lifetime <= buffer:
            logger.warning(
                "Token for %s expires in %ds, within the %ds refresh buffer",
                key, lifetime, buffer,
            )
            buffer = lifetime // 2
        return {"token": token, "expires_at": self._clock() + lifetime, "buffer": buffer}

    def _redirect_uri(self) -> str:
        return self.settings.ghl_oauth_redirect_uri or (
            f"{self.settings.app_base_url.rstrip('/')}/api/v1/oauth/callback"
        )

    @staticmethod
    def _expires_at(data: dict) -> datetime:
        return datetime.now(timezone.utc) + timedelta(seconds=int(data.get("expires_in", 0)))

    def _bootstrap_token(self, company_key: str) -> Optional[str]:
        return (self.settings.ghl_bootstrap_refresh_tokens or {}).get(company_key)

    async def _load_refresh_token(self, company_key: str) -> Optional[str]:
        """
        Current refresh token for a company.
        Bootstrap settings are only used when the store has nothing for the
        company or cannot be read at all.
        """
        unsaved = self._unsaved_refresh_tokens.get(company_key)

        try:
            async with self._session_factory() as db:
                row = await db.get(GHLToken, company_key)
        except Exception as e:
            logger.warning(
                "Token lookup failed for %s, using fallback: %s", company_key, str(e),
                extra={"company": company_key},
            )
            return unsaved or self._bootstrap_token(company_key)

        if row is not None and row.needs_reauth:
            raise GHLReauthRequired(
                company_key,
                f"{company_key} requires re-authorization"
                + (f" ({row.last_error})" if row.last_error else ""),
            )
        if unsaved:
            return unsaved
        if row is not None and row.refresh_token:
            return decrypt_token(row.refresh_token)
        return self._bootstrap_token(company_key)

    async def _token_request(self, form: dict, company_key: Optional[str] = None) -> dict:
        """
        POST /oauth/token and return the JSON body. Refresh failures for a company
        raise GHLReauthRequired when the credential is dead, GHLAuthError otherwise.
        """
        client_id = self.settings.ghl_oauth_client_id
        client_secret = self.settings.ghl_oauth_client_secret
        if not client_id or not client_secret:
            raise GHLAuthError("Missing GHL OAuth client credentials")

        payload = {"client_id": client_id, "client_secret": client_secret, **form}
        try:
            async with httpx.AsyncClient(timeout=TIMEOUT, transport=self._transport) as client:
                response = await client.post(
                    f"{self._base_url}/oauth/token",
                    data=payload,
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            raise GHLAuthError(f"Token endpoint unreachable: {type(e).__name__}: {e}") from e

        if response.is_success:
            return response.json()

        body = response.text[:ERROR_BODY_LIMIT]
        message = f"Token refresh failed: {response.status_code} - {body}"
        if company_key is None:
            raise GHLAuthError(message)

        lowered = body.lower()
        if response.status_code in REAUTH_STATUS_CODES or any(m in lowered for m in REAUTH_MARKERS):
            await self._flag_needs_reauth(company_key, message)
            raise GHLReauthRequired(company_key, message)
        raise GHLAuthError(message)

    async def _refresh_company_token(self, company_key: str) -> str:
        company = self.registry.get_company(company_key)
        if company is None:
            raise GHLAuthError(f"Unknown company: {company_key}")

        refresh_token = await self._load_refresh_token(company_key)
        if not refresh_token:
            raise GHLAuthError(f"No refresh token available for {company_key}")

        data = await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            company_key=company_key,
        )

        access_token = data["access_token"]
        await self._save_tokens(company_key, company.company_id, data)
        self._company_cache[company_key] = self._cache_entry(access_token, data, company_key)
        logger.info("Company token refreshed for %s", company_key, extra={"company": company_key})
        return access_token

    async def _save_tokens(self, company_key: str, company_id: str, data: dict) -> None:
        """Persist the rotated pair. A store failure is logged, not raised."""
        new_refresh = data.get("refresh_token")
        if new_refresh:
            self._unsaved_refresh_tokens[company_key] = new_refresh
        try:
            async with self._session_factory() as db:
                row = await db.get(GHLToken, company_key)
                if row is None:
                    row = GHLToken(id=company_key)
                    db.add(row)
                row.company_id = company_id
                if new_refresh:
                    row.refresh_token = encrypt_token(new_refresh)
                row.access_token = encrypt_token(data.get("access_token"))
                row.access_token_expires_at = self._expires_at(data)
                row.last_error = None
                row.updated_at = datetime.now(timezone.utc)
                await db.commit()
            self._unsaved_refresh_tokens.pop(company_key, None)
        except Exception as e:
            logger.error(
                "Failed to save rotated tokens for %s: %s", company_key, str(e),
                extra={"company": company_key},
            )
            await send_alert(
                AlertType.GHL_TOKEN_PERSIST_FAILED,
                f"Rotated refresh token for {company_key} held in memory only: {e}",
                cooldown_key=company_key,
            )

    async def _flag_needs_reauth(self, company_key: str, error: str) -> None:
        self.invalidate(company_key)
        self._unsaved_refresh_tokens.pop(company_key, None)
        try:
            async with self._session_factory() as db:
                row = await db.get(GHLToken, company_key)
                if row is None:
                    row = GHLToken(id=company_key)
                    db.add(row)
                row.needs_reauth = True
                row.needs_reauth_at = datetime.now(timezone.utc)
                row.last_error = error
                row.updated_at = datetime.now(timezone.utc)
                await db.commit()
        except Exception as e:
            logger.error(
                "Failed to flag %s for re-authorization: %s", company_key, str(e),
                extra={"company": company_key},
            )
        await send_alert(
            AlertType.GHL_REAUTH_REQUIRED,
            f"GoHighLevel authorization for {company_key} was rejected. Re-authorize via /api/v1/oauth/authorize",
            severity="critical",
            extra={"error": error[:200]},
            cooldown_key=company_key,
        )

    async def _exchange_location_token(self, company, location_id: str, company_token: str) -> str:
        try:
            async with httpx.AsyncClient(timeout=TIMEOUT, transport=self._transport) as client:
                response = await client.post(
                    f"{self._base_url}/oauth/locationToken",
                    data={"companyId": company.company_id, "locationId": location_id},
                    headers={
                        "Authorization": f"Bearer {company_token}",
                        "Version": self.settings.ghl_api_version,
                        "Accept": "application/json",
                    },
                )
        except httpx.HTTPError as e:
            raise GHLAuthError(f"Location token endpoint unreachable: {type(e).__name__}: {e}") from e

        if not response.is_success:
            if response.status_code == 401:
                # Company token revoked before its expiry; next call refreshes it
                self._company_cache.pop(company.key, None)
            body = response.text[:ERROR_BODY_LIMIT]
            raise GHLAuthError(f"Failed to get location token: {response.status_code} - {body}")

        data = response.json()
        self._location_cache[location_id] = self._cache_entry(data["access_token"], data, location_id)
        logger.info("Location token acquired for %s", location_id, extra={"company": company.key})
        return data["access_token"]


_broker: Optional[GHLTokenBroker] = None


def get_token_broker() -> GHLTokenBroker:
    """Process-wide broker (one token cache per process)."""
    global _broker
    if _broker is None:
        _broker = GHLTokenBroker()
    return _broker
