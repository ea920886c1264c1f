"""
Tests for src/integrations/ghl_oauth.py - company/location token broker.
"""
import asyncio
from urllib.parse import parse_qsl
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from sqlalchemy import select

from src.integrations.ghl_oauth import GHLAuthError, GHLReauthRequired, GHLTokenBroker
from src.models.ghl_token import GHLToken

VEGAS_COMPANY_ID = "wX6xVVyBQwLwMugrEdvR"
LAS_VEGAS_LOCATION = "1isaYfEkvNkyLH3XepI5"


class FakeOAuthProvider:
    """GHL OAuth endpoints: every refresh rotates the refresh token."""

    def __init__(self):
        self.token_calls: list[dict] = []
        self.location_calls: list[tuple[dict, str]] = []
        self.issued = 0
        self.token_status = 200
        self.token_error_body = ""
        self.company_id = VEGAS_COMPANY_ID
        self.expires_in = 86399

    def handler(self, request: httpx.Request) -> httpx.Response:
        form = dict(parse_qsl(request.read().decode()))
        if request.url.path == "/oauth/token":
            self.token_calls.append(form)
            if self.token_status != 200:
                return httpx.Response(self.token_status, text=self.token_error_body)
            self.issued += 1
            return httpx.Response(200, json={
                "access_token": f"company-access-{self.issued}",
                "refresh_token": f"refresh-{self.issued}",
                "expires_in": self.expires_in,
                "companyId": self.company_id,
            })
        if request.url.path == "/oauth/locationToken":
            self.location_calls.append((form, request.headers.get("Authorization")))
            return httpx.Response(200, json={
                "access_token": f"location-access-{form['locationId']}",
                "expires_in": 86399,
            })
        return httpx.Response(404)


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def provider():
    return FakeOAuthProvider()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mock_alert():
    with patch("src.integrations.ghl_oauth.send_alert", new_callable=AsyncMock) as mock:
        yield mock


@pytest.fixture
def make_broker(session_factory, make_settings, provider, clock):
    def _make(factory=None, **settings_overrides):
        return GHLTokenBroker(
            session_factory=factory or session_factory,
            settings=make_settings(**settings_overrides),
            transport=httpx.MockTransport(provider.handler),
            clock=clock,
        )
    return _make


async def _seed_token(session_factory, company_key="vegas", refresh_token="refresh-0", **kwargs):
    async with session_factory() as db:
        db.add(GHLToken(id=company_key, company_id=VEGAS_COMPANY_ID, refresh_token=refresh_token, **kwargs))
        await db.commit()


async def _load_token(session_factory, company_key="vegas"):
    async with session_factory() as db:
        result = await db.execute(select(GHLToken).where(GHLToken.id == company_key))
        return result.scalar_one_or_none()


class TestCompanyToken:
    async def test_refresh_uses_stored_token_and_persists_rotation(
        self, make_broker, provider, session_factory
    ):
        await _seed_token(session_factory)
        broker = make_broker()

        token = await broker.get_company_token("vegas")

        assert token == "company-access-1"
        assert provider.token_calls[0]["grant_type"] == "refresh_token"
        assert provider.token_calls[0]["refresh_token"] == "refresh-0"
        assert provider.token_calls[0]["client_id"] == "client-id"

        row = await _load_token(session_factory)
        assert row.refresh_token == "refresh-1"
        assert row.access_token == "company-access-1"
        assert row.access_token_expires_at is not None

    async def test_rotation_never_reuses_stale_token(self, make_broker, provider, session_factory):
        """After N refreshes the stored token is the Nth response's, and each refresh used the previous one."""
        await _seed_token(session_factory)
        broker = make_broker()

        for _ in range(3):
            broker.invalidate("vegas")
            await broker.get_company_token("vegas")

        assert [c["refresh_token"] for c in provider.token_calls] == ["refresh-0", "refresh-1", "refresh-2"]
        row = await _load_token(session_factory)
        assert row.refresh_token == "refresh-3"

    async def test_new_broker_picks_up_rotated_token(self, make_broker, provider, session_factory):
        """A process restart re-derives tokens from the store, not the original seed."""
        await _seed_token(session_factory)
        await make_broker().get_company_token("vegas")

        await make_broker().get_company_token("vegas")
        assert provider.token_calls[1]["refresh_token"] == "refresh-1"

    async def test_cached_until_expiry_buffer(self, make_broker, provider, session_factory, clock):
        await _seed_token(session_factory)
        broker = make_broker()

        await broker.get_company_token("vegas")
        clock.now += 86399 - 301
        assert await broker.get_company_token("vegas") == "company-access-1"
        assert len(provider.token_calls) == 1

        clock.now += 2  # inside the 5-minute buffer
        assert await broker.get_company_token("vegas") == "company-access-2"
        assert len(provider.token_calls) == 2

    async def test_short_lived_token_still_cached(self, make_broker, provider, session_factory, clock, caplog):
        """A lifetime inside the refresh buffer must not burn a refresh token per call."""
        provider.expires_in = 120
        await _seed_token(session_factory)
        broker = make_broker()

        await broker.get_company_token("vegas")
        clock.now += 59
        assert await broker.get_company_token("vegas") == "company-access-1"
        assert len(provider.token_calls) == 1
        assert "within the 300s refresh buffer" in caplog.text

        clock.now += 2  # past half the lifetime
        assert await broker.get_company_token("vegas") == "company-access-2"
        assert len(provider.token_calls) == 2

    async def test_concurrent_callers_share_one_refresh(self, make_broker, provider, session_factory):
        await _seed_token(session_factory)
        broker = make_broker()

        tokens = await asyncio.gather(*(broker.get_company_token("vegas") for _ in range(5)))

        assert set(tokens) == {"company-access-1"}
        assert len(provider.token_calls) == 1

    async def test_unknown_company(self, make_broker):
        with pytest.raises(GHLAuthError, match="Unknown company"):
            await make_broker().get_company_token("nope")

    async def test_missing_client_credentials(self, make_broker, session_factory, provider):
        await _seed_token(session_factory)
        broker = make_broker(ghl_oauth_client_id="")
        with pytest.raises(GHLAuthError, match="client credentials"):
            await broker.get_company_token("vegas")
        assert provider.token_calls == []

    async def test_no_refresh_token_anywhere(self, make_broker, provider):
        with pytest.raises(GHLAuthError, match="No refresh token"):
            await make_broker().get_company_token("vegas")
        assert provider.token_calls == []


class TestReauth:
    async def test_flagged_company_short_circuits(self, make_broker, provider, session_factory):
        await _seed_token(session_factory, needs_reauth=True, last_error="invalid_grant")

        with pytest.raises(GHLReauthRequired) as exc_info:
            await make_broker().get_company_token("vegas")

        assert exc_info.value.company_key == "vegas"
        assert provider.token_calls == []

    async def test_400_flags_needs_reauth(self, make_broker, provider, session_factory, mock_alert):
        await _seed_token(session_factory)
        provider.token_status = 400
        provider.token_error_body = '{"error":"invalid_grant"}'
        broker = make_broker()

        with pytest.raises(GHLReauthRequired):
            await broker.get_company_token("vegas")

        row = await _load_token(session_factory)
        assert row.needs_reauth is True
        assert row.needs_reauth_at is not None
        assert "invalid_grant" in row.last_error
        mock_alert.assert_awaited_once()
        assert mock_alert.call_args[0][0] == "ghl_reauth_required"

    async def test_reauth_is_sticky(self, make_broker, provider, session_factory, mock_alert):
        await _seed_token(session_factory)
        provider.token_status = 401
        broker = make_broker()

        with pytest.raises(GHLReauthRequired):
            await broker.get_company_token("vegas")
        provider.token_status = 200
        with pytest.raises(GHLReauthRequired):
            await broker.get_company_token("vegas")

        assert len(provider.token_calls) == 1

    async def test_expired_marker_in_body_flags_reauth(self, make_broker, provider, session_factory, mock_alert):
        await _seed_token(session_factory)
        provider.token_status = 422
        provider.token_error_body = "Refresh token has expired"

        with pytest.raises(GHLReauthRequired):
            await make_broker().get_company_token("vegas")

    async def test_server_error_is_transient(self, make_broker, provider, session_factory, mock_alert):
        await _seed_token(session_factory)
        provider.token_status = 503
        provider.token_error_body = "upstream unavailable"

        with pytest.raises(GHLAuthError) as exc_info:
            await make_broker().get_company_token("vegas")

        assert not isinstance(exc_info.value, GHLReauthRequired)
        assert "503" in str(exc_info.value)
        row = await _load_token(session_factory)
        assert row.needs_reauth is False
        assert row.refresh_token == "refresh-0"
        mock_alert.assert_not_awaited()

    async def test_transport_error_is_transient(self, session_factory, make_settings):
        await _seed_token(session_factory)

        def handler(request):
            raise httpx.ConnectTimeout("timed out")

        broker = GHLTokenBroker(
            session_factory=session_factory,
            settings=make_settings(),
            transport=httpx.MockTransport(handler),
        )
        with pytest.raises(GHLAuthError, match="unreachable"):
            await broker.get_company_token("vegas")


class TestBootstrapFallback:
    async def test_bootstrap_used_when_no_row(self, make_broker, provider, session_factory):
        broker = make_broker(ghl_bootstrap_refresh_tokens={"vegas": "boot-token"})

        await broker.get_company_token("vegas")

        assert provider.token_calls[0]["refresh_token"] == "boot-token"
        row = await _load_token(session_factory)
        assert row.refresh_token == "refresh-1"

    async def test_stored_token_preferred_over_bootstrap(self, make_broker, provider, session_factory):
        await _seed_token(session_factory, refresh_token="stored")
        broker = make_broker(ghl_bootstrap_refresh_tokens={"vegas": "boot-token"})

        await broker.get_company_token("vegas")
        assert provider.token_calls[0]["refresh_token"] == "stored"

    async def test_store_unreachable_uses_bootstrap_and_keeps_rotation(
        self, make_broker, provider, mock_alert
    ):
        def broken_factory():
            raise RuntimeError("database unavailable")

        broker = make_broker(
            factory=broken_factory,
            ghl_bootstrap_refresh_tokens={"vegas": "boot-token"},
        )

        token = await broker.get_company_token("vegas")
        assert token == "company-access-1"
        assert provider.token_calls[0]["refresh_token"] == "boot-token"
        # Persist failure is alerted, not raised
        assert mock_alert.call_args[0][0] == "ghl_token_persist_failed"

        # The unsaved rotated token is used next, never the spent bootstrap one
        broker.invalidate("vegas")
        await broker.get_company_token("vegas")
        assert provider.token_calls[1]["refresh_token"] == "refresh-1"


class TestLocationToken:
    async def test_chains_company_then_location(self, make_broker, provider, session_factory):
        await _seed_token(session_factory)
        broker = make_broker()

        token = await broker.get_location_token(LAS_VEGAS_LOCATION)

        assert token == f"location-access-{LAS_VEGAS_LOCATION}"
        form, auth = provider.location_calls[0]
        assert form == {"companyId": VEGAS_COMPANY_ID, "locationId": LAS_VEGAS_LOCATION}
        assert auth == "Bearer company-access-1"

    async def test_location_token_cached(self, make_broker, provider, session_factory):
        await _seed_token(session_factory)
        broker = make_broker()

        await broker.get_location_token(LAS_VEGAS_LOCATION)
        await broker.get_location_token(LAS_VEGAS_LOCATION)

        assert len(provider.location_calls) == 1
        assert len(provider.token_calls) == 1

    async def test_get_access_token_by_clinic(self, make_broker, session_factory):
        await _seed_token(session_factory)
        token = await make_broker().get_access_token("TR04")
        assert token == f"location-access-{LAS_VEGAS_LOCATION}"

    async def test_unknown_clinic(self, make_broker):
        with pytest.raises(GHLAuthError, match="Unknown clinic"):
            await make_broker().get_access_token("TR99")

    async def test_unknown_location(self, make_broker):
        with pytest.raises(GHLAuthError, match="Unknown location"):
            await make_broker().get_location_token("not-a-location")

    async def test_location_failure_is_auth_error(self, session_factory, make_settings):
        await _seed_token(session_factory)

        def handler(request):
            if request.url.path == "/oauth/token":
                return httpx.Response(200, json={
                    "access_token": "company", "refresh_token": "next", "expires_in": 3600,
                })
            return httpx.Response(401, text="unauthorized")

        broker = GHLTokenBroker(
            session_factory=session_factory,
            settings=make_settings(),
            transport=httpx.MockTransport(handler),
        )
        with pytest.raises(GHLAuthError, match="401"):
            await broker.get_location_token(LAS_VEGAS_LOCATION)
        # Revoked company token dropped so the next call refreshes it
        assert "vegas" not in broker._company_cache


class TestAuthorization:
    async def test_authorization_url(self, make_broker):
        url = make_broker().authorization_url()
        assert url.startswith("https://marketplace.gohighlevel.com/oauth/chooselocation?")
        assert "client_id=client-id" in url
        assert "response_type=code" in url
        assert "api%2Fv1%2Foauth%2Fcallback" in url

    async def test_complete_authorization_clears_reauth(self, make_broker, provider, session_factory):
        await _seed_token(session_factory, needs_reauth=True, last_error="invalid_grant")
        broker = make_broker()

        company_key = await broker.complete_authorization("auth-code")

        assert company_key == "vegas"
        assert provider.token_calls[0]["grant_type"] == "authorization_code"
        assert provider.token_calls[0]["code"] == "auth-code"
        row = await _load_token(session_factory)
        assert row.needs_reauth is False
        assert row.needs_reauth_at is None
        assert row.last_error is None
        assert row.refresh_token == "refresh-1"
        # Usable immediately without another refresh
        assert await broker.get_company_token("vegas") == "company-access-1"
        assert len(provider.token_calls) == 1

    async def test_authorization_for_unknown_company(self, make_broker, provider):
        provider.company_id = "someone-else"
        with pytest.raises(GHLAuthError, match="unknown company"):
            await make_broker().complete_authorization("auth-code")

    async def test_code_exchange_failure(self, make_broker, provider):
        provider.token_status = 400
        provider.token_error_body = "invalid code"
        with pytest.raises(GHLAuthError) as exc_info:
            await make_broker().complete_authorization("bad")
        assert not isinstance(exc_info.value, GHLReauthRequired)


class TestSeedAndRefreshAll:
    async def test_seed_skips_companies_with_stored_token(self, make_broker, session_factory):
        await _seed_token(session_factory, company_key="vegas", refresh_token="rotated")
        broker = make_broker(ghl_bootstrap_refresh_tokens={"vegas": "boot-v", "salesjet": "boot-s"})

        result = await broker.seed_bootstrap_tokens()

        assert result == {"seeded": ["salesjet"], "skipped": ["vegas"]}
        assert (await _load_token(session_factory, "vegas")).refresh_token == "rotated"
        assert (await _load_token(session_factory, "salesjet")).refresh_token == "boot-s"

    async def test_refresh_all_reports_per_key(self, make_broker, session_factory):
        await _seed_token(session_factory)
        broker = make_broker()

        results = await broker.refresh_all()

        assert results["vegas"] == "refreshed"
        assert results["TR04"] == "refreshed"
        assert results["salesjet"].startswith("error:")
        assert "TR01" not in results
