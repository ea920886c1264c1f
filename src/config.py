"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.
"""
from pydantic_settings import BaseSettings
from pydantic import Field
from functools import lru_cache


def _default_companies() -> dict:
    return {
        "vegas": {"company_id": "wX6xVVyBQwLwMugrEdvR", "name": "Teeth+Robots Vegas"},
        "salesjet": {"company_id": "VVkTNsveI02sHUrJ0gOM", "name": "SalesJet (SG + Irvine)"},
    }


def _default_clinics() -> dict:
    return {
        "TR01": {
            "location_id": "cl9YH8PZgv32HEz5pIXT",
            "name": "San Gabriel",
            "company_key": "salesjet",
            "sales_pipeline_id": "PI6UfhZ4zXZn9WsZMPtX",
            "service_field_id": "QlA7Mso7jPC20Ng8wHyq",
        },
        "TR02": {
            "location_id": "DJfIuAH1tTxRRBEufitL",
            "name": "Irvine",
            "company_key": "salesjet",
            "sales_pipeline_id": "90QnJLnT6TeD8EXF0er5",
            "service_field_id": "IdlYaG597ASHeuoFeIuk",
        },
        "TR04": {
            "location_id": "1isaYfEkvNkyLH3XepI5",
            "name": "Las Vegas",
            "company_key": "vegas",
            "sales_pipeline_id": "pMZ709aQj5aN3OgeQebh",
            "service_field_id": "fK1TUWuawPzN9pkkxEV7",
        },
    }


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_base_url: str = "http://localhost:8000"
    log_level: str = "INFO"
    allowed_origins: str = ""  # Comma-separated CORS origins (auto-includes localhost in dev)

    # Database
    database_url: str
    database_pool_size: int = 10
    database_max_overflow: int = 5

    # Redis (alert cooldowns, worker heartbeats, processor run lock)
    redis_url: str = "redis://localhost:6379/0"

    # GoHighLevel OAuth
    ghl_api_base: str = "https://services.leadconnectorhq.com"
    ghl_api_version: str = "2021-07-28"
    ghl_oauth_client_id: str = ""
    ghl_oauth_client_secret: str = ""
    ghl_oauth_redirect_uri: str = ""
    ghl_oauth_authorize_url: str = "https://marketplace.gohighlevel.com/oauth/chooselocation"
    ghl_oauth_scopes: str = (
        "opportunities.readonly opportunities.write "
        "contacts.readonly contacts.write locations.readonly"
    )
    # Company key -> refresh token. Only consulted when the token store is unreachable
    # or has no row for the company yet.
    ghl_bootstrap_refresh_tokens: dict[str, str] = Field(default_factory=dict)
    token_expiry_buffer_seconds: int = 300

    # Tenancy (JSON env values override the built-in clinic table)
    ghl_companies: dict[str, dict] = Field(default_factory=_default_companies)
    ghl_clinics: dict[str, dict] = Field(default_factory=_default_clinics)

    # Move queue
    sync_batch_size: int = 10
    sync_max_attempts: int = 3
    sync_poll_interval_seconds: int = 0  # 0 = rely on the external scheduler only
    opportunity_sync_interval_seconds: int = 0
    opportunity_sync_max_pages: int = 20
    token_refresh_interval_seconds: int = 0  # 0 = refreshed only via the cron endpoint

    # Secrets
    cron_secret: str = ""  # Empty = scheduler endpoints unguarded (development)
    admin_api_key: str = ""  # Empty = operator endpoints disabled
    encryption_key: str = ""

    # Observability
    sentry_dsn: str = ""
    alert_webhook_url: str = ""  # Discord/Slack webhook URL for critical alerts

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
