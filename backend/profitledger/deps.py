"""Dependency providers and settings management."""

import hmac
from functools import lru_cache
from typing import List, Optional

from fastapi import Header, Query
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import Unauthorized


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    DATABASE_URL: str = "sqlite:///./profitledger.db"
    REDIS_URL: str = "redis://localhost:6379/0"

    # Shared secret for scheduler/manual pipeline triggers
    CRON_SECRET: Optional[str] = None
    # Fernet key for provider tokens at rest
    TOKEN_ENCRYPTION_KEY: Optional[str] = None

    # Upstream API versions
    SHOPIFY_API_VERSION: str = "2024-07"
    META_API_VERSION: str = "v19.0"

    # Shopify order/refund search degrades past ~60 days
    SHOPIFY_MAX_DAYS_BACK: int = 60
    SHOPIFY_THROTTLE_MS: int = 200
    # "UTC" or "shop" (the store's IANA zone)
    SHOPIFY_BUCKET_TZ: str = "UTC"

    # Hard page bound for every paginated upstream fetch
    MAX_PAGES: int = 200

    # Providers whose absence fails the run instead of skipping the step
    REQUIRED_PROVIDERS: List[str] = ["shopify"]

    # Daily scheduled sync (UTC hour)
    SYNC_CRON_HOUR: int = 6

    # Google Ads developer credentials (per-client refresh tokens live in the credential store)
    GOOGLE_DEVELOPER_TOKEN: Optional[str] = None
    GOOGLE_CLIENT_ID: Optional[str] = None
    GOOGLE_CLIENT_SECRET: Optional[str] = None
    GOOGLE_LOGIN_CUSTOMER_ID: Optional[str] = None

    # Meta app credentials (optional for system user tokens)
    META_APP_ID: Optional[str] = None
    META_APP_SECRET: Optional[str] = None

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def check_sync_token(
    authorization: Optional[str],
    token: Optional[str],
    secret: Optional[str],
) -> None:
    """Validate a pipeline trigger against the shared cron secret.

    Accepts either `Authorization: Bearer <secret>` or a `token` query value.
    An unset secret rejects every request.

    Raises:
        Unauthorized: On a missing secret configuration or any mismatch.
    """
    if not secret:
        raise Unauthorized("CRON_SECRET is not configured")

    provided = None
    if authorization and authorization.startswith("Bearer "):
        provided = authorization[len("Bearer "):].strip()
    elif token:
        provided = token.strip()

    if not provided or not hmac.compare_digest(provided.encode("utf-8"), secret.encode("utf-8")):
        raise Unauthorized("Unauthorized")


def require_sync_token(
    authorization: Optional[str] = Header(default=None),
    token: Optional[str] = Query(default=None),
) -> None:
    """FastAPI dependency guarding the sync endpoints."""
    check_sync_token(authorization, token, get_settings().CRON_SECRET)
