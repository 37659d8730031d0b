"""Dependency providers and settings management."""

import hmac
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    API_KEY: Optional[str] = None

    # Back-office (sqladmin) credentials
    ADMIN_USERNAME: str = "admin"
    ADMIN_PASSWORD: Optional[str] = None
    ADMIN_SECRET_KEY: str = "supersecretkey-change-this-in-production"

    # Redis Configuration
    REDIS_URL: str = "redis://localhost:6379/0"

    # SendCloud
    SENDCLOUD_API_PUBLIC_KEY: Optional[str] = None
    SENDCLOUD_API_SECRET_KEY: Optional[str] = None
    SENDCLOUD_API_BASE_URL: str = "https://panel.sendcloud.sc/api"
    SENDCLOUD_WEBHOOK_SECRET: Optional[str] = None

    # Carrier selection service (black box)
    CARRIER_SELECTION_URL: Optional[str] = None
    CARRIER_SELECTION_API_KEY: Optional[str] = None  # Bearer token sent to the service
    EXTERNAL_CALL_TIMEOUT_SECONDS: float = 10.0
    CARRIER_SELECTION_MAX_TRIES: int = 5
    PRODUCT_ENRICHMENT_MAX_TRIES: int = 3

    # Ingestion behaviour
    DEFAULT_PRODUCT_WEIGHT_KG: float = 0.5
    AUTO_CREATE_PRODUCTS: bool = True
    UNKNOWN_COUNTRY_POLICY: str = "fallback"  # "fallback" (→ FR) or "reject"
    DEFAULT_CURRENCY: str = "EUR"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def require_api_key(
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    settings: Settings = Depends(get_settings),
) -> None:
    """Reject requests whose `X-API-Key` header does not match API_KEY.

    When API_KEY is not configured every request is refused, so a
    misconfigured deployment never runs open.
    """
    if not settings.API_KEY:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="API key not configured")

    if not x_api_key or not hmac.compare_digest(x_api_key, settings.API_KEY):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")
