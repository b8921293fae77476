"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment or .env.

    Process-wide and read-only once built; components receive the instance
    at construction instead of reading the environment themselves.
    """

    BACKEND_CORS_ORIGINS: str = "http://localhost:5173"

    # Meta Conversions API (server channel)
    META_CAPI_PIXEL_ID: str = ""
    META_CAPI_ACCESS_TOKEN: str = ""
    META_CAPI_API_VERSION: str = "v18.0"
    META_CAPI_TEST_EVENT_CODE: Optional[str] = None
    META_GRAPH_BASE_URL: str = "https://graph.facebook.com"
    META_CAPI_TIMEOUT_SECONDS: float = 30.0

    # Meta Pixel (browser channel) and relay location, used by the dispatcher
    META_PIXEL_ID: Optional[str] = None
    META_PIXEL_ENDPOINT: str = "https://www.facebook.com/tr"
    TRACKING_TEST_EVENT_CODE: Optional[str] = None
    RELAY_BASE_URL: str = "http://localhost:8000"
    RELAY_API_KEY: Optional[str] = None

    # Lomi payments
    LOMI_WEBHOOK_SECRET: Optional[str] = None

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def capi_configured(self) -> bool:
        return bool(self.META_CAPI_PIXEL_ID and self.META_CAPI_ACCESS_TOKEN)


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_capi_service():
    """Return the process-wide CAPI relay built from settings.

    Overridden in tests with a relay that talks to a mock transport.
    """
    return _build_capi_service()


@lru_cache()
def _build_capi_service():
    from .services.meta_capi_service import MetaCAPIService

    return MetaCAPIService(get_settings())
