"""Settings management.

WHAT:
    Application settings loaded from the environment or a local `.env` file.

WHY:
    - One place for provider credentials, storage URLs and sync tuning knobs.
    - Services receive settings explicitly so tests can swap them.

REFERENCES:
    - backend/adsync/services/meta_oauth_service.py (OAuth settings)
    - backend/adsync/services/meta_ads_client.py (Graph API settings)
"""

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_META_SCOPES = ["ads_read", "ads_management", "business_management", "read_insights"]


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    DATABASE_URL: Optional[str] = None
    REDIS_URL: str = "redis://localhost:6379/0"

    # Fernet key (URL-safe base64, 32 bytes) used for stored provider tokens
    TOKEN_ENCRYPTION_KEY: Optional[str] = None

    # Meta app credentials
    META_APP_ID: Optional[str] = None
    META_APP_SECRET: Optional[str] = None
    META_OAUTH_REDIRECT_URI: Optional[str] = None
    META_OAUTH_SCOPES: Optional[str] = None  # comma-separated, falls back to DEFAULT_META_SCOPES

    # Graph API
    META_GRAPH_VERSION: str = "v19.0"
    META_GRAPH_BASE_URL: str = "https://graph.facebook.com"
    META_DIALOG_URL: str = "https://www.facebook.com/dialog/oauth"
    META_PAGE_LIMIT: int = 500
    META_MAX_PAGES: int = 1000
    META_HTTP_TIMEOUT_SECONDS: float = 30.0

    # OAuth session + sync coordination
    OAUTH_SESSION_TTL_SECONDS: int = 600  # 10 minutes
    SYNC_LOCK_TIMEOUT_SECONDS: int = 1800
    SCHEDULED_REFRESH_MINUTES: int = 60

    # Telemetry
    SENTRY_DSN: Optional[str] = None
    ENVIRONMENT: str = "development"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def graph_url(self) -> str:
        """Versioned Graph API root, e.g. https://graph.facebook.com/v19.0"""
        return f"{self.META_GRAPH_BASE_URL.rstrip('/')}/{self.META_GRAPH_VERSION}"

    @property
    def meta_scopes(self) -> List[str]:
        if self.META_OAUTH_SCOPES:
            scopes = [scope.strip() for scope in self.META_OAUTH_SCOPES.split(",")]
            scopes = [scope for scope in scopes if scope]
            if scopes:
                return scopes
        return list(DEFAULT_META_SCOPES)

    def require(self, name: str) -> str:
        """Return a mandatory setting or raise RuntimeError.

        WHY: Fail fast when a flow needs configuration that was never provided.
        """
        value = getattr(self, name, None)
        if not value:
            raise RuntimeError(f"Missing required setting: {name}")
        return value


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]
