"""Application settings using Pydantic BaseSettings."""

import os
import re

from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when a required setting is missing."""

    def __init__(self, setting_name: str) -> None:
        self.setting_name = setting_name
        super().__init__(f"{setting_name.upper()} is not configured")


def get_async_database_url() -> str:
    """Get database URL converted for an async driver."""
    url = os.environ.get("DATABASE_URL", "") or settings.database_url
    # Convert postgres:// to postgresql+asyncpg:// for SQLAlchemy async
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql+asyncpg://", 1)
    elif url.startswith("postgresql://") and "+asyncpg" not in url:
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    # asyncpg doesn't support sslmode, it uses ssl parameter
    if "sslmode=" in url:
        url = re.sub(r'[?&]sslmode=[^&]*', '', url)
        url = url.rstrip('?&')
    return url


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str = "sqlite+aiosqlite:///./waconnect.db"

    # Redis (optional fast-path dedupe for webhook deliveries)
    redis_url: str = "redis://localhost:6379/0"
    redis_enabled: bool = False
    message_dedup_ttl_seconds: int = 300

    # JWT (tenant-facing endpoints)
    jwt_secret_key: str = "dev-secret-key-change-in-production"
    jwt_algorithm: str = "HS256"

    # Field encryption for stored access tokens
    field_encryption_key: str | None = None

    # Application
    environment: str = "development"
    log_level: str = "INFO"
    api_v1_prefix: str = "/api/v1"
    app_name: str = "WhatsApp Integration"
    frontend_url: str = "http://localhost:3000"

    # Meta Graph API
    meta_app_id: str | None = None
    meta_app_secret: str | None = None
    meta_api_version: str = "v22.0"
    meta_graph_base_url: str = "https://graph.facebook.com"
    meta_oauth_dialog_base_url: str = "https://www.facebook.com"
    meta_oauth_redirect_uri: str | None = None
    meta_oauth_scopes: str = (
        "business_management,whatsapp_business_management,"
        "whatsapp_business_messaging,pages_show_list,pages_read_engagement"
    )
    meta_http_timeout_seconds: float = 30.0
    meta_webhook_verify_token: str | None = None
    meta_phone_registration_pin: str = "152563"

    # Business Solution Provider (intermediary) credentials
    meta_system_user_token: str | None = None
    meta_bsp_business_id: str | None = None

    # Signed OAuth state
    oauth_state_secret: str | None = None
    oauth_state_ttl_seconds: int = 3600

    # Provisioning poller
    provisioning_poll_interval_seconds: float = 3.0
    provisioning_max_attempts: int = 10
    provisioning_poll_jitter_seconds: float = 0.0
    provisioning_retry_after_seconds: int = 300

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def meta_graph_url(self) -> str:
        """Versioned Graph API base URL."""
        return f"{self.meta_graph_base_url.rstrip('/')}/{self.meta_api_version}"

    @property
    def meta_oauth_dialog_url(self) -> str:
        """Versioned OAuth dialog URL."""
        return f"{self.meta_oauth_dialog_base_url.rstrip('/')}/{self.meta_api_version}/dialog/oauth"

    @property
    def oauth_scope_list(self) -> list[str]:
        return [scope.strip() for scope in self.meta_oauth_scopes.split(",") if scope.strip()]


settings = Settings()


def require_setting(name: str) -> str:
    """Return a configured setting value or raise ConfigurationError.

    Args:
        name: Settings attribute name (e.g. "meta_app_id")

    Returns:
        The non-empty setting value

    Raises:
        ConfigurationError: If the setting is empty or unset
    """
    value = getattr(settings, name, None)
    if not value:
        raise ConfigurationError(name)
    return value
