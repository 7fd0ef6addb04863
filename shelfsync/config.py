"""
Configuration management for the Shelf Sync Service.
Values come from environment variables (optionally loaded from a .env file).
"""

import os
import secrets
from typing import Optional
from pydantic import BaseModel, Field
from dotenv import load_dotenv

load_dotenv()


class SyncConfig(BaseModel):
    """Configuration for the sync service."""

    # Open Library settings
    openlibrary_url: str = Field(
        default="https://openlibrary.org",
        description="Open Library base URL"
    )
    session_cookie: Optional[str] = Field(default=None, description="Open Library session cookie value")
    username: Optional[str] = Field(default=None, description="Open Library username (derived from the cookie if empty)")
    http_timeout: int = Field(default=30, description="HTTP request timeout in seconds")

    # Sync settings
    staleness_hours: float = Field(default=6, description="Hours after which a shelf is considered stale")
    refresh_debounce_ms: int = Field(default=200, description="Debounce delay for queued shelf refreshes")
    login_retry_attempts: int = Field(default=1, description="Retries for the forced load right after login")
    login_retry_delay_seconds: float = Field(default=1.0, description="Delay before retrying the post-login load")
    redirect_max_hops: int = Field(default=1, description="Maximum work redirects followed per candidate")
    loan_cache_seconds: int = Field(default=300, description="How long loan data is reused without a refetch")
    list_cache_seconds: int = Field(default=300, description="How long resolved list items are reused")
    stale_check_interval_minutes: int = Field(default=30, description="Interval of the stale shelf check")

    # Application settings
    database_url: str = Field(
        default="sqlite:///data/shelf-sync.db",
        description="Database connection URL"
    )
    secret_key: str = Field(
        default_factory=lambda: os.getenv("SECRET_KEY", secrets.token_hex(32)),
        description="Secret key for Flask sessions"
    )
    log_level: str = Field(default="INFO", description="Logging level")
    log_json: bool = Field(default=False, description="Emit JSON log lines instead of console output")
    port: int = Field(default=5000, description="HTTP port of the control API")

    def is_configured(self) -> bool:
        """Check if the minimum required configuration is present."""
        return bool(self.session_cookie)


def get_config_from_env() -> SyncConfig:
    """Load configuration from environment variables."""
    return SyncConfig(
        openlibrary_url=os.getenv("OPENLIBRARY_URL", "https://openlibrary.org"),
        session_cookie=os.getenv("OPENLIBRARY_SESSION"),
        username=os.getenv("OPENLIBRARY_USERNAME"),
        http_timeout=int(os.getenv("HTTP_TIMEOUT", "30")),
        staleness_hours=float(os.getenv("STALENESS_HOURS", "6")),
        refresh_debounce_ms=int(os.getenv("REFRESH_DEBOUNCE_MS", "200")),
        login_retry_attempts=int(os.getenv("LOGIN_RETRY_ATTEMPTS", "1")),
        login_retry_delay_seconds=float(os.getenv("LOGIN_RETRY_DELAY_SECONDS", "1.0")),
        redirect_max_hops=int(os.getenv("REDIRECT_MAX_HOPS", "1")),
        loan_cache_seconds=int(os.getenv("LOAN_CACHE_SECONDS", "300")),
        list_cache_seconds=int(os.getenv("LIST_CACHE_SECONDS", "300")),
        stale_check_interval_minutes=int(os.getenv("STALE_CHECK_INTERVAL_MINUTES", "30")),
        database_url=os.getenv("DATABASE_URL", "sqlite:///data/shelf-sync.db"),
        secret_key=os.getenv("SECRET_KEY", secrets.token_hex(32)),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_json=os.getenv("LOG_JSON", "false").lower() in ("1", "true", "yes"),
        port=int(os.getenv("PORT", "5000")),
    )
