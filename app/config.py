"""
Configuration Management

Uses Pydantic BaseSettings to load configuration from environment variables.
All settings can be overridden via .env file or environment variables.

Environment Variables:
    SESSION_TIMEOUT_MINUTES: Idle minutes before a conversation expires (default: 10)
    SESSION_BACKEND: "memory" or "redis" (default: memory)
    REDIS_URL: Redis connection string (only used by the redis backend)
    CALENDAR_API_URL: Calendar service base URL (empty = in-memory calendar)
    DENTIST_CALENDARS: "Dr Name:calendar-ref,..." pairs
    ANTHROPIC_API_KEY: Enables the Claude intent classifier when set
    APP_ENV: Environment name (development/staging/production)
    DEBUG: Enable debug mode (default: False)
"""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application Environment
    app_env: Literal["development", "staging", "production"] = "development"
    """Current application environment.

    Options:
    - development: Local development, verbose logging, docs enabled
    - staging: Pre-production testing environment
    - production: Live production environment, minimal logging
    """

    debug: bool = False
    """Enable debug mode (DEBUG log level, detailed error bodies)."""

    app_name: str = "dental-scheduler"
    """Application name."""

    host: str = "0.0.0.0"
    """Host to bind the application server."""

    port: int = 8000
    """Port to bind the application server."""

    cors_origins: str = "http://localhost:3000"
    """Comma-separated list of allowed CORS origins."""

    # Sessions
    session_timeout_minutes: int = 10
    """Idle time after which a conversation session expires."""

    session_sweep_interval_seconds: float = 60.0
    """How often the background sweeper evicts expired sessions."""

    session_max_messages: int = 50
    """Maximum number of messages kept in a session's history."""

    session_backend: Literal["memory", "redis"] = "memory"
    """Where sessions live.

    - memory: process-local dict (volatile across restarts)
    - redis: JSON documents with TTL, shared between workers
    """

    redis_url: str = "redis://localhost:6379/0"
    """Redis connection URL.

    Format: redis://host:port/db
    Only used when session_backend is "redis".
    """

    # Scheduling policy
    working_hours_start: int = 9
    """First bookable hour of the working day (clinic local time)."""

    working_hours_end: int = 18
    """Hour at which the working day ends (exclusive)."""

    min_slot_minutes: int = 15
    """Minimum bookable granularity in minutes."""

    booking_horizon_days: int = 30
    """How far ahead availability is searched."""

    lookup_horizon_days: int = 60
    """How far ahead existing bookings are searched for cancel/reschedule."""

    clinic_timezone: str = "UTC"
    """IANA timezone name for the clinic's wall clock."""

    # Dentists
    braces_dentists: str = "Dr BracesA,Dr BracesB"
    """Comma-separated dentists who handle braces maintenance."""

    general_dentists: str = "Dr GeneralA,Dr GeneralB"
    """Comma-separated dentists who handle all other treatments."""

    # Calendar
    calendar_api_url: str = ""
    """Calendar service base URL. Empty string selects the in-memory calendar."""

    dentist_calendars: str = ""
    """Comma-separated "Dentist Name:calendar-ref" pairs.

    Example: "Dr BracesA:braces-a@clinic,Dr GeneralA:general-a@clinic"
    Dentists missing here use their name as the calendar ref.
    """

    # Pricing
    pricing_document_url: str = ""
    """URL of the plain-text price list. Empty string uses the built-in list."""

    # Claude / Anthropic
    anthropic_api_key: str = ""
    """Anthropic API key. When empty, intent detection is keyword-only."""

    claude_intent_model: str = "claude-3-5-haiku-latest"
    """Model used for intent classification."""

    claude_fallback_model: str = "claude-3-5-sonnet-latest"
    """Model tried when the primary model errors."""

    # Timeouts
    external_call_timeout_seconds: float = 10.0
    """Upper bound for any single classifier, calendar or pricing call."""

    # Pydantic configuration
    model_config = SettingsConfigDict(
        env_file=".env",  # Load from .env file if it exists
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra environment variables
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.app_env == "development"

    @property
    def cors_origins_list(self) -> list[str]:
        """Split cors_origins into a list."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def braces_dentist_list(self) -> list[str]:
        """Split braces_dentists into a list."""
        return [d.strip() for d in self.braces_dentists.split(",") if d.strip()]

    @property
    def general_dentist_list(self) -> list[str]:
        """Split general_dentists into a list."""
        return [d.strip() for d in self.general_dentists.split(",") if d.strip()]

    @property
    def all_dentists(self) -> list[str]:
        """Every dentist, braces specialists first."""
        return self.braces_dentist_list + self.general_dentist_list

    @property
    def dentist_calendar_map(self) -> dict[str, str]:
        """Parse dentist_calendars into {dentist name: calendar ref}."""
        mapping: dict[str, str] = {}
        for pair in self.dentist_calendars.split(","):
            if ":" not in pair:
                continue
            name, ref = pair.split(":", 1)
            if name.strip() and ref.strip():
                mapping[name.strip()] = ref.strip()
        return mapping

    @property
    def session_timeout_seconds(self) -> int:
        """Session timeout expressed in seconds."""
        return self.session_timeout_minutes * 60


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Uses lru_cache so settings are loaded once and reused across the
    application.

    Returns:
        Settings: Cached settings instance

    Example:
        >>> from app.config import get_settings
        >>> settings = get_settings()
        >>> print(settings.session_timeout_minutes)
        10
    """
    return Settings()


# Module-level settings instance for easy imports
settings = get_settings()
