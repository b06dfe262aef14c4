"""Application configuration via environment variables."""

from __future__ import annotations

import logging

from pydantic_settings import BaseSettings

from booking_engine.ratelimit import CALLER_CLASSES

log = logging.getLogger("booking_engine.config")

_PROVIDERS = {"none", "google"}


class Settings(BaseSettings):
    # Storage
    database_path: str = "data/bookings.db"

    # Action tokens
    token_secret: str = ""
    reschedule_token_ttl_hours: int = 48
    cancel_token_ttl_hours: int = 720

    # External calendar
    calendar_provider: str = "none"  # "none" or "google"
    google_service_account_json: str = ""
    calendar_timeout_seconds: float = 5.0

    # Notifications
    notification_webhook_url: str = ""
    notification_timeout_seconds: float = 5.0

    # Identity: API keys held by trusted automated calling agents
    agent_api_keys: list[str] = []

    # Rate limiting: caller class -> {"window_seconds", "quota"}
    rate_limits: dict[str, dict[str, int]] = {
        "automation": {"window_seconds": 60, "quota": 200},
        "console": {"window_seconds": 60, "quota": 100},
        "anonymous": {"window_seconds": 60, "quota": 10},
    }
    # "<caller class>:<endpoint>" -> {"window_seconds", "quota"}
    rate_limit_overrides: dict[str, dict[str, int]] = {
        "anonymous:reschedule": {"window_seconds": 3600, "quota": 3},
    }

    # Feature flags
    feature_reschedule: bool = True
    feature_reminders: bool = True

    # Server
    host: str = "127.0.0.1"
    port: int = 8080
    debug: bool = False
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    def validate_startup(self) -> list[str]:
        """Validate configuration at startup. Returns warnings, raises on errors."""
        warnings: list[str] = []

        if not self.token_secret:
            if not self.debug:
                raise ValueError(
                    "TOKEN_SECRET is missing. Action tokens cannot be signed. "
                    "Set it in .env."
                )
            warnings.append(
                "TOKEN_SECRET not set. Using a per-process secret (DEBUG=true); "
                "issued tokens stop verifying after a restart."
            )
        elif len(self.token_secret) < 32:
            warnings.append("TOKEN_SECRET is shorter than 32 characters.")

        if self.calendar_provider not in _PROVIDERS:
            raise ValueError(
                f"CALENDAR_PROVIDER must be one of {sorted(_PROVIDERS)}, "
                f"got {self.calendar_provider!r}."
            )
        if self.calendar_provider == "google" and not self.google_service_account_json:
            raise ValueError(
                "CALENDAR_PROVIDER=google requires GOOGLE_SERVICE_ACCOUNT_JSON."
            )

        if not 0 < self.calendar_timeout_seconds < 10:
            warnings.append(
                "CALENDAR_TIMEOUT_SECONDS should be a single-digit number of seconds."
            )

        for caller_class in CALLER_CLASSES:
            if caller_class not in self.rate_limits:
                warnings.append(
                    f"No rate limit configured for caller class {caller_class!r}; "
                    "requests of that class are not limited."
                )

        return warnings


settings = Settings()
