"""
Proofstamp configuration.

Every policy constant lives here and can be overridden through
environment variables prefixed with ``PROOFSTAMP_`` (or a ``.env`` file).
List values are given as JSON, e.g.
``PROOFSTAMP_CALENDAR_URLS='["https://a.pool.opentimestamps.org"]'``.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CALENDARS = [
    "https://a.pool.opentimestamps.org",
    "https://b.pool.opentimestamps.org",
    "https://a.pool.eternitywall.com",
]

DEFAULT_LEGAL_NOTICE = (
    "This record is technical evidence that the content existed at the "
    "anchoring time. It does not replace a trademark or copyright filing."
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="PROOFSTAMP_",
        env_file=".env",
        extra="ignore",
    )

    # Credits
    credits_per_registration: int = Field(default=1, ge=1)
    ledger_max_retries: int = Field(default=5, ge=1)

    # Anchoring pipeline (server side, authoritative)
    anchoring_timeout_seconds: float = Field(default=24 * 60 * 60, gt=0)
    anchoring_max_attempts: int = Field(default=3, ge=1)
    refund_on_definitive_failure: bool = True
    calendar_urls: list[str] = Field(default_factory=lambda: list(DEFAULT_CALENDARS))
    calendar_timeout_seconds: float = Field(default=10.0, gt=0)
    confirm_on_calendar_acceptance: bool = True
    internal_fallback: bool = False
    sweep_interval_seconds: float = Field(default=60.0, ge=0)

    # Status polling (client side, advisory)
    poll_interval_seconds: float = Field(default=3.0, gt=0)
    poll_max_wait_seconds: float = Field(default=5 * 60, gt=0)

    # Client read-through balance cache
    balance_cache_ttl_seconds: float = Field(default=30.0, ge=0)

    legal_notice: str = DEFAULT_LEGAL_NOTICE

    log_level: str = "INFO"
    log_format: str = "console"

    # Principals allowed to grant, refund and adjust credits and to run maintenance
    operator_principals: list[str] = Field(default_factory=list)

    cors_origins: list[str] = Field(default_factory=lambda: ["*"])

    @model_validator(mode="after")
    def _client_timeout_is_advisory(self) -> "Settings":
        if self.poll_max_wait_seconds >= self.anchoring_timeout_seconds:
            raise ValueError(
                "poll_max_wait_seconds must be shorter than anchoring_timeout_seconds"
            )
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
