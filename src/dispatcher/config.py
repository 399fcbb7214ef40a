"""Centralized configuration via Pydantic Settings.

All values loaded from environment variables prefixed with DISPATCHER_.
Mapping values (team tables, channel routing) are JSON-encoded.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

import structlog
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = structlog.get_logger()

# Pipedrive production-team enum option id -> crew name
PRODUCTION_TEAM_MAP: dict[int, str] = {
    47: "Kings",
    48: "Johnathan",
    49: "Pena",
    50: "Hector",
    51: "Sebastian",
    52: "Anastacio",
    53: "Mike",
    54: "Kim",
}

# Deal "Type of Service" enum option id -> label
SERVICE_MAP: dict[int, str] = {
    27: "Water Mitigation",
    28: "Fire Cleanup",
    29: "Contents",
    30: "Biohazard",
    31: "General Cleaning",
    32: "Duct Cleaning",
}

RenameMode = Literal["never", "if_missing", "always"]
TimeSource = Literal["reference", "external"]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="DISPATCHER_", env_file=".env", extra="ignore")

    # Slack
    slack_bot_token: str = ""
    slack_signing_secret: str = ""
    default_channel_id: str = "C098H8GU355"
    deal_channel_lookup: bool = True

    # Pipedrive
    pipedrive_api_token: str = ""
    pipedrive_base_url: str = "https://api.pipedrive.com/v1"
    webhook_key: str = ""

    # Signed completion links
    link_secret: str = ""
    base_url: str = ""
    link_ttl_s: int = 7 * 24 * 60 * 60

    # ── Routing tables ────────────────────────────────────────
    team_names: dict[int, str] = Field(default_factory=lambda: dict(PRODUCTION_TEAM_MAP))
    team_channels: dict[int, str] = Field(default_factory=dict)
    team_member_emails: dict[int, list[str]] = Field(default_factory=dict)
    service_names: dict[int, str] = Field(default_factory=lambda: dict(SERVICE_MAP))

    # ── Record field keys ─────────────────────────────────────
    activity_team_field: str = "production_team"
    deal_team_field: str = "b8d4c1e1f9f2a8c3d7e6f5a4b3c2d1e0f9a8b7c6"
    deal_service_field: str = "5b436b45b63857305f9691910b6567351b5517bc"

    # ── Time zones ────────────────────────────────────────────
    reference_tz: str = "America/Los_Angeles"
    external_tz: str = "UTC"
    due_time_source: TimeSource = "external"

    # ── Gating ────────────────────────────────────────────────
    allowed_types: list[str] = Field(default_factory=list)
    blocked_types: list[str] = Field(default_factory=list)
    blocked_subjects: list[str] = Field(default_factory=list)

    # ── Rename / stabilizer ───────────────────────────────────
    rename_mode: RenameMode = "always"
    stabilizer_window_s: float = 120.0
    stabilizer_max_attempts: int = 2
    stabilizer_cooldown_s: float = 6 * 60 * 60

    # ── Dedup / fingerprint ───────────────────────────────────
    dedup_enabled: bool = True
    dedup_bucket_s: int = 10
    dedup_ttl_s: float = 120.0
    fingerprint_ttl_s: float = 12 * 60 * 60
    store_max_entries: int = 5000

    # ── External calls ────────────────────────────────────────
    mutation_attempts: int = 3
    mutation_backoff_s: float = 1.0
    pipedrive_timeout_s: float = 30.0
    history_lookback: int = 200

    # ── Scheduled runners (reference zone) ────────────────────
    scheduler_enabled: bool = True
    daily_run_cron: str = "0 6 * * *"
    lookahead_run_cron: str = "0 17 * * *"

    # Application
    port: int = 3000
    log_level: str = "INFO"
    env: str = "development"

    def model_post_init(self, __context: object) -> None:
        """Post-initialization: warn about secrets that disable features."""
        if not self.webhook_key:
            logger.warning("webhook_key_missing", detail="/pipedrive-task will reject requests")
        if not self.link_secret:
            logger.warning("link_secret_missing", detail="completion links cannot be verified")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process settings, loaded once."""
    return Settings()  # type: ignore[call-arg]
