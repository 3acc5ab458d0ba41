"""Family Compact — Application configuration via environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class CompactSettings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # ── Document store / audit ledger ──────────────────────────
    database_url: str = "sqlite:///family_compact.db"
    database_echo: bool = False

    # ── Proposals ──────────────────────────────────────────────
    proposal_expiry_days: int = 14

    # ── Agreement expiry ───────────────────────────────────────
    expiry_warning_days: int = 30
    expiry_critical_days: int = 7
    grace_period_days: int = 14
    annual_review_days: int = 365

    # ── Rejection escalation ───────────────────────────────────
    rejection_escalation_threshold: int = 3
    rejection_window_days: int = 90

    # ── Review requests ────────────────────────────────────────
    review_request_cooldown_days: int = 60
    review_request_expiry_days: int = 30

    # ── Logging ────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"


settings = CompactSettings()
