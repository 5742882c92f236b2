"""Sovereign Decision Pipeline — Application configuration via environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class PipelineSettings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # ── Inference ──────────────────────────────────────────────
    omega_model: str = "cloudflare/@cf/meta/llama-3.1-8b-instruct"
    inference_attempts: int = 3
    inference_timeout_seconds: float = 18.0
    inference_backoff_seconds: float = 0.45

    # ── Access control ─────────────────────────────────────────
    omega_access_code: str = ""
    allowed_origins: str = ""

    @property
    def allowed_origin_list(self) -> list[str]:
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]

    # ── Ledger storage ─────────────────────────────────────────
    database_url: str = "sqlite:///./omega_ledger.db"

    # ── Request defaults ───────────────────────────────────────
    default_jurisdiction: str = "United Arab Emirates"
    default_focus: str = "Semiconductors, Energy Systems, Food Security"
    default_dataset_focus: str = "industrial imports"
    default_mission_id: str = "UAE-SOV-IND-2026-ALPHA"
    default_temperature: float = 0.10
    default_max_tokens: int = 2400
    repair_max_tokens: int = 1200
    dataset_max_tokens: int = 1600

    # ── API ────────────────────────────────────────────────────
    api_host: str = "0.0.0.0"
    api_port: int = 8787

    # ── Logging ────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"


settings = PipelineSettings()
