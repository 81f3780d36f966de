"""Governance Heartbeat — Application configuration via environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class HeartbeatSettings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # ── Document Store ─────────────────────────────────────────
    store_backend: str = "file"  # "file" or "sql"
    store_root: str = ".governance"
    database_url: str = "sqlite:///governance.db"

    # ── Charters ───────────────────────────────────────────────
    gate_owner_charter: str = "GOVERN"
    charters: list[str] = ["GOVERN", "SUSTAINABILITY"]
    charter_model: str = "openai/gpt-4o-mini"

    # ── Budget Gate ────────────────────────────────────────────
    gate_staleness_seconds: int = 7200
    allow_runs: bool = True
    max_tokens_per_charter_run: int = 50_000
    max_tool_calls_per_charter_run: int = 25
    max_brain_spawns_per_hour: int = 4
    burn_warn_ratio: float = 0.6
    burn_critical_ratio: float = 0.9
    halt_on_critical: bool = True
    critical_cooldown_seconds: int = 3600

    # ── Cycle ──────────────────────────────────────────────────
    cycle_timeout_seconds: float = 600.0
    conflict_retries: int = 1
    cycle_interval_seconds: int = 3600

    # ── Logging ────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"


settings = HeartbeatSettings()
