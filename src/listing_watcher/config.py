"""YAML configuration loader for the watcher worker."""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


class SchedulerSettings(BaseModel):
    """Cadence, worker capacity and failure escalation."""

    max_concurrent_runs: int = Field(4, ge=1, description="Global worker capacity")
    batch_size: int = Field(10, ge=1, description="Max configs dispatched per tick")
    dispatch_interval_seconds: float = Field(
        1.0, ge=0, description="Pause between batches while draining a backlog"
    )
    idle_poll_seconds: float = Field(30.0, gt=0, description="Longest sleep between queue checks")
    max_backoff_seconds: int = Field(6 * 3600, ge=30)
    backoff_exponent_cap: int = Field(6, ge=0)
    failure_threshold: int = Field(8, ge=1, description="Consecutive failures before auto-disable")
    escalation_weight: int = Field(
        2, ge=1, description="Failure count increment for credential and blocked errors"
    )
    blocked_backoff_multiplier: int = Field(2, ge=1)
    drain_timeout_seconds: float = Field(30.0, ge=0)
    resume_pending_window_seconds: int = Field(3600, ge=0)


class GateLimits(BaseModel):
    """Concurrency and action budget for one service."""

    max_concurrent: int = Field(2, ge=1)
    actions_per_minute: int = Field(20, ge=0, description="0 disables the token bucket")


class GateSettings(BaseModel):
    """Per-service gates. Services without an override use the defaults."""

    default: GateLimits = Field(default_factory=GateLimits)
    services: dict[str, GateLimits] = Field(default_factory=dict)

    def limits_for(self, service_name: str) -> GateLimits:
        return self.services.get(service_name, self.default)


class SessionSettings(BaseModel):
    """Browser session pool and per-run extraction bounds."""

    headless: bool = True
    locale: str = "pl-PL"
    timezone_id: str = "Europe/Warsaw"
    navigation_timeout_ms: int = Field(30000, ge=1000)
    idle_timeout_seconds: int = Field(300, ge=1)
    max_age_seconds: int = Field(1800, ge=1)
    max_uses: int = Field(25, ge=1)
    max_pages: int = Field(3, ge=1)
    max_items: int = Field(50, ge=1)
    fetch_phones: bool = False
    min_delay: float = Field(1.0, ge=0)
    max_delay: float = Field(3.0, ge=0)


class DispatchSettings(BaseModel):
    """Push delivery retries."""

    max_attempts: int = Field(3, ge=1)
    retry_delay_seconds: float = Field(2.0, ge=0)


class WatcherSettings(BaseModel):
    """Complete worker configuration."""

    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    gate: GateSettings = Field(default_factory=GateSettings)
    sessions: SessionSettings = Field(default_factory=SessionSettings)
    dispatch: DispatchSettings = Field(default_factory=DispatchSettings)


def _get_default_config_path() -> Path:
    """Get the default config path, honouring WATCHER_CONFIG."""
    if env_path := os.environ.get("WATCHER_CONFIG"):
        return Path(env_path)
    return Path(__file__).parent.parent.parent / "config" / "watcher.yaml"


def _load_raw_config(path: Path) -> dict[str, Any]:
    """Load raw YAML config from path.

    Raises:
        FileNotFoundError: If config file doesn't exist.
        yaml.YAMLError: If YAML parsing fails.
    """
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r") as f:
        raw_config: dict[str, Any] | None = yaml.safe_load(f)

    return raw_config if raw_config is not None else {}


def load_settings(path: Path | None = None) -> WatcherSettings:
    """Load and validate worker settings from YAML.

    Args:
        path: Path to YAML config file. If None, uses WATCHER_CONFIG or the
            bundled config/watcher.yaml, falling back to defaults when that
            file is absent.

    Returns:
        Validated WatcherSettings instance.

    Raises:
        FileNotFoundError: If an explicit path doesn't exist.
        ValidationError: If config doesn't match expected schema.
    """
    if path is None:
        default_path = _get_default_config_path()
        if not default_path.exists():
            return WatcherSettings()
        path = default_path

    raw_config = _load_raw_config(path)
    return WatcherSettings.model_validate(raw_config)
