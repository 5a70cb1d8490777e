"""Configuration schema for the margin watcher."""

from __future__ import annotations

import math
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .errors import ConfigurationError


@dataclass
class ThresholdConfig:
    """Margin level thresholds expressed as percentages of reserved margin."""

    alert_threshold_percent: float = 30.0
    close_threshold_percent: float = 15.0


@dataclass
class ActionConfig:
    """Action execution safety rails."""

    dry_run: bool = False
    strict_sides: bool = False


@dataclass
class WatcherConfig:
    """Unified configuration for the scheduler, evaluator and executor."""

    tick_interval_seconds: float = 30.0
    thresholds: ThresholdConfig = field(default_factory=ThresholdConfig)
    actions: ActionConfig = field(default_factory=ActionConfig)
    max_workers: int = 4
    store_timeout_seconds: float = 10.0
    audit_log_path: Optional[Path] = None

    def validate(self) -> "WatcherConfig":
        """Raise :class:`ConfigurationError` unless the configuration is usable."""

        interval = _require_number(self.tick_interval_seconds, "tick_interval_seconds")
        if interval <= 0:
            raise ConfigurationError(f"tick_interval_seconds must be positive, got {interval}")
        alert = _require_number(self.thresholds.alert_threshold_percent, "alert_threshold_percent")
        close = _require_number(self.thresholds.close_threshold_percent, "close_threshold_percent")
        if close <= 0:
            raise ConfigurationError(f"close_threshold_percent must be positive, got {close}")
        if alert <= close:
            raise ConfigurationError(
                f"alert_threshold_percent ({alert}) must be greater than close_threshold_percent ({close})"
            )
        if not isinstance(self.max_workers, int) or isinstance(self.max_workers, bool) or self.max_workers < 1:
            raise ConfigurationError(f"max_workers must be a positive integer, got {self.max_workers!r}")
        timeout = _require_number(self.store_timeout_seconds, "store_timeout_seconds")
        if timeout <= 0:
            raise ConfigurationError(f"store_timeout_seconds must be positive, got {timeout}")
        return self

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["audit_log_path"] = str(self.audit_log_path) if self.audit_log_path else None
        return payload


@dataclass
class Settings:
    """Single entry point for watcher configuration with environment overrides."""

    watcher: WatcherConfig

    @classmethod
    def from_environment(
        cls, *, base: Optional[WatcherConfig] = None, env: Optional[Mapping[str, str]] = None
    ) -> "Settings":
        env = env if env is not None else os.environ
        config = base or WatcherConfig()

        interval = _env_float(env.get("RISK_TICK_INTERVAL_SECONDS"))
        if interval is not None:
            config.tick_interval_seconds = interval
        alert = _env_float(env.get("RISK_ALERT_THRESHOLD_PERCENT"))
        close = _env_float(env.get("RISK_CLOSE_THRESHOLD_PERCENT"))
        if alert is not None:
            config.thresholds.alert_threshold_percent = alert
        if close is not None:
            config.thresholds.close_threshold_percent = close

        dry_run = _env_bool(env.get("RISK_DRY_RUN"))
        if dry_run is not None:
            config.actions.dry_run = dry_run
        strict_sides = _env_bool(env.get("RISK_STRICT_SIDES"))
        if strict_sides is not None:
            config.actions.strict_sides = strict_sides

        max_workers = _env_int(env.get("RISK_MAX_WORKERS"))
        if max_workers is not None and max_workers > 0:
            config.max_workers = max_workers
        timeout = _env_float(env.get("RISK_STORE_TIMEOUT_SECONDS"))
        if timeout is not None:
            config.store_timeout_seconds = timeout

        audit_path = env.get("RISK_AUDIT_LOG_PATH")
        if audit_path:
            config.audit_log_path = Path(audit_path).expanduser()

        return cls(watcher=config)


def _require_number(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"{name} must be a number, got {value!r}")
    if not math.isfinite(value):
        raise ConfigurationError(f"{name} must be finite, got {value!r}")
    return float(value)


def _env_float(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _env_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _env_bool(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    return str(value).strip().lower() in {"1", "true", "yes", "on"}
