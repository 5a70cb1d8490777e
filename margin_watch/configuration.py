"""Utilities for loading watcher configuration files and provisioning logging."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Mapping, MutableMapping, Optional

from margin_watch.watcher.config import ActionConfig, Settings, ThresholdConfig, WatcherConfig
from margin_watch.watcher.errors import ConfigurationError

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _debug_to_logging_level(debug_level: int) -> int:
    """Map a debug verbosity integer to a logging level."""

    if debug_level <= 0:
        return logging.WARNING
    if debug_level == 1:
        return logging.INFO
    return logging.DEBUG


def _ensure_logger_level(logger: logging.Logger, level: int) -> None:
    """Ensure ``logger`` and its handlers are set to at most ``level``."""

    if logger.level in {logging.NOTSET} or logger.level > level:
        logger.setLevel(level)
    for handler in logger.handlers:
        if handler.level in {logging.NOTSET} or handler.level > level:
            handler.setLevel(level)


def configure_logging(debug_level: int = 1) -> bool:
    """Provision default logging and make the ``margin_watch`` namespace honour it.

    Returns ``True`` when this call installed the root handler.
    """

    root_logger = logging.getLogger()
    already_configured = bool(root_logger.handlers)
    desired_level = _debug_to_logging_level(debug_level)
    if not already_configured:
        logging.basicConfig(level=desired_level, format=LOG_FORMAT)
    _ensure_logger_level(root_logger, desired_level)
    _ensure_logger_level(logging.getLogger("margin_watch"), desired_level)
    return not already_configured


def _load_json(path: Path) -> Dict[str, Any]:
    """Return parsed JSON payload from ``path`` with helpful error messages."""

    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Configuration file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Invalid JSON in configuration file {path}: {exc}") from exc


def _ensure_mapping(payload: Any, *, description: str) -> MutableMapping[str, Any]:
    if isinstance(payload, MutableMapping):
        return payload
    if isinstance(payload, Mapping):
        return dict(payload)
    raise ConfigurationError(f"{description} must be a JSON object, not {type(payload).__name__}.")


def _resolve_path_relative_to(base: Path, candidate: Any) -> Path:
    path = Path(str(candidate)).expanduser()
    if not path.is_absolute():
        path = (base / path).resolve()
    return path


def _coerce_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on", "enabled"}:
            return True
        if lowered in {"0", "false", "no", "off", "disabled"}:
            return False
    raise ConfigurationError(f"Expected a boolean, got {value!r}")


def parse_watcher_config(payload: Mapping[str, Any], *, base_dir: Optional[Path] = None) -> WatcherConfig:
    """Build a :class:`WatcherConfig` from a decoded JSON object.

    Both a nested ``thresholds``/``actions`` layout and the flat operator keys
    (``alert_threshold_percent``, ``close_threshold_percent``) are accepted.
    """

    payload = _ensure_mapping(payload, description="Watcher configuration")
    thresholds_payload = _ensure_mapping(payload.get("thresholds") or {}, description="'thresholds'")
    actions_payload = _ensure_mapping(payload.get("actions") or {}, description="'actions'")

    thresholds = ThresholdConfig()
    for key in ("alert_threshold_percent", "close_threshold_percent"):
        value = thresholds_payload.get(key, payload.get(key))
        if value is not None:
            setattr(thresholds, key, value)

    actions = ActionConfig()
    if "dry_run" in actions_payload or "dry_run" in payload:
        actions.dry_run = _coerce_bool(actions_payload.get("dry_run", payload.get("dry_run")))
    if "strict_sides" in actions_payload or "strict_sides" in payload:
        actions.strict_sides = _coerce_bool(
            actions_payload.get("strict_sides", payload.get("strict_sides")), default=False
        )

    config = WatcherConfig(thresholds=thresholds, actions=actions)
    for key in ("tick_interval_seconds", "max_workers", "store_timeout_seconds"):
        if payload.get(key) is not None:
            setattr(config, key, payload[key])

    audit_path = payload.get("audit_log_path")
    if audit_path:
        config.audit_log_path = _resolve_path_relative_to(base_dir or Path.cwd(), audit_path)
    return config


def load_watcher_config(
    path: Optional[Path] = None, *, env: Optional[Mapping[str, str]] = None
) -> WatcherConfig:
    """Load configuration from ``path`` (optional), apply ``RISK_*`` overrides and validate."""

    if path is not None:
        config_path = Path(path).expanduser().resolve()
        payload = _load_json(config_path)
        base = parse_watcher_config(payload, base_dir=config_path.parent)
    else:
        base = WatcherConfig()
    settings = Settings.from_environment(base=base, env=env)
    return settings.watcher.validate()
