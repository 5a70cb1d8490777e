"""Command line entry point running the margin watcher behind its status API."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Optional, TYPE_CHECKING

from .audit import AuditSettings, get_audit_logger
from .configuration import configure_logging, load_watcher_config
from .watcher import ConfigurationError, FileAccountStore, InconsistentStateError, RiskWatcher

if TYPE_CHECKING:  # pragma: no cover - used only for type hints
    import uvicorn

logger = logging.getLogger(__name__)


def _import_uvicorn() -> "uvicorn":
    """Import :mod:`uvicorn` with a helpful error message when missing."""

    try:
        import uvicorn  # type: ignore[import]
    except ModuleNotFoundError as exc:  # pragma: no cover - depends on runtime environment
        raise ModuleNotFoundError(
            "The 'uvicorn' package is required to run the margin watcher service. "
            "Install margin-watch with its default dependencies."
        ) from exc
    return uvicorn


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the margin risk watcher")
    parser.add_argument("--config", type=Path, help="Path to the watcher JSON configuration file")
    parser.add_argument("--store", type=Path, required=True, help="Path to the JSON account store")
    parser.add_argument("--host", default="127.0.0.1", help="Host address for the status API")
    parser.add_argument("--port", type=int, default=8000, help="Port for the status API")
    parser.add_argument("--dry-run", action="store_true", help="Evaluate and report without applying actions")
    parser.add_argument("-v", "--verbose", action="count", default=1, help="Increase log verbosity")
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    try:
        config = load_watcher_config(args.config)
    except ConfigurationError as exc:
        parser.error(str(exc))
    if args.dry_run:
        config.actions.dry_run = True

    audit_logger = None
    if config.audit_log_path is not None:
        audit_logger = get_audit_logger(AuditSettings(log_path=config.audit_log_path))

    try:
        store = FileAccountStore(args.store)
    except (InconsistentStateError, OSError) as exc:
        parser.error(f"Unable to load account store {args.store}: {exc}")
    watcher = RiskWatcher(store, config, audit_logger=audit_logger)

    from .web import create_app  # imported lazily to avoid heavy dependencies at import time

    app = create_app(watcher, audit_log_path=config.audit_log_path, autostart=True)
    logger.info("Serving margin watcher status API", extra={"host": args.host, "port": args.port})

    uvicorn = _import_uvicorn()
    uvicorn.run(app, host=args.host, port=args.port, log_level="debug" if args.verbose > 1 else "info")


if __name__ == "__main__":
    main()
