"""Append-only audit trail for credit revocations and forced liquidations."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from hashlib import sha256
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64

DEFAULT_REDACT_FIELDS: tuple[str, ...] = (
    "password",
    "secret",
    "token",
    "api_key",
)


@dataclass(frozen=True)
class AuditSettings:
    """Where and how applied risk actions are recorded."""

    log_path: Path
    enabled: bool = True
    redact_fields: Sequence[str] = DEFAULT_REDACT_FIELDS


class FileAuditSink:
    """Persist audit records to a JSONL file on disk."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def bootstrap_hash(self) -> str:
        """Return the hash of the last stored record so the chain survives restarts."""

        last_line = ""
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                for line in handle:
                    if line.strip():
                        last_line = line.strip()
        except FileNotFoundError:
            return GENESIS_HASH
        if not last_line:
            return GENESIS_HASH
        try:
            payload = json.loads(last_line)
        except json.JSONDecodeError:
            logger.error("Encountered invalid JSON in audit log %s", self._path)
            return GENESIS_HASH
        return str(payload.get("hash") or GENESIS_HASH)

    def write(self, payload: str) -> None:
        with self._path.open("a", encoding="utf-8") as handle:
            handle.write(payload)


class AuditLogWriter:
    """Append-only writer that chains every record to the previous one."""

    def __init__(self, *, file_sink: FileAuditSink, redact_fields: Sequence[str] = DEFAULT_REDACT_FIELDS) -> None:
        self._file_sink = file_sink
        self._lock = threading.Lock()
        self._redact_keys = {self._normalise_key(field) for field in redact_fields}
        self._last_hash = file_sink.bootstrap_hash()

    @staticmethod
    def _normalise_key(key: str) -> str:
        return key.replace(" ", "").replace("-", "_").lower()

    def _redact(self, value: Any) -> Any:
        if isinstance(value, Mapping):
            redacted: Dict[str, Any] = {}
            for key, item in value.items():
                norm_key = self._normalise_key(str(key))
                if any(field in norm_key for field in self._redact_keys):
                    redacted[key] = "<redacted>"
                else:
                    redacted[key] = self._redact(item)
            return redacted
        if isinstance(value, (list, tuple)):
            return [self._redact(item) for item in value]
        return value

    def log(self, action: str, actor: str, details: Mapping[str, Any] | None = None) -> str:
        """Append an audit record and return its hash."""

        timestamp = datetime.now(timezone.utc).isoformat()
        with self._lock:
            record: Dict[str, Any] = {
                "timestamp": timestamp,
                "action": str(action),
                "actor": str(actor),
                "details": self._redact(dict(details or {})),
                "prev_hash": self._last_hash,
            }
            canonical = json.dumps(record, sort_keys=True, separators=(",", ":"))
            record_hash = sha256(canonical.encode("utf-8")).hexdigest()
            record["hash"] = record_hash
            self._file_sink.write(json.dumps(record, sort_keys=True) + "\n")
            self._last_hash = record_hash
        return record_hash

    @property
    def log_path(self) -> Path:
        return self._file_sink.path


def iter_audit_entries(path: Path) -> Iterator[Dict[str, Any]]:
    """Yield parsed audit records from ``path``."""

    try:
        with Path(path).open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Skipping invalid audit record: %s", line)
    except FileNotFoundError:
        return


def read_audit_entries(path: Path, *, limit: Optional[int] = None, action: Optional[str] = None) -> list[Dict[str, Any]]:
    """Return audit entries from ``path`` filtered by ``action`` and trimmed to ``limit``."""

    action_norm = action.lower() if action else None
    results = [
        entry
        for entry in iter_audit_entries(path)
        if not action_norm or str(entry.get("action", "")).lower() == action_norm
    ]
    if limit is not None:
        return results[-limit:]
    return results


def verify_chain(path: Path) -> bool:
    """Return ``True`` when every record's hash and back-link are intact."""

    previous = GENESIS_HASH
    for entry in iter_audit_entries(path):
        record = {key: entry.get(key) for key in ("timestamp", "action", "actor", "details", "prev_hash")}
        if record["prev_hash"] != previous:
            return False
        canonical = json.dumps(record, sort_keys=True, separators=(",", ":"))
        if sha256(canonical.encode("utf-8")).hexdigest() != entry.get("hash"):
            return False
        previous = str(entry.get("hash"))
    return True


def get_audit_logger(settings: Optional[AuditSettings]) -> Optional[AuditLogWriter]:
    if settings is None or not settings.enabled:
        return None
    return AuditLogWriter(file_sink=FileAuditSink(settings.log_path), redact_fields=settings.redact_fields)
