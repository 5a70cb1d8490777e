"""Adapter that bounds store calls with timeouts and normalises failures."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

from .errors import TransientStoreError, WatcherError
from .metrics import MetricRegistry, Timer
from .models import Account, Closure, Position
from .store import AccountStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StoreClientAdapter(AccountStore):
    """Thin adapter around :class:`AccountStore` with timeouts and metrics.

    Timeouts, connection errors and other ``OSError`` failures surface as
    :class:`TransientStoreError`; watcher errors raised by the store pass through.
    """

    def __init__(
        self, store: AccountStore, *, timeout_seconds: float = 10.0, metrics: Optional[MetricRegistry] = None
    ) -> None:
        self._store = store
        self._timeout = timeout_seconds
        self._metrics = metrics or MetricRegistry()

    @property
    def store(self) -> AccountStore:
        return self._store

    async def list_at_risk_accounts(self) -> Sequence[Account]:
        return await self._call("list_at_risk_accounts", self._store.list_at_risk_accounts)

    async def list_open_positions(self, owner_id: str) -> Sequence[Position]:
        return await self._call(
            "list_open_positions", lambda: self._store.list_open_positions(owner_id), owner_id=owner_id
        )

    async def apply_liquidation(
        self,
        owner_id: str,
        closures: Sequence[Closure],
        released_margin: float,
        *,
        expected_version: int,
    ) -> Account:
        return await self._call(
            "apply_liquidation",
            lambda: self._store.apply_liquidation(
                owner_id, closures, released_margin, expected_version=expected_version
            ),
            owner_id=owner_id,
        )

    async def apply_revoke(self, owner_id: str, *, expected_version: int) -> Account:
        return await self._call(
            "apply_revoke",
            lambda: self._store.apply_revoke(owner_id, expected_version=expected_version),
            owner_id=owner_id,
        )

    async def _call(self, op: str, func: Callable[[], Awaitable[T]], *, owner_id: Any = None) -> T:
        with Timer(self._metrics, "store_latency_seconds", labels={"op": op}):
            try:
                return await asyncio.wait_for(func(), timeout=self._timeout)
            except asyncio.TimeoutError as exc:
                raise self._transient(op, owner_id, "timeout", f"{op} timed out after {self._timeout}s") from exc
            except WatcherError as exc:
                self._metrics.inc("store_errors_total", labels={"op": op, "code": _error_code(exc)})
                raise
            except (ConnectionError, OSError) as exc:
                raise self._transient(op, owner_id, _error_code(exc), f"{op} failed: {exc}") from exc

    def _transient(self, op: str, owner_id: Any, code: str, message: str) -> TransientStoreError:
        self._metrics.inc("store_errors_total", labels={"op": op, "code": code})
        logger.warning(
            "Store call failed",
            extra={"op": op, "owner_id": owner_id, "code": code, "error": message},
        )
        return TransientStoreError(message, code=code)


def _error_code(exc: BaseException) -> str:
    code = getattr(exc, "code", None)
    if isinstance(code, (int, str)) and str(code):
        return str(code)
    if isinstance(exc, ConnectionError):
        return "connection"
    return type(exc).__name__.lower()
