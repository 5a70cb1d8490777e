"""Account/position store contract and reference implementations."""

from __future__ import annotations

import json
import logging
import math
import tempfile
import threading
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from .errors import InconsistentStateError, StaleSnapshotError, TransientStoreError
from .models import Account, Closure, Position, PositionStatus

logger = logging.getLogger(__name__)

# Float slack when comparing the account reserve with the sum of position reserves.
_RESERVE_TOLERANCE = 1e-9


class AccountStore:
    """Async contract implemented by the ledger collaborator.

    ``apply_*`` operations are atomic: they either commit every change and return
    the updated account, or raise without changing anything.
    """

    async def list_at_risk_accounts(self) -> Sequence[Account]:  # pragma: no cover - interface
        raise NotImplementedError

    async def list_open_positions(self, owner_id: str) -> Sequence[Position]:  # pragma: no cover - interface
        raise NotImplementedError

    async def apply_liquidation(
        self,
        owner_id: str,
        closures: Sequence[Closure],
        released_margin: float,
        *,
        expected_version: int,
    ) -> Account:  # pragma: no cover - interface
        raise NotImplementedError

    async def apply_revoke(self, owner_id: str, *, expected_version: int) -> Account:  # pragma: no cover - interface
        raise NotImplementedError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryAccountStore(AccountStore):
    """Process-local store with per-account locking and version checks.

    Only ledger mutations (cash, credit, reserved margin, the set of open positions)
    bump an account's version. Mark price updates do not, so a steady price feed
    cannot starve liquidation.

    Per-account locks are ``threading.Lock`` so collaborator threads (deposits,
    order fills, the price feed) can share them with the event loop. A lock is only
    ever held across synchronous code: no ``await`` may appear inside a locked
    section, and the collaborator helpers never block while holding one.
    """

    def __init__(
        self,
        accounts: Iterable[Account] = (),
        positions: Iterable[Position] = (),
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._accounts: Dict[str, Account] = {account.owner_id: account for account in accounts}
        self._positions: Dict[str, Position] = {position.position_id: position for position in positions}
        self._clock = clock or _utcnow
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------
    async def list_at_risk_accounts(self) -> Sequence[Account]:
        return [account for account in list(self._accounts.values()) if account.at_risk]

    async def list_open_positions(self, owner_id: str) -> Sequence[Position]:
        return self._open_positions(owner_id)

    async def apply_liquidation(
        self,
        owner_id: str,
        closures: Sequence[Closure],
        released_margin: float,
        *,
        expected_version: int,
    ) -> Account:
        # no await below: the lock is shared with collaborator threads
        with self._lock_for(owner_id):
            account = self._checked_account(owner_id, expected_version)
            open_ids = {position.position_id for position in self._open_positions(owner_id)}
            closing_ids = {closure.position_id for closure in closures}
            if open_ids != closing_ids:
                raise StaleSnapshotError(
                    f"Open positions for {owner_id} changed since evaluation",
                    owner_id=owner_id,
                )
            if not closures:
                raise InconsistentStateError(
                    f"Account {owner_id} reserves {account.margin_reserved} margin without open positions",
                    owner_id=owner_id,
                )

            closed_at = self._clock()
            updated_positions: Dict[str, Position] = {}
            credited = 0.0
            for closure in closures:
                position = self._positions[closure.position_id]
                updated_positions[position.position_id] = replace(
                    position,
                    status=PositionStatus.CLOSED,
                    realized_pnl=closure.realized_pnl,
                    closed_at=closed_at,
                )
                credited += closure.realized_pnl

            remaining = account.margin_reserved - released_margin
            if remaining > 0 and not math.isclose(
                account.margin_reserved, released_margin, rel_tol=_RESERVE_TOLERANCE, abs_tol=_RESERVE_TOLERANCE
            ):
                # closing every open position must free the whole reserve
                raise InconsistentStateError(
                    f"Account {owner_id} reserves {account.margin_reserved} margin but its open positions "
                    f"hold only {released_margin}",
                    owner_id=owner_id,
                )
            if remaining < 0:
                logger.warning(
                    "Released margin exceeds reserved margin; clamping to zero",
                    extra={
                        "owner_id": owner_id,
                        "margin_reserved": account.margin_reserved,
                        "released_margin": released_margin,
                    },
                )
            updated = replace(
                account,
                cash_balance=account.cash_balance + credited,
                margin_reserved=0.0,
                version=account.version + 1,
            )
            self._commit({owner_id: updated}, updated_positions)
            return updated

    async def apply_revoke(self, owner_id: str, *, expected_version: int) -> Account:
        with self._lock_for(owner_id):
            account = self._checked_account(owner_id, expected_version)
            updated = replace(account, extended_credit=0.0, version=account.version + 1)
            self._commit({owner_id: updated}, {})
            return updated

    # ------------------------------------------------------------------
    # Collaborator helpers (execution engine, deposits, price feed)
    # ------------------------------------------------------------------
    def get_account(self, owner_id: str) -> Optional[Account]:
        return self._accounts.get(owner_id)

    def get_position(self, position_id: str) -> Optional[Position]:
        return self._positions.get(position_id)

    def positions_for(self, owner_id: str) -> List[Position]:
        return [position for position in self._positions.values() if position.owner_id == owner_id]

    def put_account(self, account: Account) -> None:
        with self._lock_for(account.owner_id):
            self._commit({account.owner_id: account}, {})

    def open_position(self, position: Position) -> Account:
        """Register a new OPEN position and reserve its margin on the account."""

        with self._lock_for(position.owner_id):
            account = self._accounts.get(position.owner_id)
            if account is None:
                raise InconsistentStateError(f"Unknown account {position.owner_id}", owner_id=position.owner_id)
            if position.position_id in self._positions:
                raise InconsistentStateError(
                    f"Position {position.position_id} already exists", owner_id=position.owner_id
                )
            opened = replace(position, status=PositionStatus.OPEN, realized_pnl=None, closed_at=None)
            updated = replace(
                account,
                margin_reserved=account.margin_reserved + max(0.0, opened.margin_reserved),
                version=account.version + 1,
            )
            self._commit({account.owner_id: updated}, {opened.position_id: opened})
            return updated

    def deposit(self, owner_id: str, amount: float) -> Account:
        with self._lock_for(owner_id):
            account = self._accounts.get(owner_id)
            if account is None:
                raise InconsistentStateError(f"Unknown account {owner_id}", owner_id=owner_id)
            updated = replace(account, cash_balance=account.cash_balance + amount, version=account.version + 1)
            self._commit({owner_id: updated}, {})
            return updated

    def update_mark(self, position_id: str, mark_price: float) -> Position:
        position = self._positions.get(position_id)
        if position is None:
            raise InconsistentStateError(f"Unknown position {position_id}")
        with self._lock_for(position.owner_id):
            updated = replace(self._positions[position_id], mark_price=mark_price)
            self._commit({}, {position_id: updated})
            return updated

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _open_positions(self, owner_id: str) -> List[Position]:
        return [
            position
            for position in list(self._positions.values())
            if position.owner_id == owner_id and position.is_open
        ]

    def _checked_account(self, owner_id: str, expected_version: int) -> Account:
        account = self._accounts.get(owner_id)
        if account is None:
            raise InconsistentStateError(f"Account {owner_id} not found", owner_id=owner_id)
        if account.version != expected_version:
            raise StaleSnapshotError(
                f"Account {owner_id} is at version {account.version}, expected {expected_version}",
                owner_id=owner_id,
            )
        return account

    def _lock_for(self, owner_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(owner_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[owner_id] = lock
            return lock

    def _commit(self, accounts: Mapping[str, Account], positions: Mapping[str, Position]) -> None:
        self._accounts.update(accounts)
        self._positions.update(positions)


class FileAccountStore(InMemoryAccountStore):
    """JSON-backed store; every commit is written atomically before it becomes visible."""

    def __init__(self, path: Path, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        accounts, positions = self._load()
        super().__init__(accounts, positions, clock=clock)

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> tuple[List[Account], List[Position]]:
        if not self._path.exists():
            return [], []
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise InconsistentStateError(f"Invalid JSON in account store {self._path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise InconsistentStateError(f"Account store {self._path} must contain a JSON object")
        try:
            accounts = [_account_from_payload(item) for item in payload.get("accounts") or []]
            positions = [_position_from_payload(item) for item in payload.get("positions") or []]
        except (KeyError, TypeError, ValueError) as exc:
            raise InconsistentStateError(f"Malformed record in account store {self._path}: {exc!r}") from exc
        return accounts, positions

    def _commit(self, accounts: Mapping[str, Account], positions: Mapping[str, Position]) -> None:
        merged_accounts = {**self._accounts, **accounts}
        merged_positions = {**self._positions, **positions}
        payload = {
            "accounts": [account.to_payload() for account in merged_accounts.values()],
            "positions": [position.to_payload() for position in merged_positions.values()],
        }
        try:
            _atomic_write(self._path, json.dumps(payload, indent=2))
        except OSError as exc:
            logger.error("Failed to persist account store %s: %s", self._path, exc)
            raise TransientStoreError(f"Failed to persist account store: {exc}", code="io") from exc
        super()._commit(accounts, positions)


def _account_from_payload(payload: Mapping[str, Any]) -> Account:
    return Account(
        owner_id=str(payload["owner_id"]),
        cash_balance=float(payload.get("cash_balance", 0.0)),
        extended_credit=float(payload.get("extended_credit", 0.0)),
        margin_reserved=float(payload.get("margin_reserved", 0.0)),
        leverage_factor=float(payload.get("leverage_factor", 1.0)),
        version=int(payload.get("version", 0)),
    )


def _position_from_payload(payload: Mapping[str, Any]) -> Position:
    mark = payload.get("mark_price")
    realized = payload.get("realized_pnl")
    closed_at = payload.get("closed_at")
    return Position(
        position_id=str(payload["position_id"]),
        owner_id=str(payload["owner_id"]),
        side=str(payload["side"]),
        quantity=float(payload["quantity"]),
        entry_price=float(payload["entry_price"]),
        mark_price=float(mark) if mark is not None else None,
        margin_reserved=float(payload.get("margin_reserved", 0.0)),
        status=PositionStatus(payload.get("status", PositionStatus.OPEN.value)),
        realized_pnl=float(realized) if realized is not None else None,
        closed_at=datetime.fromisoformat(closed_at) if closed_at else None,
    )


def _atomic_write(path: Path, content: str) -> None:
    tmp = tempfile.NamedTemporaryFile("w", delete=False, dir=path.parent, encoding="utf-8")
    try:
        with tmp as f:
            f.write(content)
            f.flush()
        Path(tmp.name).replace(path)
    except Exception:
        Path(tmp.name).unlink(missing_ok=True)
        raise
