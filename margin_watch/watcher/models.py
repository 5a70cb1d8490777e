"""Ledger snapshots read by the watcher: accounts, positions and planned closures."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class PositionSide(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"


class PositionStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


# Recognized side labels. Anything else is treated as LONG unless the watcher runs
# with strict side handling, where it is a data-integrity problem.
SIDE_ALIASES: Dict[str, PositionSide] = {
    "LONG": PositionSide.LONG,
    "BUY": PositionSide.LONG,
    "SHORT": PositionSide.SHORT,
    "SELL": PositionSide.SHORT,
}


@dataclass(frozen=True)
class Account:
    """Wallet snapshot for one owner."""

    owner_id: str
    cash_balance: float = 0.0
    extended_credit: float = 0.0
    margin_reserved: float = 0.0
    leverage_factor: float = 1.0
    version: int = 0

    @property
    def at_risk(self) -> bool:
        return self.margin_reserved > 0 or self.extended_credit > 0

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Position:
    """Immutable snapshot of a leveraged position."""

    position_id: str
    owner_id: str
    side: str
    quantity: float
    entry_price: float
    mark_price: Optional[float] = None
    margin_reserved: float = 0.0
    status: PositionStatus = PositionStatus.OPEN
    realized_pnl: Optional[float] = None
    closed_at: Optional[datetime] = None

    @property
    def effective_mark(self) -> float:
        if self.mark_price is None:
            return self.entry_price
        return self.mark_price

    @property
    def is_open(self) -> bool:
        return self.status is PositionStatus.OPEN

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        payload["closed_at"] = self.closed_at.isoformat() if self.closed_at else None
        return payload


@dataclass(frozen=True)
class Closure:
    """One position scheduled for forced closure."""

    position_id: str
    realized_pnl: float
    released_margin: float

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)
