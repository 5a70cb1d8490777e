"""Pure margin decision logic for a single account."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Sequence, Tuple

from .config import ThresholdConfig
from .errors import InconsistentStateError
from .models import SIDE_ALIASES, Account, Closure, Position, PositionSide

logger = logging.getLogger(__name__)


class DecisionKind(str, Enum):
    NOOP = "noop"
    REVOKE_CREDIT = "revoke_credit"
    LIQUIDATE = "liquidate"


@dataclass
class Decision:
    kind: DecisionKind
    owner_id: str
    unrealized_pnl: float
    equity: float
    margin_level: float
    rationale: str
    account_version: int = 0
    closures: List[Closure] = field(default_factory=list)

    @property
    def released_margin(self) -> float:
        return sum(closure.released_margin for closure in self.closures)

    @property
    def realized_pnl(self) -> float:
        return sum(closure.realized_pnl for closure in self.closures)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "owner_id": self.owner_id,
            "unrealized_pnl": self.unrealized_pnl,
            "equity": self.equity,
            # JSON has no infinity; an unbounded margin level is reported as null.
            "margin_level": self.margin_level if math.isfinite(self.margin_level) else None,
            "rationale": self.rationale,
            "account_version": self.account_version,
            "closures": [closure.to_payload() for closure in self.closures],
            "released_margin": self.released_margin,
            "realized_pnl": self.realized_pnl,
        }


def side_sign(position: Position, *, strict: bool = False) -> int:
    """Return ``-1`` for short exposure and ``+1`` for long exposure.

    Unknown labels raise :class:`InconsistentStateError` in strict mode and are
    treated as long otherwise.
    """

    label = position.side.value if isinstance(position.side, PositionSide) else str(position.side)
    side = SIDE_ALIASES.get(label.strip().upper())
    if side is None:
        if strict:
            raise InconsistentStateError(
                f"Position {position.position_id} has unrecognized side {position.side!r}",
                owner_id=position.owner_id,
            )
        logger.warning(
            "Defaulting unrecognized position side to LONG",
            extra={"owner_id": position.owner_id, "position_id": position.position_id, "side": position.side},
        )
        side = PositionSide.LONG
    return -1 if side is PositionSide.SHORT else 1


def position_pnl(position: Position, *, strict: bool = False) -> float:
    """Mark-to-market P&L of ``position`` at its latest known price."""

    sign = side_sign(position, strict=strict)
    return (position.effective_mark - position.entry_price) * position.quantity * sign


def margin_level(equity: float, margin_reserved: float) -> float:
    """Equity as a percentage of reserved margin; unbounded without exposure."""

    if margin_reserved <= 0:
        return math.inf
    return equity * 100 / margin_reserved


class RiskEvaluator:
    """Evaluate the two-tier margin policy without side effects."""

    def __init__(self, thresholds: ThresholdConfig, *, strict_sides: bool = False) -> None:
        self._thresholds = thresholds
        self._strict_sides = strict_sides

    def evaluate(self, account: Account, open_positions: Sequence[Position]) -> Decision:
        positions = self._validated(account, open_positions)
        pnls = [(position, position_pnl(position, strict=self._strict_sides)) for position in positions]
        unrealized = sum(pnl for _, pnl in pnls)
        equity = account.cash_balance + account.extended_credit + unrealized
        level = margin_level(equity, account.margin_reserved)

        close = self._thresholds.close_threshold_percent
        alert = self._thresholds.alert_threshold_percent
        closures: List[Closure] = []
        if math.isfinite(level) and level <= close:
            kind = DecisionKind.LIQUIDATE
            closures = self._plan_liquidation(pnls)
            rationale = f"Margin level {level:.2f}% at or below close threshold {close:.2f}%"
        elif math.isfinite(level) and level < alert and account.extended_credit > 0:
            kind = DecisionKind.REVOKE_CREDIT
            rationale = f"Margin level {level:.2f}% below alert threshold {alert:.2f}%"
        else:
            kind = DecisionKind.NOOP
            rationale = "Margin level within tolerance" if math.isfinite(level) else "No reserved margin"

        log_level = logging.DEBUG
        if kind is DecisionKind.REVOKE_CREDIT:
            log_level = logging.WARNING
        elif kind is DecisionKind.LIQUIDATE:
            log_level = logging.ERROR
        logger.log(
            log_level,
            "Evaluated margin decision",
            extra={
                "owner_id": account.owner_id,
                "decision": kind.value,
                "margin_level": level,
                "equity": equity,
                "unrealized_pnl": unrealized,
                "rationale": rationale,
            },
        )
        return Decision(
            kind=kind,
            owner_id=account.owner_id,
            unrealized_pnl=unrealized,
            equity=equity,
            margin_level=level,
            rationale=rationale,
            account_version=account.version,
            closures=closures,
        )

    def _plan_liquidation(self, pnls: Iterable[Tuple[Position, float]]) -> List[Closure]:
        return [
            Closure(
                position_id=position.position_id,
                realized_pnl=pnl,
                released_margin=max(0.0, position.margin_reserved),
            )
            for position, pnl in pnls
        ]

    def _validated(self, account: Account, positions: Sequence[Position]) -> List[Position]:
        validated: List[Position] = []
        for position in positions:
            if position.owner_id != account.owner_id:
                raise InconsistentStateError(
                    f"Position {position.position_id} belongs to {position.owner_id}, not {account.owner_id}",
                    owner_id=account.owner_id,
                )
            if not position.is_open:
                continue
            if position.quantity <= 0:
                raise InconsistentStateError(
                    f"Position {position.position_id} has non-positive quantity {position.quantity}",
                    owner_id=account.owner_id,
                )
            validated.append(position)
        return validated
