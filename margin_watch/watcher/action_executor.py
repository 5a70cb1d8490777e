"""Side-effectful application of margin decisions."""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from margin_watch.audit import AuditLogWriter

from .config import WatcherConfig
from .evaluator import Decision, DecisionKind
from .metrics import MetricRegistry
from .models import Account
from .store import AccountStore

logger = logging.getLogger(__name__)

AUDIT_ACTOR = "margin_watcher"


class RiskSignalSink(Protocol):
    def send_risk_signal(self, *, subject: str, body: str, severity: str) -> None:
        ...


class ActionExecutor:
    """Apply decisions through the store with dry-run support and an audit trail."""

    def __init__(
        self,
        config: WatcherConfig,
        *,
        store: AccountStore,
        audit_logger: Optional[AuditLogWriter] = None,
        notifier: Optional[RiskSignalSink] = None,
        metrics: MetricRegistry | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._audit = audit_logger
        self._notifier = notifier
        self._metrics = metrics or MetricRegistry()

    async def execute(self, decision: Decision) -> Optional[Account]:
        """Apply ``decision`` and return the updated account.

        Returns ``None`` when nothing was written (no-op or dry-run). Store errors
        propagate to the caller untouched.
        """

        if decision.kind is DecisionKind.NOOP:
            return None
        if self._config.actions.dry_run:
            logger.warning(
                "[DRY-RUN] Would apply margin decision",
                extra={"owner_id": decision.owner_id, "decision": decision.kind.value, "rationale": decision.rationale},
            )
            return None
        if decision.kind is DecisionKind.LIQUIDATE:
            return await self._liquidate(decision)
        return await self._revoke(decision)

    async def _liquidate(self, decision: Decision) -> Account:
        account = await self._store.apply_liquidation(
            decision.owner_id,
            decision.closures,
            decision.released_margin,
            expected_version=decision.account_version,
        )
        logger.error(
            "Liquidated all open positions",
            extra={
                "owner_id": decision.owner_id,
                "positions": len(decision.closures),
                "realized_pnl": decision.realized_pnl,
                "released_margin": decision.released_margin,
                "margin_level": decision.margin_level,
            },
        )
        self._record(decision, account)
        return account

    async def _revoke(self, decision: Decision) -> Account:
        account = await self._store.apply_revoke(decision.owner_id, expected_version=decision.account_version)
        logger.warning(
            "Revoked extended credit",
            extra={"owner_id": decision.owner_id, "margin_level": decision.margin_level},
        )
        self._record(decision, account)
        return account

    def _record(self, decision: Decision, account: Account) -> None:
        self._metrics.inc("risk_actions_total", labels={"action": decision.kind.value})
        if self._audit is not None:
            try:
                self._audit.log(
                    action=f"watcher.{decision.kind.value}",
                    actor=AUDIT_ACTOR,
                    details={"decision": decision.to_payload(), "account": account.to_payload()},
                )
            except OSError as exc:
                logger.error("Failed to write audit entry for %s: %s", decision.owner_id, exc)
        if self._notifier is not None:
            severity = "critical" if decision.kind is DecisionKind.LIQUIDATE else "warning"
            subject = f"Margin {decision.kind.value.replace('_', ' ')}: {decision.owner_id}"
            try:
                self._notifier.send_risk_signal(subject=subject, body=decision.rationale, severity=severity)
            except Exception as exc:  # pragma: no cover - delivery is external
                logger.error("Risk signal delivery failed for %s: %s", decision.owner_id, exc, exc_info=True)
