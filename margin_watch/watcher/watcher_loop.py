"""Scheduler and lifecycle for the recurring margin scan."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from margin_watch.audit import AuditLogWriter

from .action_executor import ActionExecutor, RiskSignalSink
from .config import WatcherConfig
from .errors import InconsistentStateError, StaleSnapshotError, TransientStoreError
from .evaluator import Decision, DecisionKind, RiskEvaluator
from .metrics import MetricRegistry, Timer
from .models import Account
from .store import AccountStore
from .store_client import StoreClientAdapter

logger = logging.getLogger(__name__)


class WatcherState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


class OutcomeStatus(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"
    DRY_RUN = "dry_run"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass
class AccountOutcome:
    owner_id: str
    status: OutcomeStatus
    decision: Optional[Decision] = None
    error: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "owner_id": self.owner_id,
            "status": self.status.value,
            "decision": self.decision.to_payload() if self.decision else None,
            "error": self.error,
        }


@dataclass
class TickReport:
    tick_id: int
    started_at: datetime
    duration_seconds: float = 0.0
    outcomes: List[AccountOutcome] = field(default_factory=list)
    error: Optional[str] = None

    def count(self, status: OutcomeStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status is status)

    def outcome_for(self, owner_id: str) -> Optional[AccountOutcome]:
        for outcome in self.outcomes:
            if outcome.owner_id == owner_id:
                return outcome
        return None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "tick_id": self.tick_id,
            "started_at": self.started_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "error": self.error,
            "counts": {status.value: self.count(status) for status in OutcomeStatus},
            "outcomes": [outcome.to_payload() for outcome in self.outcomes],
        }


class RiskWatcher:
    """Run the margin policy over every at-risk account on a fixed cadence.

    Lifecycle is a two-state machine guarded by compare-and-swap transitions. Only
    one tick may be in progress at a time; a tick that comes due while another is
    still running is skipped, never run concurrently.
    """

    def __init__(
        self,
        store: AccountStore,
        config: Optional[WatcherConfig] = None,
        *,
        audit_logger: Optional[AuditLogWriter] = None,
        notifier: Optional[RiskSignalSink] = None,
        metrics: Optional[MetricRegistry] = None,
    ) -> None:
        self._store = store
        self._audit_logger = audit_logger
        self._notifier = notifier
        self._metrics = metrics or MetricRegistry()
        self._lock = threading.Lock()
        self._state = WatcherState.STOPPED
        self._tick_in_progress = False
        self._tick_counter = 0
        self._scheduler: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._last_report: Optional[TickReport] = None
        self._configure(config or WatcherConfig())

    @property
    def state(self) -> WatcherState:
        return self._state

    @property
    def config(self) -> WatcherConfig:
        return self._config

    @property
    def metrics(self) -> MetricRegistry:
        return self._metrics

    @property
    def last_report(self) -> Optional[TickReport]:
        return self._last_report

    @property
    def tick_in_progress(self) -> bool:
        return self._tick_in_progress

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self, config: Optional[WatcherConfig] = None) -> bool:
        """Begin recurring evaluation on the running event loop.

        Returns ``False`` when the watcher is already running. Raises
        :class:`ConfigurationError` for unusable configuration, leaving the
        watcher stopped.
        """

        if self._state is WatcherState.RUNNING:
            logger.debug("Risk watcher already running; ignoring start request")
            return False
        loop = asyncio.get_running_loop()
        candidate = config or self._config
        candidate.validate()
        if not self._transition(WatcherState.STOPPED, WatcherState.RUNNING):
            return False
        self._configure(candidate)
        self._scheduler = loop.create_task(self._schedule(candidate.tick_interval_seconds))
        logger.info(
            "Risk watcher started",
            extra={
                "interval_seconds": candidate.tick_interval_seconds,
                "alert_threshold_percent": candidate.thresholds.alert_threshold_percent,
                "close_threshold_percent": candidate.thresholds.close_threshold_percent,
                "dry_run": candidate.actions.dry_run,
            },
        )
        return True

    def stop(self) -> bool:
        """Cancel the next scheduled tick. An in-flight tick runs to completion."""

        if not self._transition(WatcherState.RUNNING, WatcherState.STOPPED):
            return False
        if self._scheduler is not None:
            self._scheduler.cancel()
        logger.info("Risk watcher stopped")
        return True

    async def join(self) -> None:
        """Wait for the scheduler to unwind and any in-flight tick to finish."""

        scheduler, self._scheduler = self._scheduler, None
        if scheduler is not None:
            try:
                await scheduler
            except asyncio.CancelledError:
                pass
        tick_task = self._tick_task
        if tick_task is not None and not tick_task.done():
            await tick_task

    def _transition(self, expected: WatcherState, target: WatcherState) -> bool:
        with self._lock:
            if self._state is not expected:
                return False
            self._state = target
            return True

    def _configure(self, config: WatcherConfig) -> None:
        config.validate()
        self._config = config
        self._client = StoreClientAdapter(
            self._store, timeout_seconds=config.store_timeout_seconds, metrics=self._metrics
        )
        self._evaluator = RiskEvaluator(config.thresholds, strict_sides=config.actions.strict_sides)
        self._executor = ActionExecutor(
            config,
            store=self._client,
            audit_logger=self._audit_logger,
            notifier=self._notifier,
            metrics=self._metrics,
        )

    async def _schedule(self, interval: float) -> None:
        loop = asyncio.get_running_loop()
        next_due = loop.time()
        while self._state is WatcherState.RUNNING:
            next_due += interval
            await asyncio.sleep(max(0.0, next_due - loop.time()))
            if self._state is not WatcherState.RUNNING:
                return
            if self._tick_in_progress:
                self._record_skip()
                continue
            self._tick_task = loop.create_task(self.tick())

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------
    async def tick(self) -> Optional[TickReport]:
        """Run one scan unless another is in progress; return ``None`` when skipped."""

        with self._lock:
            if self._tick_in_progress:
                busy = True
            else:
                busy = False
                self._tick_in_progress = True
                self._tick_counter += 1
                tick_id = self._tick_counter
        if busy:
            self._record_skip()
            return None
        try:
            report = await self._run_tick(tick_id)
        finally:
            with self._lock:
                self._tick_in_progress = False
        self._last_report = report
        return report

    def _record_skip(self) -> None:
        self._metrics.inc("watcher_ticks_skipped_total")
        logger.warning("Skipping risk tick; previous tick still in progress")

    async def _run_tick(self, tick_id: int) -> TickReport:
        report = TickReport(tick_id=tick_id, started_at=datetime.now(timezone.utc))
        started = time.perf_counter()
        self._metrics.inc("watcher_ticks_total")
        with Timer(self._metrics, "tick_latency_seconds"):
            try:
                accounts = await self._client.list_at_risk_accounts()
            except TransientStoreError as exc:
                report.error = str(exc)
                logger.warning("Unable to list at-risk accounts; retrying next tick", extra={"error": str(exc)})
            except Exception as exc:
                report.error = str(exc)
                logger.error("Failed to list at-risk accounts", extra={"error": str(exc)}, exc_info=True)
            else:
                report.outcomes = await self._process_all(accounts)
        report.duration_seconds = time.perf_counter() - started
        logger.info(
            "Risk tick completed",
            extra={
                "tick_id": tick_id,
                "accounts": len(report.outcomes),
                "applied": report.count(OutcomeStatus.APPLIED),
                "skipped": report.count(OutcomeStatus.SKIPPED),
                "errors": report.count(OutcomeStatus.ERROR),
                "duration": report.duration_seconds,
            },
        )
        return report

    async def _process_all(self, accounts: Sequence[Account]) -> List[AccountOutcome]:
        unique: Dict[str, Account] = {}
        for account in accounts:
            unique.setdefault(account.owner_id, account)
        semaphore = asyncio.Semaphore(self._config.max_workers)

        async def _worker(account: Account) -> AccountOutcome:
            async with semaphore:
                outcome = await self._process_account(account)
            self._metrics.inc("account_outcomes_total", labels={"status": outcome.status.value})
            return outcome

        return list(await asyncio.gather(*(_worker(account) for account in unique.values())))

    async def _process_account(self, account: Account) -> AccountOutcome:
        owner_id = account.owner_id
        decision: Optional[Decision] = None
        try:
            positions = await self._client.list_open_positions(owner_id)
            decision = self._evaluator.evaluate(account, positions)
            updated = await self._executor.execute(decision)
        except StaleSnapshotError as exc:
            logger.info("Account changed during evaluation; deferring", extra={"owner_id": owner_id, "error": str(exc)})
            return AccountOutcome(owner_id, OutcomeStatus.SKIPPED, decision, str(exc))
        except InconsistentStateError as exc:
            logger.warning("Data-integrity problem; skipping account", extra={"owner_id": owner_id, "error": str(exc)})
            return AccountOutcome(owner_id, OutcomeStatus.SKIPPED, decision, str(exc))
        except TransientStoreError as exc:
            logger.warning("Transient store failure; retrying next tick", extra={"owner_id": owner_id, "error": str(exc)})
            return AccountOutcome(owner_id, OutcomeStatus.ERROR, decision, str(exc))
        except Exception as exc:
            logger.error("Failed to process account", extra={"owner_id": owner_id, "error": str(exc)}, exc_info=True)
            return AccountOutcome(owner_id, OutcomeStatus.ERROR, decision, str(exc))

        if updated is not None:
            return AccountOutcome(owner_id, OutcomeStatus.APPLIED, decision)
        if decision.kind is not DecisionKind.NOOP and self._config.actions.dry_run:
            return AccountOutcome(owner_id, OutcomeStatus.DRY_RUN, decision)
        return AccountOutcome(owner_id, OutcomeStatus.NOOP, decision)
