"""Margin watcher components.

The package is split into a pure evaluator, a store contract with optimistic
concurrency, a side-effectful action executor and the scheduler that ties them
together on a fixed cadence.
"""

from .action_executor import ActionExecutor
from .config import ActionConfig, Settings, ThresholdConfig, WatcherConfig
from .errors import (
    ConfigurationError,
    InconsistentStateError,
    StaleSnapshotError,
    TransientStoreError,
    WatcherError,
)
from .evaluator import Decision, DecisionKind, RiskEvaluator
from .metrics import MetricRegistry
from .models import Account, Closure, Position, PositionSide, PositionStatus
from .store import AccountStore, FileAccountStore, InMemoryAccountStore
from .store_client import StoreClientAdapter
from .watcher_loop import AccountOutcome, OutcomeStatus, RiskWatcher, TickReport, WatcherState

__all__ = [
    "ActionExecutor",
    "ActionConfig",
    "Settings",
    "ThresholdConfig",
    "WatcherConfig",
    "ConfigurationError",
    "InconsistentStateError",
    "StaleSnapshotError",
    "TransientStoreError",
    "WatcherError",
    "Decision",
    "DecisionKind",
    "RiskEvaluator",
    "MetricRegistry",
    "Account",
    "Closure",
    "Position",
    "PositionSide",
    "PositionStatus",
    "AccountStore",
    "FileAccountStore",
    "InMemoryAccountStore",
    "StoreClientAdapter",
    "AccountOutcome",
    "OutcomeStatus",
    "RiskWatcher",
    "TickReport",
    "WatcherState",
]
