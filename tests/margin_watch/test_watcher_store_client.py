import asyncio

import pytest

from margin_watch.watcher.errors import StaleSnapshotError, TransientStoreError
from margin_watch.watcher.metrics import MetricRegistry
from margin_watch.watcher.models import Account
from margin_watch.watcher.store import AccountStore, InMemoryAccountStore
from margin_watch.watcher.store_client import StoreClientAdapter


class HangingStore(AccountStore):
    async def list_at_risk_accounts(self):
        await asyncio.sleep(10)
        return []


class DisconnectedStore(AccountStore):
    async def list_open_positions(self, owner_id):
        raise ConnectionResetError("peer went away")


class StaleStore(AccountStore):
    async def apply_revoke(self, owner_id, *, expected_version):
        raise StaleSnapshotError("moved on", owner_id=owner_id)


def test_slow_calls_time_out_as_transient_errors():
    metrics = MetricRegistry()
    adapter = StoreClientAdapter(HangingStore(), timeout_seconds=0.01, metrics=metrics)

    with pytest.raises(TransientStoreError) as excinfo:
        asyncio.run(adapter.list_at_risk_accounts())

    assert excinfo.value.code == "timeout"
    assert metrics.counter("store_errors_total", labels={"op": "list_at_risk_accounts", "code": "timeout"}) == 1


def test_connection_failures_become_transient():
    metrics = MetricRegistry()
    adapter = StoreClientAdapter(DisconnectedStore(), metrics=metrics)

    with pytest.raises(TransientStoreError, match="peer went away") as excinfo:
        asyncio.run(adapter.list_open_positions("alice"))

    assert excinfo.value.code == "connection"


def test_integrity_errors_pass_through_and_are_counted():
    metrics = MetricRegistry()
    adapter = StoreClientAdapter(StaleStore(), metrics=metrics)

    with pytest.raises(StaleSnapshotError):
        asyncio.run(adapter.apply_revoke("alice", expected_version=1))

    assert metrics.counter("store_errors_total", labels={"op": "apply_revoke", "code": "stalesnapshoterror"}) == 1


def test_successful_calls_record_latency():
    metrics = MetricRegistry()
    store = InMemoryAccountStore([Account("alice", extended_credit=10)])
    adapter = StoreClientAdapter(store, metrics=metrics)

    accounts = asyncio.run(adapter.list_at_risk_accounts())

    assert [account.owner_id for account in accounts] == ["alice"]
    assert len(metrics.histograms[("store_latency_seconds", (("op", "list_at_risk_accounts"),))]) == 1
