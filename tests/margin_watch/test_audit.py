import hashlib
import json

from margin_watch.audit import (
    GENESIS_HASH,
    AuditSettings,
    get_audit_logger,
    read_audit_entries,
    verify_chain,
)


def test_audit_log_hash_chain(tmp_path):
    log_path = tmp_path / "audit.log"
    writer = get_audit_logger(AuditSettings(log_path=log_path))
    assert writer is not None

    first_hash = writer.log("watcher.revoke_credit", "margin_watcher", {"owner_id": "alice"})
    second_hash = writer.log("watcher.liquidate", "margin_watcher", {"owner_id": "bob"})

    payloads = [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines() if line]
    assert payloads[0]["prev_hash"] == GENESIS_HASH
    assert payloads[0]["hash"] == first_hash
    assert payloads[1]["hash"] == second_hash
    assert payloads[1]["prev_hash"] == first_hash

    canonical = json.dumps(
        {key: payloads[0][key] for key in ("timestamp", "action", "actor", "details", "prev_hash")},
        sort_keys=True,
        separators=(",", ":"),
    )
    assert first_hash == hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    assert verify_chain(log_path)


def test_chain_continues_across_writers(tmp_path):
    log_path = tmp_path / "audit.log"
    first = get_audit_logger(AuditSettings(log_path=log_path))
    last_hash = first.log("watcher.liquidate", "margin_watcher", {"owner_id": "bob"})

    second = get_audit_logger(AuditSettings(log_path=log_path))
    second.log("watcher.revoke_credit", "margin_watcher", {"owner_id": "carol"})

    entries = read_audit_entries(log_path)
    assert entries[1]["prev_hash"] == last_hash
    assert verify_chain(log_path)


def test_tampering_breaks_the_chain(tmp_path):
    log_path = tmp_path / "audit.log"
    writer = get_audit_logger(AuditSettings(log_path=log_path))
    writer.log("watcher.liquidate", "margin_watcher", {"owner_id": "bob", "realized_pnl": -100})
    writer.log("watcher.revoke_credit", "margin_watcher", {"owner_id": "carol"})

    lines = log_path.read_text(encoding="utf-8").splitlines()
    tampered = json.loads(lines[0])
    tampered["details"]["realized_pnl"] = 0
    lines[0] = json.dumps(tampered, sort_keys=True)
    log_path.write_text("\n".join(lines) + "\n", encoding="utf-8")

    assert not verify_chain(log_path)


def test_audit_log_redacts_sensitive_fields(tmp_path):
    log_path = tmp_path / "audit.log"
    writer = get_audit_logger(AuditSettings(log_path=log_path, redact_fields=("token", "password")))

    writer.log(
        "watcher.liquidate",
        "operator",
        {
            "token": "should-hide",
            "nested": {"password": "super-secret", "other": "visible"},
            "list": [{"apiToken": "secret"}],
        },
    )

    details = read_audit_entries(log_path)[0]["details"]
    assert details["token"] == "<redacted>"
    assert details["nested"]["password"] == "<redacted>"
    assert details["nested"]["other"] == "visible"
    assert details["list"][0]["apiToken"] == "<redacted>"


def test_read_audit_entries_filters_and_limits(tmp_path):
    log_path = tmp_path / "audit.log"
    writer = get_audit_logger(AuditSettings(log_path=log_path))
    for owner in ("a", "b", "c"):
        writer.log("watcher.liquidate", "margin_watcher", {"owner_id": owner})
    writer.log("watcher.revoke_credit", "margin_watcher", {"owner_id": "d"})

    liquidations = read_audit_entries(log_path, limit=2, action="WATCHER.LIQUIDATE")

    assert [entry["details"]["owner_id"] for entry in liquidations] == ["b", "c"]


def test_disabled_audit_returns_no_writer(tmp_path):
    assert get_audit_logger(AuditSettings(log_path=tmp_path / "audit.log", enabled=False)) is None
    assert get_audit_logger(None) is None
    assert read_audit_entries(tmp_path / "missing.log") == []
