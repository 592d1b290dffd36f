from __future__ import annotations

from grantflow.services.audit import compute_diff, sanitize_snapshot


def test_compute_diff_reports_changed_added_and_removed_fields() -> None:
    before = {"status": "DRAFT", "version": 1, "note": "x"}
    after = {"status": "SUBMITTED", "version": 2, "extra": True}

    diff = compute_diff(before, after)

    assert diff == {
        "status": {"from": "DRAFT", "to": "SUBMITTED"},
        "version": {"from": 1, "to": 2},
        "note": {"from": "x", "to": None},
        "extra": {"from": None, "to": True},
    }


def test_compute_diff_ignores_reordered_nested_keys() -> None:
    before = {"rules": {"a": 1, "b": 2}}
    after = {"rules": {"b": 2, "a": 1}}
    assert compute_diff(before, after) == {}


def test_compute_diff_for_creation_lists_every_field() -> None:
    diff = compute_diff(None, {"status": "DRAFT"})
    assert diff == {"status": {"from": None, "to": "DRAFT"}}


def test_sanitize_snapshot_redacts_nested_secrets() -> None:
    snapshot = {
        "id": "b1",
        "rules": {"relay_token": "abc", "steps": [{"api_key": "k", "role": "finance"}]},
        "Password": "hunter2",
    }

    cleaned = sanitize_snapshot(snapshot)

    assert cleaned["id"] == "b1"
    assert cleaned["rules"]["relay_token"] == "[REDACTED]"
    assert cleaned["rules"]["steps"][0] == {"api_key": "[REDACTED]", "role": "finance"}
    assert cleaned["Password"] == "[REDACTED]"
