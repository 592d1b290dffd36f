from __future__ import annotations

import pytest

from grantflow.core.config import get_settings
from grantflow.core.errors import ValidationError
from grantflow.services.idempotency import MAX_KEY_LENGTH, build_request, compute_request_hash, normalize_key


def test_normalize_key_strips_whitespace() -> None:
    assert normalize_key("  abc-123 ") == "abc-123"


@pytest.mark.parametrize("raw", ["", "   ", "x" * (MAX_KEY_LENGTH + 1)])
def test_normalize_key_rejects_empty_and_oversized(raw: str) -> None:
    with pytest.raises(ValidationError) as excinfo:
        normalize_key(raw)
    assert excinfo.value.code == "IDEMPOTENCY_KEY_INVALID"


def test_request_hash_is_order_independent() -> None:
    assert compute_request_hash({"a": 1, "b": [1, 2]}) == compute_request_hash({"b": [1, 2], "a": 1})
    assert compute_request_hash({"a": 1}) != compute_request_hash({"a": 2})


def test_build_request_without_key_returns_none() -> None:
    assert build_request(None, payload={"a": 1}) is None


def test_build_request_respects_disabled_ledger(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("IDEMPOTENCY_ENABLED", "false")
    get_settings.cache_clear()
    try:
        assert build_request("key-1", payload={"a": 1}) is None
    finally:
        monkeypatch.delenv("IDEMPOTENCY_ENABLED")
        get_settings.cache_clear()


def test_build_request_carries_tenant_and_hash() -> None:
    request = build_request(" key-1 ", payload={"a": 1}, tenant_id="t1")
    assert request is not None
    assert request.key == "key-1"
    assert request.tenant_id == "t1"
    assert request.request_hash == compute_request_hash({"a": 1})
