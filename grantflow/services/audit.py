from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from grantflow.domain.models import AuditLogEntry
from grantflow.domain.snapshots import to_jsonable
from grantflow.persistence import immutability  # noqa: F401  registers append-only listeners


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_snapshot(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_snapshot(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_snapshot(item) for item in value]
    return value


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def compute_diff(before: dict[str, Any] | None, after: dict[str, Any] | None) -> dict[str, dict[str, Any]]:
    """Shallow field-level diff of two snapshots.

    Nested values are compared by their canonical JSON form, so a dict whose
    keys were merely reordered is not reported as a change.
    """
    before = before or {}
    after = after or {}
    diff: dict[str, dict[str, Any]] = {}
    for key in sorted(set(before) | set(after)):
        old = before.get(key)
        new = after.get(key)
        if _canonical(old) != _canonical(new):
            diff[key] = {"from": old, "to": new}
    return diff


async def record_transition(
    session: AsyncSession,
    *,
    actor_id: str | None,
    action_key: str,
    entity_type: str,
    entity_id: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    tenant_id: str | None = None,
    from_state: str | None = None,
    to_state: str | None = None,
    occurred_at: datetime | None = None,
) -> AuditLogEntry:
    """Add an audit row to the caller's transaction.

    Flush errors propagate so the enclosing transition rolls back with it.
    """
    safe_before = sanitize_snapshot(to_jsonable(before)) if before is not None else None
    safe_after = sanitize_snapshot(to_jsonable(after)) if after is not None else None
    entry = AuditLogEntry(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        tenant_id=tenant_id,
        actor_id=actor_id,
        action_key=action_key,
        entity_type=entity_type,
        entity_id=entity_id,
        from_state=from_state,
        to_state=to_state,
        before_json=safe_before,
        after_json=safe_after,
        diff_json=compute_diff(safe_before, safe_after),
    )
    session.add(entry)
    await session.flush()
    logger.info(
        "audit_recorded action_key=%s entity_type=%s entity_id=%s audit_id=%s",
        action_key,
        entity_type,
        entity_id,
        entry.id,
    )
    return entry


def audit_entry_payload(entry: AuditLogEntry) -> dict[str, Any]:
    return to_jsonable(
        {
            "id": entry.id,
            "occurred_at": entry.occurred_at,
            "tenant_id": entry.tenant_id,
            "actor_id": entry.actor_id,
            "action_key": entry.action_key,
            "entity_type": entry.entity_type,
            "entity_id": entry.entity_id,
            "from_state": entry.from_state,
            "to_state": entry.to_state,
            "before": entry.before_json,
            "after": entry.after_json,
            "diff": entry.diff_json or {},
        }
    )
