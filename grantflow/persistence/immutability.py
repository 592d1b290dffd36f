from __future__ import annotations

import logging

from sqlalchemy import event

from grantflow.core.errors import ImmutableRecordError
from grantflow.domain.models import AuditLogEntry


logger = logging.getLogger(__name__)


def _reject_audit_update(mapper, connection, target: AuditLogEntry) -> None:
    logger.error("audit_mutation_blocked op=update audit_id=%s", target.id)
    raise ImmutableRecordError(
        "Audit log entries are append-only",
        code="AUDIT_IMMUTABLE",
        details={"audit_id": target.id, "operation": "update"},
    )


def _reject_audit_delete(mapper, connection, target: AuditLogEntry) -> None:
    logger.error("audit_mutation_blocked op=delete audit_id=%s", target.id)
    raise ImmutableRecordError(
        "Audit log entries are append-only",
        code="AUDIT_IMMUTABLE",
        details={"audit_id": target.id, "operation": "delete"},
    )


def register_immutability_listeners() -> None:
    # Safe to call repeatedly from every entrypoint that writes audit rows.
    if not event.contains(AuditLogEntry, "before_update", _reject_audit_update):
        event.listen(AuditLogEntry, "before_update", _reject_audit_update)
    if not event.contains(AuditLogEntry, "before_delete", _reject_audit_delete):
        event.listen(AuditLogEntry, "before_delete", _reject_audit_delete)


register_immutability_listeners()
