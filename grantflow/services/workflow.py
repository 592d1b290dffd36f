from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Awaitable, Callable, Iterable, Mapping, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from grantflow.core.errors import ConflictError, NotFoundError, ValidationError
from grantflow.persistence.db import unit_of_work
from grantflow.services.audit import record_transition
from grantflow.services.idempotency import IdempotencyRequest, mark_completed, release, reserve
from grantflow.services.notifications.outbox import OutboxEvent, enqueue_event


logger = logging.getLogger(__name__)

SideEffect = Callable[[AsyncSession, Any], Awaitable[None]]
Changes = Mapping[str, Any] | Callable[[Any], Mapping[str, Any]]
ActionWork = Callable[[AsyncSession], Awaitable[Any]]

# Columns the engine owns; callers cannot overwrite them through ``changes``.
_ENGINE_FIELDS = frozenset({"id", "version", "created_at", "created_by"})


@dataclass(frozen=True)
class Lifecycle:
    """Static description of one entity's state machine."""

    entity_type: str
    state_field: str
    transitions: Mapping[str, frozenset[str]]
    load_for_update: Callable[[AsyncSession, str], Awaitable[Any]]
    snapshot: Callable[[Any], dict[str, Any]]
    default_audience: Callable[[Any], dict[str, list[str]]] = field(default=lambda entity: {})

    @property
    def states(self) -> frozenset[str]:
        known = set(self.transitions)
        for targets in self.transitions.values():
            known.update(targets)
        return frozenset(known)

    def allowed_targets(self, state: str) -> frozenset[str]:
        return self.transitions.get(state, frozenset())

    def check_target(self, current: str, target: str) -> None:
        if target not in self.states:
            raise ValidationError(
                f"Unknown {self.entity_type} state {target!r}",
                code="UNKNOWN_STATE",
                details={"target_state": target},
            )
        if target not in self.allowed_targets(current):
            raise ConflictError(
                f"Cannot move {self.entity_type} from {current} to {target}",
                code="INVALID_TRANSITION",
                details={"from_state": current, "target_state": target},
            )


@dataclass(frozen=True)
class Guard:
    check: Callable[[Any], bool]
    message: str
    code: str = "GUARD_FAILED"


def require_state(*states: str, message: str | None = None) -> Guard:
    allowed = frozenset(states)
    return Guard(
        check=lambda entity, _allowed=allowed: _current_state(entity) in _allowed,
        message=message or f"Entity must be in {', '.join(sorted(allowed))}",
        code="INVALID_STATE",
    )


def _current_state(entity: Any) -> str | None:
    # Budgets and approvals use ``status``; contracts use ``state``.
    if hasattr(entity, "state"):
        return entity.state
    return getattr(entity, "status", None)


@dataclass(frozen=True)
class TransitionOutcome:
    response: Any
    replayed: bool = False


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _resolve_changes(entity: Any, changes: Changes | None) -> dict[str, Any]:
    if changes is None:
        return {}
    resolved = changes(entity) if callable(changes) else changes
    return dict(resolved)


def _apply_changes(entity: Any, lifecycle: Lifecycle, values: Mapping[str, Any]) -> None:
    model = type(entity)
    for key, value in values.items():
        if key in _ENGINE_FIELDS or key == lifecycle.state_field:
            raise ValidationError(f"Field {key!r} cannot be changed directly", code="FIELD_NOT_WRITABLE")
        if not hasattr(model, key):
            raise ValidationError(f"Unknown {lifecycle.entity_type} field {key!r}", code="UNKNOWN_FIELD")
        setattr(entity, key, value)


async def apply_transition(
    session: AsyncSession,
    lifecycle: Lifecycle,
    entity: Any,
    *,
    actor_id: str | None,
    action_key: str,
    target_state: str | None,
    guard: Guard | None = None,
    changes: Changes | None = None,
    side_effects: Iterable[SideEffect] = (),
    notify: Sequence[OutboxEvent] = (),
    expected_version: int | None = None,
) -> dict[str, Any]:
    """Mutate an already locked entity inside the caller's transaction.

    A ``target_state`` of None applies field changes without moving the
    entity through its state machine. Returns the post-transition snapshot.
    """
    if expected_version is not None and int(entity.version) != int(expected_version):
        raise ConflictError(
            f"{lifecycle.entity_type} version mismatch",
            code="VERSION_MISMATCH",
            details={"expected_version": expected_version, "current_version": entity.version},
        )
    current = getattr(entity, lifecycle.state_field)
    if target_state is not None and target_state not in lifecycle.states:
        lifecycle.check_target(current, target_state)
    # Guards carry the operation-specific message, so they run before the generic adjacency check.
    if guard is not None and not guard.check(entity):
        raise ConflictError(guard.message, code=guard.code, details={"current_state": current})
    if target_state is not None:
        lifecycle.check_target(current, target_state)

    before = lifecycle.snapshot(entity)
    _apply_changes(entity, lifecycle, _resolve_changes(entity, changes))
    if target_state is not None:
        setattr(entity, lifecycle.state_field, target_state)
    entity.version = int(entity.version) + 1
    if hasattr(entity, "updated_by"):
        entity.updated_by = actor_id
    if hasattr(entity, "updated_at"):
        entity.updated_at = _utc_now()
    await session.flush()
    after = lifecycle.snapshot(entity)

    tenant_id = getattr(entity, "tenant_id", None)
    await record_transition(
        session,
        actor_id=actor_id,
        action_key=action_key,
        entity_type=lifecycle.entity_type,
        entity_id=entity.id,
        before=before,
        after=after,
        tenant_id=tenant_id,
        from_state=current,
        to_state=target_state or current,
    )
    for event in notify:
        enqueue_event(
            session,
            event_key=event.event_key,
            tenant_id=tenant_id,
            entity_type=lifecycle.entity_type,
            entity_id=entity.id,
            payload={lifecycle.entity_type: after, **event.payload},
            audience_selectors=event.audience or lifecycle.default_audience(entity),
            created_by=actor_id,
        )
    for effect in side_effects:
        await effect(session, entity)

    logger.info(
        "transition_applied entity_type=%s entity_id=%s action_key=%s from_state=%s to_state=%s version=%s",
        lifecycle.entity_type,
        entity.id,
        action_key,
        current,
        target_state or current,
        entity.version,
    )
    return after


async def execute_action(
    session: AsyncSession,
    *,
    action_key: str,
    actor_id: str,
    work: ActionWork,
    idempotency: IdempotencyRequest | None = None,
) -> TransitionOutcome:
    """Run ``work`` as one unit of work guarded by the idempotency ledger.

    ``work`` returns the JSON response stored for replay. On any failure the
    transaction rolls back and the reservation is released for a retry.
    """
    if idempotency is not None:
        reservation = await reserve(
            session,
            key=idempotency.key,
            action_key=action_key,
            actor_id=actor_id,
            request_hash=idempotency.request_hash,
            tenant_id=idempotency.tenant_id,
        )
        if not reservation.won:
            return TransitionOutcome(response=reservation.response, replayed=True)
    try:
        async with unit_of_work(session):
            response = await work(session)
            if idempotency is not None:
                await mark_completed(session, idempotency.key, response)
    except BaseException:
        # Cancellation also frees the key so a retry is not stuck behind it.
        if idempotency is not None:
            await release(session, idempotency.key)
        raise
    return TransitionOutcome(response=response)


async def transition(
    session: AsyncSession,
    lifecycle: Lifecycle,
    *,
    entity_id: str,
    actor_id: str,
    target_state: str | None,
    action_key: str,
    guard: Guard | None = None,
    changes: Changes | None = None,
    side_effects: Iterable[SideEffect] = (),
    notify: Sequence[OutboxEvent] = (),
    idempotency: IdempotencyRequest | None = None,
    expected_version: int | None = None,
) -> TransitionOutcome:
    """Load, lock and transition one entity atomically."""

    async def _work(active: AsyncSession) -> dict[str, Any]:
        entity = await lifecycle.load_for_update(active, entity_id)
        if entity is None:
            raise NotFoundError(
                f"{lifecycle.entity_type} not found",
                details={"entity_type": lifecycle.entity_type, "entity_id": entity_id},
            )
        return await apply_transition(
            active,
            lifecycle,
            entity,
            actor_id=actor_id,
            action_key=action_key,
            target_state=target_state,
            guard=guard,
            changes=changes,
            side_effects=side_effects,
            notify=notify,
            expected_version=expected_version,
        )

    return await execute_action(
        session,
        action_key=action_key,
        actor_id=actor_id,
        work=_work,
        idempotency=idempotency,
    )
