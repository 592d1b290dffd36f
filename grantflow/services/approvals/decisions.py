from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from grantflow.core.errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from grantflow.domain.models import Approval
from grantflow.domain.snapshots import approval_snapshot
from grantflow.domain.states import (
    APPROVAL_TERMINAL_STATUSES,
    ApprovalDecision,
    ApprovalStatus,
)
from grantflow.persistence.repos import approvals as approvals_repo
from grantflow.services.approvals.appliers import get_applier
from grantflow.services.approvals.policies import PolicySnapshot, snapshot_from_row
from grantflow.services.approvals.providers import ProviderRegistry, StepOutcome, SubmissionRequest, get_provider
from grantflow.services.audit import record_transition
from grantflow.services.idempotency import IdempotencyRequest
from grantflow.services.lifecycles import APPROVAL_LIFECYCLE
from grantflow.services.notifications.outbox import OutboxEvent, audience, enqueue_event
from grantflow.services.workflow import TransitionOutcome, apply_transition, execute_action


logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"


async def submit_approval(
    session: AsyncSession,
    *,
    policy: PolicySnapshot,
    request: SubmissionRequest,
    providers: ProviderRegistry | None = None,
) -> Approval:
    """Open an approval inside the caller's transaction.

    Auto-approved submissions run the entity applier immediately, so the
    domain effect commits together with the caller's transition.
    """
    provider = get_provider(policy.provider, providers)
    approval = await provider.submit(session, policy, request)
    after = approval_snapshot(approval)
    await record_transition(
        session,
        actor_id=request.requested_by,
        action_key="approval.submit",
        entity_type=APPROVAL_LIFECYCLE.entity_type,
        entity_id=approval.id,
        before=None,
        after=after,
        tenant_id=approval.tenant_id,
        from_state=None,
        to_state=approval.status,
    )
    if approval.status == ApprovalStatus.APPROVED.value:
        await get_applier(approval.entity_type).approve(session, approval, request.requested_by)
        event_key = "approval.approved"
    else:
        event_key = "approval.requested"
    enqueue_event(
        session,
        event_key=event_key,
        tenant_id=approval.tenant_id,
        entity_type=APPROVAL_LIFECYCLE.entity_type,
        entity_id=approval.id,
        payload={"approval": after},
        audience_selectors=APPROVAL_LIFECYCLE.default_audience(approval),
        created_by=request.requested_by,
    )
    logger.info(
        "approval_submitted approval_id=%s entity_type=%s entity_id=%s status=%s provider=%s",
        approval.id,
        approval.entity_type,
        approval.entity_id,
        approval.status,
        approval.provider,
    )
    return approval


async def _load_policy(session: AsyncSession, approval: Approval) -> PolicySnapshot:
    # Decisions follow the policy version pinned at submit time, not the latest one.
    row = await approvals_repo.get_policy(session, approval.policy_id)
    if row is None:
        raise NotFoundError("Approval policy not found", details={"policy_id": approval.policy_id})
    return snapshot_from_row(row)


def _check_role(approval: Approval, actor_role: str | None) -> None:
    if actor_role == ADMIN_ROLE:
        return
    if approval.assignee_role is None or actor_role != approval.assignee_role:
        raise PermissionDeniedError(
            "Actor role cannot decide this approval step",
            details={"assignee_role": approval.assignee_role, "actor_role": actor_role},
        )


async def _lock_open_approval(session: AsyncSession, approval_id: str) -> Approval:
    approval = await approvals_repo.get_approval_for_update(session, approval_id)
    if approval is None:
        raise NotFoundError("Approval not found", details={"approval_id": approval_id})
    if approval.status in APPROVAL_TERMINAL_STATUSES:
        raise ConflictError(
            f"Approval already {approval.status}",
            code="APPROVAL_FINALIZED",
            details={"approval_id": approval_id, "status": approval.status},
        )
    return approval


async def decide_approval(
    session: AsyncSession,
    *,
    approval_id: str,
    decision: ApprovalDecision | str,
    actor_id: str,
    actor_role: str | None,
    comment: str | None = None,
    idempotency: IdempotencyRequest | None = None,
    expected_version: int | None = None,
    providers: ProviderRegistry | None = None,
) -> TransitionOutcome:
    """Approve or reject the current step of a pending approval."""
    raw = decision.value if isinstance(decision, ApprovalDecision) else str(decision)
    try:
        resolved = ApprovalDecision(raw.upper())
    except ValueError as exc:
        raise ValidationError("decision must be APPROVE or REJECT", code="INVALID_DECISION") from exc

    async def _work(active: AsyncSession) -> dict[str, Any]:
        approval = await _lock_open_approval(active, approval_id)
        _check_role(approval, actor_role)
        policy = await _load_policy(active, approval)
        provider = get_provider(approval.provider, providers)
        if resolved == ApprovalDecision.APPROVE:
            outcome = await provider.approve(approval, policy, actor_id=actor_id, comment=comment)
        else:
            outcome = await provider.reject(approval, policy, actor_id=actor_id, comment=comment)

        side_effects = []
        if outcome.apply is not None:
            applier = get_applier(approval.entity_type)
            apply_fn = applier.approve if outcome.apply == ApprovalDecision.APPROVE else applier.reject

            async def _apply(inner: AsyncSession, entity: Approval) -> None:
                await apply_fn(inner, entity, actor_id)

            side_effects.append(_apply)

        await apply_transition(
            active,
            APPROVAL_LIFECYCLE,
            approval,
            actor_id=actor_id,
            action_key=f"approval.{resolved.value.lower()}",
            target_state=outcome.target_state,
            changes=outcome.changes,
            side_effects=side_effects,
            notify=[OutboxEvent(outcome.event_key, audience=_decision_audience(approval, outcome))]
            if outcome.event_key
            else [],
            expected_version=expected_version,
        )
        return {"approval": approval_snapshot(approval)}

    outcome = await execute_action(
        session,
        action_key=f"approval.{resolved.value.lower()}",
        actor_id=actor_id,
        work=_work,
        idempotency=idempotency,
    )
    logger.info(
        "approval_decided approval_id=%s decision=%s actor_id=%s replayed=%s",
        approval_id,
        resolved.value,
        actor_id,
        outcome.replayed,
    )
    return outcome


def _decision_audience(approval: Approval, outcome: StepOutcome) -> dict[str, list[str]]:
    # The next step's role hears about new work; the requester hears about the result.
    if outcome.event_key == "approval.requested":
        role = outcome.changes.get("assignee_role")
        return audience(roles=[role] if role else [])
    return audience(user_ids=[approval.requested_by] if approval.requested_by else [])


async def cancel_approval(
    session: AsyncSession,
    approval: Approval,
    *,
    actor_id: str,
    reason: str | None,
    providers: ProviderRegistry | None = None,
) -> dict[str, Any]:
    """Cancel a pending approval inside the caller's transaction."""
    if approval.status in APPROVAL_TERMINAL_STATUSES:
        raise ConflictError(
            f"Approval already {approval.status}",
            code="APPROVAL_FINALIZED",
            details={"approval_id": approval.id, "status": approval.status},
        )
    policy = await _load_policy(session, approval)
    outcome = await get_provider(approval.provider, providers).cancel(
        approval, policy, actor_id=actor_id, reason=reason
    )
    return await apply_transition(
        session,
        APPROVAL_LIFECYCLE,
        approval,
        actor_id=actor_id,
        action_key="approval.cancel",
        target_state=outcome.target_state,
        changes=outcome.changes,
        notify=[OutboxEvent(outcome.event_key, audience=_decision_audience(approval, outcome))]
        if outcome.event_key
        else [],
    )


async def cancel_pending_for_entity(
    session: AsyncSession,
    *,
    entity_type: str,
    entity_id: str,
    actor_id: str,
    reason: str | None,
    providers: ProviderRegistry | None = None,
) -> Approval | None:
    pending = await approvals_repo.find_pending_for_entity(session, entity_type=entity_type, entity_id=entity_id)
    if pending is None:
        return None
    locked = await approvals_repo.get_approval_for_update(session, pending.id)
    if locked is None:
        return None
    await cancel_approval(session, locked, actor_id=actor_id, reason=reason, providers=providers)
    return locked


async def cancel_approval_by_id(
    session: AsyncSession,
    *,
    approval_id: str,
    actor_id: str,
    actor_role: str | None,
    reason: str | None = None,
    idempotency: IdempotencyRequest | None = None,
    providers: ProviderRegistry | None = None,
) -> TransitionOutcome:
    """Withdraw a pending approval; only admins or the requester may cancel."""

    async def _work(active: AsyncSession) -> dict[str, Any]:
        approval = await _lock_open_approval(active, approval_id)
        if actor_role != ADMIN_ROLE and actor_id != approval.requested_by:
            raise PermissionDeniedError("Only the requester or an admin can cancel an approval")
        await cancel_approval(active, approval, actor_id=actor_id, reason=reason, providers=providers)
        return {"approval": approval_snapshot(approval)}

    return await execute_action(
        session,
        action_key="approval.cancel",
        actor_id=actor_id,
        work=_work,
        idempotency=idempotency,
    )
