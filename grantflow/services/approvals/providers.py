from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from functools import lru_cache
import logging
from typing import Any, Mapping, Protocol
from uuid import uuid4

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from grantflow.core.config import get_settings
from grantflow.core.errors import ConflictError, ExternalProviderError
from grantflow.domain.models import Approval
from grantflow.domain.snapshots import to_jsonable
from grantflow.domain.states import ApprovalDecision, ApprovalStatus, ProviderKind
from grantflow.persistence.repos import approvals as approvals_repo
from grantflow.services.approvals.policies import PolicySnapshot


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubmissionRequest:
    entity_type: str
    entity_id: str
    tenant_id: str
    requested_by: str | None
    amount: Decimal | None = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StepOutcome:
    """How a decision moves an approval.

    ``target_state`` None keeps the approval PENDING and only applies
    ``changes`` (step advance). ``apply`` names the entity applier to run.
    """

    target_state: str | None
    changes: dict[str, Any]
    apply: ApprovalDecision | None = None
    event_key: str | None = None


class ApprovalProvider(Protocol):
    kind: ProviderKind

    async def submit(self, session: AsyncSession, policy: PolicySnapshot, request: SubmissionRequest) -> Approval:
        ...

    async def approve(
        self, approval: Approval, policy: PolicySnapshot, *, actor_id: str, comment: str | None
    ) -> StepOutcome:
        ...

    async def reject(
        self, approval: Approval, policy: PolicySnapshot, *, actor_id: str, comment: str | None
    ) -> StepOutcome:
        ...

    async def cancel(
        self, approval: Approval, policy: PolicySnapshot, *, actor_id: str, reason: str | None
    ) -> StepOutcome:
        ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _history_entry(approval: Approval, *, decision: str, actor_id: str, comment: str | None) -> list[dict[str, Any]]:
    history = list(approval.history_json or [])
    history.append(
        {
            "step": approval.step,
            "decision": decision,
            "actor_id": actor_id,
            "comment": comment,
            "at": _utc_now().isoformat(),
        }
    )
    return history


def _new_approval(
    session: AsyncSession,
    policy: PolicySnapshot,
    request: SubmissionRequest,
    *,
    approval_ref: str,
    status: str,
    total_steps: int,
    assignee_role: str | None,
) -> Approval:
    now = _utc_now()
    return approvals_repo.create_approval(
        session,
        id=uuid4().hex,
        tenant_id=request.tenant_id,
        policy_id=policy.policy_id,
        policy_version=policy.version,
        entity_type=request.entity_type,
        entity_id=request.entity_id,
        provider=policy.provider.value,
        approval_ref=approval_ref,
        status=status,
        step=1,
        total_steps=total_steps,
        assignee_role=assignee_role,
        amount=request.amount,
        requested_by=request.requested_by,
        decided_by=None,
        decided_at=now if status != ApprovalStatus.PENDING.value else None,
        history_json=[],
        version=1,
        created_at=now,
        updated_at=now,
    )


class InternalApprovalProvider:
    """Role-based multi-step approvals decided inside this service."""

    kind = ProviderKind.INTERNAL

    async def submit(self, session: AsyncSession, policy: PolicySnapshot, request: SubmissionRequest) -> Approval:
        if policy.auto_approves(request.amount):
            approval = _new_approval(
                session,
                policy,
                request,
                approval_ref=f"auto-{uuid4().hex}",
                status=ApprovalStatus.APPROVED.value,
                total_steps=1,
                assignee_role=None,
            )
            approval.decided_by = request.requested_by
            approval.comment = "auto-approved"
            logger.info(
                "approval_auto_approved entity_type=%s entity_id=%s amount=%s threshold=%s",
                request.entity_type,
                request.entity_id,
                request.amount,
                policy.auto_approve_amount_lte,
            )
        else:
            approval = _new_approval(
                session,
                policy,
                request,
                approval_ref=f"int-{uuid4().hex}",
                status=ApprovalStatus.PENDING.value,
                total_steps=policy.total_steps,
                assignee_role=policy.role_for_step(1),
            )
        await session.flush()
        return approval

    async def approve(
        self, approval: Approval, policy: PolicySnapshot, *, actor_id: str, comment: str | None
    ) -> StepOutcome:
        history = _history_entry(
            approval, decision=ApprovalDecision.APPROVE.value, actor_id=actor_id, comment=comment
        )
        if approval.step < approval.total_steps:
            next_step = approval.step + 1
            return StepOutcome(
                target_state=None,
                changes={
                    "step": next_step,
                    "assignee_role": policy.role_for_step(next_step) or approval.assignee_role,
                    "comment": comment,
                    "history_json": history,
                },
                event_key="approval.requested",
            )
        return StepOutcome(
            target_state=ApprovalStatus.APPROVED.value,
            changes={
                "decided_by": actor_id,
                "decided_at": _utc_now(),
                "comment": comment,
                "history_json": history,
            },
            apply=ApprovalDecision.APPROVE,
            event_key="approval.approved",
        )

    async def reject(
        self, approval: Approval, policy: PolicySnapshot, *, actor_id: str, comment: str | None
    ) -> StepOutcome:
        return StepOutcome(
            target_state=ApprovalStatus.REJECTED.value,
            changes={
                "decided_by": actor_id,
                "decided_at": _utc_now(),
                "comment": comment,
                "history_json": _history_entry(
                    approval, decision=ApprovalDecision.REJECT.value, actor_id=actor_id, comment=comment
                ),
            },
            apply=ApprovalDecision.REJECT,
            event_key="approval.rejected",
        )

    async def cancel(
        self, approval: Approval, policy: PolicySnapshot, *, actor_id: str, reason: str | None
    ) -> StepOutcome:
        return StepOutcome(
            target_state=ApprovalStatus.CANCELLED.value,
            changes={
                "decided_by": actor_id,
                "decided_at": _utc_now(),
                "comment": reason,
                "history_json": _history_entry(approval, decision="CANCEL", actor_id=actor_id, comment=reason),
            },
            event_key="approval.cancelled",
        )


class ExternalApprovalProvider:
    """Delegates the decision to a remote approval system over HTTP."""

    kind = ProviderKind.EXTERNAL

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport

    async def _post(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        timeout_s = max(0.2, get_settings().ext_call_timeout_ms / 1000.0)
        try:
            async with httpx.AsyncClient(timeout=timeout_s, transport=self._transport) as client:
                response = await client.post(url, json=to_jsonable(body))
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("external_approval_call_failed url=%s error=%s", url, exc)
            raise ExternalProviderError(
                "External approval provider call failed",
                details={"url": url, "error": str(exc)},
            ) from exc
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as exc:
            raise ExternalProviderError("External approval provider returned invalid JSON") from exc
        return data if isinstance(data, dict) else {}

    async def submit(self, session: AsyncSession, policy: PolicySnapshot, request: SubmissionRequest) -> Approval:
        if not policy.endpoint:
            raise ExternalProviderError("External approval policy has no endpoint")
        data = await self._post(
            policy.endpoint,
            {
                "entity_type": request.entity_type,
                "entity_id": request.entity_id,
                "tenant_id": request.tenant_id,
                "amount": request.amount,
                "requested_by": request.requested_by,
                "payload": request.payload,
            },
        )
        reference = data.get("reference") or data.get("approval_ref") or data.get("id")
        if not reference:
            raise ExternalProviderError("External approval provider returned no reference")
        approval = _new_approval(
            session,
            policy,
            request,
            approval_ref=str(reference),
            status=ApprovalStatus.PENDING.value,
            total_steps=1,
            assignee_role=None,
        )
        await session.flush()
        logger.info(
            "approval_submitted_external entity_type=%s entity_id=%s approval_ref=%s",
            request.entity_type,
            request.entity_id,
            reference,
        )
        return approval

    async def approve(
        self, approval: Approval, policy: PolicySnapshot, *, actor_id: str, comment: str | None
    ) -> StepOutcome:
        raise ConflictError(
            "External approvals are decided by the remote provider",
            code="EXTERNAL_DECISION_UNSUPPORTED",
        )

    async def reject(
        self, approval: Approval, policy: PolicySnapshot, *, actor_id: str, comment: str | None
    ) -> StepOutcome:
        raise ConflictError(
            "External approvals are decided by the remote provider",
            code="EXTERNAL_DECISION_UNSUPPORTED",
        )

    async def cancel(
        self, approval: Approval, policy: PolicySnapshot, *, actor_id: str, reason: str | None
    ) -> StepOutcome:
        endpoint = policy.config.get("cancel_endpoint") or f"{(policy.endpoint or '').rstrip('/')}/cancel"
        await self._post(endpoint, {"reference": approval.approval_ref, "reason": reason, "actor_id": actor_id})
        return StepOutcome(
            target_state=ApprovalStatus.CANCELLED.value,
            changes={
                "decided_by": actor_id,
                "decided_at": _utc_now(),
                "comment": reason,
                "history_json": _history_entry(approval, decision="CANCEL", actor_id=actor_id, comment=reason),
            },
            event_key="approval.cancelled",
        )


ProviderRegistry = Mapping[ProviderKind, ApprovalProvider]


@lru_cache
def default_providers() -> ProviderRegistry:
    return {
        ProviderKind.INTERNAL: InternalApprovalProvider(),
        ProviderKind.EXTERNAL: ExternalApprovalProvider(),
    }


def get_provider(kind: ProviderKind | str, providers: ProviderRegistry | None = None) -> ApprovalProvider:
    registry = providers or default_providers()
    return registry[ProviderKind(kind)]
