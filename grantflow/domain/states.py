from __future__ import annotations

from enum import Enum


class BudgetStatus(str, Enum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    REVISION_REQUESTED = "REVISION_REQUESTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    LOCKED = "LOCKED"


class ContractState(str, Enum):
    DRAFT = "DRAFT"
    GENERATED = "GENERATED"
    SUBMITTED_FOR_APPROVAL = "SUBMITTED_FOR_APPROVAL"
    APPROVED = "APPROVED"
    SENT_FOR_SIGN = "SENT_FOR_SIGN"
    SIGNED = "SIGNED"
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"


class ApprovalStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class ProviderKind(str, Enum):
    INTERNAL = "internal"
    EXTERNAL = "external"


class ApprovalDecision(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"


class OutboxStatus(str, Enum):
    PENDING = "PENDING"
    DONE = "DONE"
    FAILED = "FAILED"


class JobState(str, Enum):
    QUEUED = "QUEUED"
    SENDING = "SENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class Channel(str, Enum):
    IN_APP = "in_app"
    EMAIL = "email"


# Entity type keys shared by audit rows, approvals, policies and outbox events.
ENTITY_PARTNER_BUDGET = "partner_budget"
ENTITY_CONTRACT = "contract"
ENTITY_APPROVAL = "approval"

APPROVAL_TERMINAL_STATUSES = frozenset(
    {ApprovalStatus.APPROVED.value, ApprovalStatus.REJECTED.value, ApprovalStatus.CANCELLED.value}
)
