from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Use JSONB on Postgres and plain JSON elsewhere so the schema also runs on SQLite test databases.
JSONType = JSON().with_variant(JSONB(), "postgresql")
Money = Numeric(14, 2)


class Base(DeclarativeBase):
    pass


class GrantUser(Base):
    __tablename__ = "grant_users"
    __table_args__ = (
        Index("ix_grant_users_tenant_role", "tenant_id", "role"),
        Index("ix_grant_users_tenant_org", "tenant_id", "organization_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    # Partner users carry their organization; staff users usually do not.
    organization_id: Mapped[str | None] = mapped_column(String, nullable=True)
    role: Mapped[str] = mapped_column(String)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    locale: Mapped[str | None] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PartnerBudget(Base):
    __tablename__ = "partner_budgets"
    __table_args__ = (
        Index("ix_partner_budgets_tenant_status", "tenant_id", "status"),
        Index("ix_partner_budgets_partner", "partner_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    project_id: Mapped[str] = mapped_column(String, index=True)
    partner_id: Mapped[str] = mapped_column(String)
    currency: Mapped[str] = mapped_column(String(3))
    ceiling_total: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    status: Mapped[str] = mapped_column(String)
    # Policy parameters such as disbursement plans and contract template overrides.
    rules_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    lines_json: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType, default=list)
    # Workflow annotations (revision comments, approval refs) that are not first-class columns.
    substatus_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    # Optimistic concurrency token exposed to clients as an ETag.
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Contract(Base):
    __tablename__ = "contracts"
    __table_args__ = (Index("ix_contracts_tenant_state", "tenant_id", "state"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    project_id: Mapped[str] = mapped_column(String)
    partner_id: Mapped[str] = mapped_column(String)
    partner_budget_id: Mapped[str] = mapped_column(String, ForeignKey("partner_budgets.id"), index=True)
    template_id: Mapped[str] = mapped_column(String)
    number: Mapped[str] = mapped_column(String)
    title: Mapped[str] = mapped_column(String)
    state: Mapped[str] = mapped_column(String)
    substatus_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    # Artifact references produced along the lifecycle; storage itself is external.
    generated_docx_key: Mapped[str | None] = mapped_column(String, nullable=True)
    approved_docx_key: Mapped[str | None] = mapped_column(String, nullable=True)
    approval_provider: Mapped[str | None] = mapped_column(String, nullable=True)
    approval_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    envelope_id: Mapped[str | None] = mapped_column(String, nullable=True)
    signed_pdf_key: Mapped[str | None] = mapped_column(String, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Disbursement(Base):
    __tablename__ = "disbursements"
    __table_args__ = (UniqueConstraint("budget_id", "tranche_number", name="uq_disbursements_tranche"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    budget_id: Mapped[str] = mapped_column(String, ForeignKey("partner_budgets.id"), index=True)
    tranche_number: Mapped[int] = mapped_column(Integer)
    title: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Money)
    currency: Mapped[str] = mapped_column(String(3))
    planned_date: Mapped[date] = mapped_column(Date)
    status: Mapped[str] = mapped_column(String, default="planned")
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ApprovalPolicy(Base):
    __tablename__ = "approval_policies"
    __table_args__ = (
        UniqueConstraint("entity_type", "scope_id", "version", name="uq_approval_policies_version"),
        Index("ix_approval_policies_lookup", "entity_type", "scope_id", "is_active"),
    )

    # Policies are immutable per version; edits insert a new row with version + 1.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    entity_type: Mapped[str] = mapped_column(String)
    # Null scope marks the default policy for the entity type.
    scope_id: Mapped[str | None] = mapped_column(String, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    provider: Mapped[str] = mapped_column(String)
    config_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Approval(Base):
    __tablename__ = "approvals"
    __table_args__ = (
        Index("ix_approvals_entity", "entity_type", "entity_id"),
        Index("ix_approvals_status_role", "status", "assignee_role"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    policy_id: Mapped[str] = mapped_column(String, ForeignKey("approval_policies.id"))
    policy_version: Mapped[int] = mapped_column(Integer)
    entity_type: Mapped[str] = mapped_column(String)
    entity_id: Mapped[str] = mapped_column(String)
    provider: Mapped[str] = mapped_column(String)
    approval_ref: Mapped[str] = mapped_column(String, unique=True)
    status: Mapped[str] = mapped_column(String)
    step: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    total_steps: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    assignee_role: Mapped[str | None] = mapped_column(String, nullable=True)
    amount: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    requested_by: Mapped[str | None] = mapped_column(String, nullable=True)
    decided_by: Mapped[str | None] = mapped_column(String, nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Append-only list of step decisions for reviewers; the audit log remains authoritative.
    history_json: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType, default=list)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"
    __table_args__ = (
        # The unique key is what serializes concurrent reservations of the same key.
        UniqueConstraint("idem_key", name="uq_idempotency_records_key"),
        Index("ix_idempotency_records_expires_at", "expires_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    idem_key: Mapped[str] = mapped_column(String)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    action_key: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str] = mapped_column(String)
    request_hash: Mapped[str] = mapped_column(String)
    # Null until the owning transition commits; replay-only afterwards.
    response_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class AuditLogEntry(Base):
    __tablename__ = "audit_log"
    __table_args__ = (Index("ix_audit_log_entity", "entity_type", "entity_id"),)

    # Use a monotonic numeric id for efficient pagination and ordering.
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    action_key: Mapped[str] = mapped_column(String, index=True)
    entity_type: Mapped[str] = mapped_column(String)
    entity_id: Mapped[str] = mapped_column(String)
    from_state: Mapped[str | None] = mapped_column(String, nullable=True)
    to_state: Mapped[str | None] = mapped_column(String, nullable=True)
    before_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    after_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    diff_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class NotificationOutbox(Base):
    __tablename__ = "notif_outbox"
    __table_args__ = (Index("ix_notif_outbox_status_created", "status", "created_at"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    event_key: Mapped[str] = mapped_column(String, index=True)
    entity_type: Mapped[str | None] = mapped_column(String, nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String, nullable=True)
    payload_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="PENDING")
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class NotificationJob(Base):
    __tablename__ = "notif_jobs"
    __table_args__ = (
        # Re-running fan-out for the same outbox row must not duplicate deliveries.
        UniqueConstraint("outbox_id", "recipient_user_id", "channel", name="uq_notif_jobs_recipient_channel"),
        Index("ix_notif_jobs_state_created", "state", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    outbox_id: Mapped[str] = mapped_column(String, ForeignKey("notif_outbox.id"), index=True)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_key: Mapped[str] = mapped_column(String)
    recipient_user_id: Mapped[str] = mapped_column(String, index=True)
    email_to: Mapped[str | None] = mapped_column(String, nullable=True)
    channel: Mapped[str] = mapped_column(String)
    lang: Mapped[str] = mapped_column(String, default="en")
    subject: Mapped[str | None] = mapped_column(Text, nullable=True)
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    state: Mapped[str] = mapped_column(String, default="QUEUED")
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Set on FAILED jobs that may be retried; null means the failure is terminal.
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_response_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class NotificationTemplate(Base):
    __tablename__ = "notif_templates"
    __table_args__ = (
        Index("ix_notif_templates_lookup", "event_key", "channel", "lang", "tenant_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Null tenant marks the global default that tenant templates override.
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_key: Mapped[str] = mapped_column(String)
    channel: Mapped[str] = mapped_column(String)
    lang: Mapped[str] = mapped_column(String, default="en")
    subject_tpl: Mapped[str | None] = mapped_column(Text, nullable=True)
    body_tpl: Mapped[str] = mapped_column(Text)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class NotificationPreference(Base):
    __tablename__ = "notif_preferences"
    __table_args__ = (
        UniqueConstraint("user_id", "event_key", "channel", name="uq_notif_preferences_user_event_channel"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    # "*" applies the preference to every event key.
    event_key: Mapped[str] = mapped_column(String)
    channel: Mapped[str] = mapped_column(String)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class NotificationInboxItem(Base):
    __tablename__ = "notif_inbox"
    __table_args__ = (Index("ix_notif_inbox_user_unread", "user_id", "unread"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    user_id: Mapped[str] = mapped_column(String)
    job_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_key: Mapped[str] = mapped_column(String)
    title: Mapped[str] = mapped_column(String)
    body: Mapped[str] = mapped_column(Text)
    link_url: Mapped[str | None] = mapped_column(String, nullable=True)
    unread: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
