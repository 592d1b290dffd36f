"""init

Revision ID: 0001_init
Revises: 
Create Date: 2026-10-17 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now())


def _updated_at() -> sa.Column:
    return sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now())


def upgrade() -> None:
    op.create_table(
        "grant_users",
        sa.Column("id", sa.String(), primary_key=True),
        # Avoid index=True here because we create explicit indexes below.
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("organization_id", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("locale", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
    )
    op.create_index("ix_grant_users_tenant_id", "grant_users", ["tenant_id"])
    op.create_index("ix_grant_users_tenant_role", "grant_users", ["tenant_id", "role"])
    op.create_index("ix_grant_users_tenant_org", "grant_users", ["tenant_id", "organization_id"])

    op.create_table(
        "partner_budgets",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("partner_id", sa.String(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("ceiling_total", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("rules_json", postgresql.JSONB(), nullable=True),
        sa.Column("lines_json", postgresql.JSONB(), nullable=True),
        sa.Column("substatus_json", postgresql.JSONB(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("updated_by", sa.String(), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_partner_budgets_tenant_id", "partner_budgets", ["tenant_id"])
    op.create_index("ix_partner_budgets_project_id", "partner_budgets", ["project_id"])
    op.create_index("ix_partner_budgets_tenant_status", "partner_budgets", ["tenant_id", "status"])
    op.create_index("ix_partner_budgets_partner", "partner_budgets", ["partner_id"])

    op.create_table(
        "contracts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("partner_id", sa.String(), nullable=False),
        sa.Column("partner_budget_id", sa.String(), sa.ForeignKey("partner_budgets.id"), nullable=False),
        sa.Column("template_id", sa.String(), nullable=False),
        sa.Column("number", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("state", sa.String(), nullable=False),
        sa.Column("substatus_json", postgresql.JSONB(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("generated_docx_key", sa.String(), nullable=True),
        sa.Column("approved_docx_key", sa.String(), nullable=True),
        sa.Column("approval_provider", sa.String(), nullable=True),
        sa.Column("approval_ref", sa.String(), nullable=True),
        sa.Column("envelope_id", sa.String(), nullable=True),
        sa.Column("signed_pdf_key", sa.String(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("updated_by", sa.String(), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_contracts_tenant_id", "contracts", ["tenant_id"])
    op.create_index("ix_contracts_partner_budget_id", "contracts", ["partner_budget_id"])
    op.create_index("ix_contracts_tenant_state", "contracts", ["tenant_id", "state"])

    op.create_table(
        "disbursements",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("budget_id", sa.String(), sa.ForeignKey("partner_budgets.id"), nullable=False),
        sa.Column("tranche_number", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("planned_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="planned"),
        sa.Column("created_by", sa.String(), nullable=True),
        _created_at(),
        sa.UniqueConstraint("budget_id", "tranche_number", name="uq_disbursements_tranche"),
    )
    op.create_index("ix_disbursements_budget_id", "disbursements", ["budget_id"])

    op.create_table(
        "approval_policies",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("scope_id", sa.String(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("config_json", postgresql.JSONB(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        sa.UniqueConstraint("entity_type", "scope_id", "version", name="uq_approval_policies_version"),
    )
    op.create_index(
        "ix_approval_policies_lookup", "approval_policies", ["entity_type", "scope_id", "is_active"]
    )

    op.create_table(
        "approvals",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("policy_id", sa.String(), sa.ForeignKey("approval_policies.id"), nullable=False),
        sa.Column("policy_version", sa.Integer(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("approval_ref", sa.String(), nullable=False, unique=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("step", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("total_steps", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("assignee_role", sa.String(), nullable=True),
        sa.Column("amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("requested_by", sa.String(), nullable=True),
        sa.Column("decided_by", sa.String(), nullable=True),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("history_json", postgresql.JSONB(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_approvals_tenant_id", "approvals", ["tenant_id"])
    op.create_index("ix_approvals_entity", "approvals", ["entity_type", "entity_id"])
    op.create_index("ix_approvals_status_role", "approvals", ["status", "assignee_role"])

    op.create_table(
        "idempotency_records",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("idem_key", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("action_key", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=False),
        sa.Column("request_hash", sa.String(), nullable=False),
        sa.Column("response_json", postgresql.JSONB(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("idem_key", name="uq_idempotency_records_key"),
    )
    op.create_index("ix_idempotency_records_tenant_id", "idempotency_records", ["tenant_id"])
    op.create_index("ix_idempotency_records_expires_at", "idempotency_records", ["expires_at"])

    op.create_table(
        "audit_log",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("action_key", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("from_state", sa.String(), nullable=True),
        sa.Column("to_state", sa.String(), nullable=True),
        sa.Column("before_json", postgresql.JSONB(), nullable=True),
        sa.Column("after_json", postgresql.JSONB(), nullable=True),
        sa.Column("diff_json", postgresql.JSONB(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_audit_log_occurred_at", "audit_log", ["occurred_at"])
    op.create_index("ix_audit_log_tenant_id", "audit_log", ["tenant_id"])
    op.create_index("ix_audit_log_action_key", "audit_log", ["action_key"])
    op.create_index("ix_audit_log_entity", "audit_log", ["entity_type", "entity_id"])

    op.create_table(
        "notif_outbox",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("event_key", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=True),
        sa.Column("entity_id", sa.String(), nullable=True),
        sa.Column("payload_json", postgresql.JSONB(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="PENDING"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index("ix_notif_outbox_tenant_id", "notif_outbox", ["tenant_id"])
    op.create_index("ix_notif_outbox_event_key", "notif_outbox", ["event_key"])
    op.create_index("ix_notif_outbox_status_created", "notif_outbox", ["status", "created_at"])

    op.create_table(
        "notif_jobs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("outbox_id", sa.String(), sa.ForeignKey("notif_outbox.id"), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("event_key", sa.String(), nullable=False),
        sa.Column("recipient_user_id", sa.String(), nullable=False),
        sa.Column("email_to", sa.String(), nullable=True),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("lang", sa.String(), nullable=False, server_default="en"),
        sa.Column("subject", sa.Text(), nullable=True),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("state", sa.String(), nullable=False, server_default="QUEUED"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("provider_response_json", postgresql.JSONB(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint(
            "outbox_id", "recipient_user_id", "channel", name="uq_notif_jobs_recipient_channel"
        ),
    )
    op.create_index("ix_notif_jobs_outbox_id", "notif_jobs", ["outbox_id"])
    op.create_index("ix_notif_jobs_recipient_user_id", "notif_jobs", ["recipient_user_id"])
    op.create_index("ix_notif_jobs_state_created", "notif_jobs", ["state", "created_at"])

    op.create_table(
        "notif_templates",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("event_key", sa.String(), nullable=False),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("lang", sa.String(), nullable=False, server_default="en"),
        sa.Column("subject_tpl", sa.Text(), nullable=True),
        sa.Column("body_tpl", sa.Text(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
    )
    op.create_index(
        "ix_notif_templates_lookup", "notif_templates", ["event_key", "channel", "lang", "tenant_id"]
    )

    op.create_table(
        "notif_preferences",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("event_key", sa.String(), nullable=False),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        sa.UniqueConstraint(
            "user_id", "event_key", "channel", name="uq_notif_preferences_user_event_channel"
        ),
    )
    op.create_index("ix_notif_preferences_user_id", "notif_preferences", ["user_id"])

    op.create_table(
        "notif_inbox",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=True),
        sa.Column("event_key", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("link_url", sa.String(), nullable=True),
        sa.Column("unread", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
    )
    op.create_index("ix_notif_inbox_user_unread", "notif_inbox", ["user_id", "unread"])

    # Audit rows are append-only at the database level as well as in the ORM.
    op.execute(
        """
        CREATE OR REPLACE FUNCTION audit_log_block_mutation() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'audit_log rows are immutable';
        END;
        $$ LANGUAGE plpgsql
        """
    )
    op.execute(
        """
        CREATE TRIGGER audit_log_no_update
        BEFORE UPDATE ON audit_log
        FOR EACH ROW EXECUTE FUNCTION audit_log_block_mutation()
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS audit_log_no_update ON audit_log")
    op.execute("DROP FUNCTION IF EXISTS audit_log_block_mutation()")
    op.drop_index("ix_notif_inbox_user_unread", table_name="notif_inbox")
    op.drop_table("notif_inbox")
    op.drop_index("ix_notif_preferences_user_id", table_name="notif_preferences")
    op.drop_table("notif_preferences")
    op.drop_index("ix_notif_templates_lookup", table_name="notif_templates")
    op.drop_table("notif_templates")
    op.drop_index("ix_notif_jobs_state_created", table_name="notif_jobs")
    op.drop_index("ix_notif_jobs_recipient_user_id", table_name="notif_jobs")
    op.drop_index("ix_notif_jobs_outbox_id", table_name="notif_jobs")
    op.drop_table("notif_jobs")
    op.drop_index("ix_notif_outbox_status_created", table_name="notif_outbox")
    op.drop_index("ix_notif_outbox_event_key", table_name="notif_outbox")
    op.drop_index("ix_notif_outbox_tenant_id", table_name="notif_outbox")
    op.drop_table("notif_outbox")
    op.drop_index("ix_audit_log_entity", table_name="audit_log")
    op.drop_index("ix_audit_log_action_key", table_name="audit_log")
    op.drop_index("ix_audit_log_tenant_id", table_name="audit_log")
    op.drop_index("ix_audit_log_occurred_at", table_name="audit_log")
    op.drop_table("audit_log")
    op.drop_index("ix_idempotency_records_expires_at", table_name="idempotency_records")
    op.drop_index("ix_idempotency_records_tenant_id", table_name="idempotency_records")
    op.drop_table("idempotency_records")
    op.drop_index("ix_approvals_status_role", table_name="approvals")
    op.drop_index("ix_approvals_entity", table_name="approvals")
    op.drop_index("ix_approvals_tenant_id", table_name="approvals")
    op.drop_table("approvals")
    op.drop_index("ix_approval_policies_lookup", table_name="approval_policies")
    op.drop_table("approval_policies")
    op.drop_index("ix_disbursements_budget_id", table_name="disbursements")
    op.drop_table("disbursements")
    op.drop_index("ix_contracts_tenant_state", table_name="contracts")
    op.drop_index("ix_contracts_partner_budget_id", table_name="contracts")
    op.drop_index("ix_contracts_tenant_id", table_name="contracts")
    op.drop_table("contracts")
    op.drop_index("ix_partner_budgets_partner", table_name="partner_budgets")
    op.drop_index("ix_partner_budgets_tenant_status", table_name="partner_budgets")
    op.drop_index("ix_partner_budgets_project_id", table_name="partner_budgets")
    op.drop_index("ix_partner_budgets_tenant_id", table_name="partner_budgets")
    op.drop_table("partner_budgets")
    op.drop_index("ix_grant_users_tenant_org", table_name="grant_users")
    op.drop_index("ix_grant_users_tenant_role", table_name="grant_users")
    op.drop_index("ix_grant_users_tenant_id", table_name="grant_users")
    op.drop_table("grant_users")
