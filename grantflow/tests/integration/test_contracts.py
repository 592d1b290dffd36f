from __future__ import annotations

import pytest
from sqlalchemy import func, select

from grantflow.core.errors import ConflictError, ValidationError
from grantflow.domain.models import Approval, Contract, PartnerBudget
from grantflow.persistence.db import SessionLocal
from grantflow.services import budgets as budget_service
from grantflow.services import contracts as contract_service
from grantflow.services.approvals import decide_approval
from grantflow.tests.utils.factories import (
    FINANCE_USER,
    OFFICER_USER,
    PARTNER_ID,
    approved_budget,
    count_audit,
    count_outbox,
    create_budget,
    fetch,
    generated_contract,
    publish_contract_policy,
)


async def _signed(session, contract_id: str) -> None:
    await contract_service.submit_for_approval(session, contract_id=contract_id, actor_id=OFFICER_USER)
    await contract_service.mark_approved(session, contract_id=contract_id, actor_id=OFFICER_USER)
    await contract_service.send_for_sign(session, contract_id=contract_id, actor_id=OFFICER_USER, envelope_id="env-7")
    await contract_service.mark_signed(
        session, contract_id=contract_id, actor_id=OFFICER_USER, signed_pdf_key="contracts/signed.pdf"
    )


@pytest.mark.asyncio
async def test_full_lifecycle_activates_contract_and_locks_budget(session) -> None:
    contract = await generated_contract(session)
    assert contract["state"] == "GENERATED"
    assert contract["generated_docx_key"] == "contracts/draft.docx"

    submitted = await contract_service.submit_for_approval(session, contract_id=contract["id"], actor_id=OFFICER_USER)
    assert submitted.response["contract"]["state"] == "SUBMITTED_FOR_APPROVAL"
    assert submitted.response["approval"] is None

    approved = await contract_service.mark_approved(session, contract_id=contract["id"], actor_id=OFFICER_USER)
    assert approved.response["approved_docx_key"] == "contracts/draft.docx"

    sent = await contract_service.send_for_sign(
        session, contract_id=contract["id"], actor_id=OFFICER_USER, envelope_id="env-7"
    )
    assert sent.response["envelope_id"] == "env-7"
    assert sent.response["substatus"] == {"signing_progress": "sent"}

    signed = await contract_service.mark_signed(
        session, contract_id=contract["id"], actor_id=OFFICER_USER, signed_pdf_key="contracts/signed.pdf"
    )
    assert signed.response["state"] == "SIGNED"

    active = await contract_service.activate(session, contract_id=contract["id"], actor_id=OFFICER_USER)
    assert active.response["state"] == "ACTIVE"
    assert active.response["version"] == 7

    budget = await fetch(PartnerBudget, contract["partner_budget_id"])
    assert budget.status == "LOCKED"
    assert budget.substatus_json["locked_by_contract_id"] == contract["id"]
    assert await count_audit(entity_id=budget.id, action_key="budget.lock") == 1
    assert await count_outbox(entity_id=contract["id"], event_key="contract.activated") == 1


@pytest.mark.asyncio
async def test_contract_requires_approved_budget(session) -> None:
    budget = await create_budget(session)

    with pytest.raises(ValidationError) as excinfo:
        await contract_service.create_contract(
            session, partner_budget_id=budget["id"], partner_id=PARTNER_ID, actor_id=OFFICER_USER
        )

    assert excinfo.value.code == "BUDGET_NOT_APPROVED"


@pytest.mark.asyncio
async def test_contract_partner_must_match_budget(session) -> None:
    budget = await approved_budget(session)

    with pytest.raises(ConflictError) as excinfo:
        await contract_service.create_contract(
            session, partner_budget_id=budget["id"], partner_id="org-other", actor_id=OFFICER_USER
        )

    assert excinfo.value.code == "BUDGET_PARTNER_MISMATCH"


@pytest.mark.asyncio
async def test_generate_requires_rendered_document(session) -> None:
    budget = await approved_budget(session)
    created = await contract_service.create_contract(
        session, partner_budget_id=budget["id"], partner_id=PARTNER_ID, actor_id=OFFICER_USER
    )

    with pytest.raises(ValidationError) as excinfo:
        await contract_service.generate(
            session, contract_id=created.response["id"], actor_id=OFFICER_USER, rendered_docx_key=""
        )

    assert excinfo.value.code == "RENDERED_DOCX_KEY_REQUIRED"


@pytest.mark.asyncio
async def test_skipping_ahead_leaves_contract_untouched(session) -> None:
    contract = await generated_contract(session)

    with pytest.raises(ConflictError) as excinfo:
        await contract_service.mark_signed(session, contract_id=contract["id"], actor_id=OFFICER_USER)

    assert excinfo.value.code == "INVALID_STATE"
    stored = await fetch(Contract, contract["id"])
    assert stored.state == "GENERATED"
    assert stored.version == contract["version"]
    assert await count_audit(entity_id=contract["id"], action_key="contract.mark_signed") == 0
    assert await count_outbox(entity_id=contract["id"], event_key="contract.signed") == 0


@pytest.mark.asyncio
async def test_signed_contract_cannot_be_cancelled(session) -> None:
    contract = await generated_contract(session)
    await _signed(session, contract["id"])

    with pytest.raises(ConflictError) as excinfo:
        await contract_service.cancel(session, contract_id=contract["id"], actor_id=OFFICER_USER, reason="late")

    assert excinfo.value.code == "INVALID_STATE"
    assert (await fetch(Contract, contract["id"])).state == "SIGNED"


@pytest.mark.asyncio
async def test_cancel_withdraws_pending_contract_approval(session) -> None:
    await publish_contract_policy(session, "grant_officer")
    contract = await generated_contract(session)
    submitted = await contract_service.submit_for_approval(session, contract_id=contract["id"], actor_id=OFFICER_USER)
    approval = submitted.response["approval"]
    assert approval["status"] == "PENDING"
    assert submitted.response["contract"]["approval_provider"] == "internal"

    cancelled = await contract_service.cancel(
        session, contract_id=contract["id"], actor_id=OFFICER_USER, reason="Partner withdrew"
    )

    assert cancelled.response["state"] == "CANCELLED"
    assert cancelled.response["substatus"]["reason"] == "Partner withdrew"
    assert (await fetch(Approval, approval["id"])).status == "CANCELLED"


@pytest.mark.asyncio
async def test_explicit_reference_skips_the_approval_policy(session) -> None:
    await publish_contract_policy(session, "grant_officer")
    contract = await generated_contract(session)

    submitted = await contract_service.submit_for_approval(
        session,
        contract_id=contract["id"],
        actor_id=OFFICER_USER,
        approval_provider="legal-desk",
        approval_ref="legal-77",
    )

    assert submitted.response["approval"] is None
    stored = await fetch(Contract, contract["id"])
    assert stored.state == "SUBMITTED_FOR_APPROVAL"
    assert (stored.approval_provider, stored.approval_ref) == ("legal-desk", "legal-77")
    async with SessionLocal() as fresh:
        assert await fresh.scalar(select(func.count()).select_from(Approval)) == 0


@pytest.mark.asyncio
async def test_approved_contract_approval_moves_contract_forward(session) -> None:
    await publish_contract_policy(session, "grant_officer")
    contract = await generated_contract(session)
    submitted = await contract_service.submit_for_approval(session, contract_id=contract["id"], actor_id=OFFICER_USER)

    await decide_approval(
        session,
        approval_id=submitted.response["approval"]["id"],
        decision="APPROVE",
        actor_id=OFFICER_USER,
        actor_role="grant_officer",
    )

    stored = await fetch(Contract, contract["id"])
    assert stored.state == "APPROVED"
    assert stored.approval_ref == submitted.response["approval"]["approval_ref"]
    assert stored.approved_docx_key == "contracts/draft.docx"


@pytest.mark.asyncio
async def test_direct_approval_is_blocked_while_contract_approval_pending(session) -> None:
    await publish_contract_policy(session, "finance", "grant_officer")
    contract = await generated_contract(session)
    submitted = await contract_service.submit_for_approval(session, contract_id=contract["id"], actor_id=OFFICER_USER)
    approval_id = submitted.response["approval"]["id"]

    with pytest.raises(ConflictError) as excinfo:
        await contract_service.mark_approved(session, contract_id=contract["id"], actor_id=OFFICER_USER)
    assert excinfo.value.code == "APPROVAL_PENDING"
    assert excinfo.value.details == {"approval_id": approval_id}
    assert (await fetch(Contract, contract["id"])).state == "SUBMITTED_FOR_APPROVAL"

    await decide_approval(
        session, approval_id=approval_id, decision="APPROVE", actor_id=FINANCE_USER, actor_role="finance"
    )
    await decide_approval(
        session, approval_id=approval_id, decision="APPROVE", actor_id=OFFICER_USER, actor_role="grant_officer"
    )

    assert (await fetch(Approval, approval_id)).status == "APPROVED"
    assert (await fetch(Contract, contract["id"])).state == "APPROVED"


@pytest.mark.asyncio
async def test_rejected_contract_approval_cancels_contract(session) -> None:
    await publish_contract_policy(session, "grant_officer")
    contract = await generated_contract(session)
    submitted = await contract_service.submit_for_approval(session, contract_id=contract["id"], actor_id=OFFICER_USER)

    await decide_approval(
        session,
        approval_id=submitted.response["approval"]["id"],
        decision="REJECT",
        actor_id=OFFICER_USER,
        actor_role="grant_officer",
        comment="Wrong template",
    )

    stored = await fetch(Contract, contract["id"])
    assert stored.state == "CANCELLED"
    assert stored.substatus_json["reason"] == "Wrong template"
    assert await count_outbox(entity_id=contract["id"], event_key="contract.cancelled") == 1


@pytest.mark.asyncio
async def test_provisioning_reuses_open_contract(session) -> None:
    budget = await approved_budget(session)

    first = await budget_service.provision_contract(session, budget_id=budget["id"], actor_id=OFFICER_USER)
    second = await budget_service.provision_contract(session, budget_id=budget["id"], actor_id=OFFICER_USER)

    assert first.response["id"] == second.response["id"]
    assert first.response["state"] == "DRAFT"
    assert first.response["title"] == "Grant Agreement - proj-1"
    assert "Ceiling Total: 5000.00" in first.response["metadata"]["description"]
    assert await count_audit(action_key="contract.create") == 1


@pytest.mark.asyncio
async def test_provisioning_after_cancel_creates_replacement(session) -> None:
    budget = await approved_budget(session)
    first = await budget_service.provision_contract(session, budget_id=budget["id"], actor_id=OFFICER_USER)
    await contract_service.cancel(session, contract_id=first.response["id"], actor_id=OFFICER_USER)

    second = await budget_service.provision_contract(session, budget_id=budget["id"], actor_id=OFFICER_USER)

    assert second.response["id"] != first.response["id"]
