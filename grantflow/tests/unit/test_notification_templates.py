from __future__ import annotations

from grantflow.domain.models import NotificationOutbox, NotificationTemplate
from grantflow.services.notifications.outbox import audience
from grantflow.services.notifications.templates import build_context, flatten_payload, render


def test_flatten_payload_joins_nested_keys() -> None:
    flat = flatten_payload(
        {"partner_budget": {"status": "SUBMITTED", "ceiling_total": "5000.00", "lines": [1, 2]}, "note": None}
    )

    assert flat == {
        "partner_budget_status": "SUBMITTED",
        "partner_budget_ceiling_total": "5000.00",
        "partner_budget_lines": "1, 2",
        "note": "",
    }


def test_audience_drops_empty_selectors() -> None:
    assert audience(user_ids=["u1", None], roles=[]) == {"user_ids": ["u1"]}  # type: ignore[list-item]


def _outbox() -> NotificationOutbox:
    return NotificationOutbox(
        id="ob-1",
        tenant_id="t1",
        event_key="budget.submitted",
        entity_type="partner_budget",
        entity_id="b-1",
        payload_json={"audience": {"roles": ["grant_officer"]}, "data": {"partner_budget": {"status": "SUBMITTED"}}},
    )


def test_build_context_adds_event_fields_and_link() -> None:
    context = build_context(_outbox())

    assert context["partner_budget_status"] == "SUBMITTED"
    assert context["event_key"] == "budget.submitted"
    assert context["entity_id"] == "b-1"
    assert context["link_url"].endswith("/partner_budget/b-1")


def test_render_substitutes_placeholders_and_keeps_unknown_ones() -> None:
    template = NotificationTemplate(
        id="tpl-1",
        tenant_id=None,
        event_key="budget.submitted",
        channel="in_app",
        lang="en",
        subject_tpl="Budget $entity_id is $partner_budget_status",
        body_tpl="Review at $link_url ($missing)",
        version=1,
        active=True,
    )

    message = render(template, build_context(_outbox()))

    assert message.subject == "Budget b-1 is SUBMITTED"
    assert message.body.startswith("Review at http")
    assert message.body.endswith("($missing)")
    assert message.link_url is not None


def test_render_without_template_falls_back_to_summary() -> None:
    message = render(None, build_context(_outbox()))

    assert message.subject == "budget.submitted"
    assert message.body == "budget.submitted for partner_budget b-1"
