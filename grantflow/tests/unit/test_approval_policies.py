from __future__ import annotations

from decimal import Decimal

import pytest

from grantflow.core.errors import ValidationError
from grantflow.domain.models import ApprovalPolicy
from grantflow.domain.states import ProviderKind
from grantflow.services.approvals.policies import snapshot_from_row, validate_policy_config


def _row(provider: str, config: dict) -> ApprovalPolicy:
    return ApprovalPolicy(
        id="pol-1",
        entity_type="partner_budget",
        scope_id=None,
        version=3,
        provider=provider,
        config_json=config,
        is_active=True,
    )


def test_snapshot_exposes_steps_and_threshold() -> None:
    snapshot = snapshot_from_row(
        _row(
            "internal",
            {
                "steps": [{"assignee_role": "grant_officer"}, {"assignee_role": "finance"}],
                "auto_approve_if": {"amount_lte": "10000"},
            },
        )
    )

    assert snapshot.provider == ProviderKind.INTERNAL
    assert snapshot.version == 3
    assert snapshot.total_steps == 2
    assert snapshot.role_for_step(1) == "grant_officer"
    assert snapshot.role_for_step(2) == "finance"
    assert snapshot.role_for_step(3) is None
    assert snapshot.auto_approve_amount_lte == Decimal("10000")


def test_auto_approval_is_inclusive_and_needs_an_amount() -> None:
    snapshot = snapshot_from_row(
        _row("internal", {"steps": [{"assignee_role": "finance"}], "auto_approve_if": {"amount_lte": 500}})
    )

    assert snapshot.auto_approves(Decimal("500"))
    assert snapshot.auto_approves(Decimal("499.99"))
    assert not snapshot.auto_approves(Decimal("500.01"))
    assert not snapshot.auto_approves(None)


def test_policy_without_threshold_never_auto_approves() -> None:
    snapshot = snapshot_from_row(_row("internal", {"steps": [{"assignee_role": "finance"}]}))
    assert not snapshot.auto_approves(Decimal("0"))


def test_external_snapshot_keeps_endpoint() -> None:
    snapshot = snapshot_from_row(_row("external", {"endpoint": "https://approvals.example/submit"}))
    assert snapshot.provider == ProviderKind.EXTERNAL
    assert snapshot.endpoint == "https://approvals.example/submit"
    assert snapshot.auto_approve_amount_lte is None


@pytest.mark.parametrize(
    ("provider", "config"),
    [
        (ProviderKind.INTERNAL, {}),
        (ProviderKind.INTERNAL, {"steps": []}),
        (ProviderKind.INTERNAL, {"steps": [{"role": "x"}]}),
        (ProviderKind.INTERNAL, {"steps": [{"assignee_role": "x"}], "auto_approve_if": {"amount_lte": "lots"}}),
        (ProviderKind.INTERNAL, {"steps": [{"assignee_role": "x"}], "auto_approve_if": 100}),
        (ProviderKind.EXTERNAL, {"endpoint": "ftp://nowhere"}),
        (ProviderKind.EXTERNAL, {}),
    ],
)
def test_invalid_policy_configs_are_rejected(provider: ProviderKind, config: dict) -> None:
    with pytest.raises(ValidationError) as excinfo:
        validate_policy_config(provider, config)
    assert excinfo.value.code == "INVALID_POLICY"
