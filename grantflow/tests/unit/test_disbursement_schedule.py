from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from grantflow.core.errors import ValidationError
from grantflow.services.disbursements import add_months, build_schedule


def test_add_months_clamps_to_month_end() -> None:
    assert add_months(date(2026, 1, 31), 1) == date(2026, 2, 28)
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert add_months(date(2026, 11, 15), 3) == date(2027, 2, 15)


def test_equal_split_puts_remainder_on_last_tranche() -> None:
    schedule = build_schedule(total=Decimal("1000.00"), rules=None, budget_id="b1", start=date(2026, 1, 1))

    assert [tranche.amount for tranche in schedule] == [Decimal("333.33"), Decimal("333.33"), Decimal("333.34")]
    assert sum(tranche.amount for tranche in schedule) == Decimal("1000.00")
    assert [tranche.planned_date for tranche in schedule] == [date(2026, 1, 1), date(2026, 4, 1), date(2026, 7, 1)]
    assert [tranche.tranche_number for tranche in schedule] == [1, 2, 3]


def test_plan_with_percentage_and_absolute_tranches() -> None:
    rules = {
        "disbursement_plan": {
            "tranches": [
                {"title": "Advance", "percentage": "50"},
                {"absolute": "1500", "planned_date": "2026-09-30"},
            ]
        }
    }

    schedule = build_schedule(total=Decimal("4000"), rules=rules, budget_id="b1", start=date(2026, 3, 1))

    assert schedule[0].title == "Advance"
    assert schedule[0].amount == Decimal("2000.00")
    assert schedule[0].planned_date == date(2026, 3, 1)
    assert schedule[1].title == "Tranche 2"
    assert schedule[1].amount == Decimal("1500.00")
    assert schedule[1].planned_date == date(2026, 9, 30)


@pytest.mark.parametrize(
    "tranche",
    [
        {"percentage": "0"},
        {"percentage": "120"},
        {"absolute": "-5"},
        {"absolute": "abc"},
        {"title": "no amount"},
        {"absolute": "10", "planned_date": "next spring"},
    ],
)
def test_invalid_tranche_definitions_are_rejected(tranche: dict) -> None:
    rules = {"disbursement_plan": {"tranches": [tranche]}}
    with pytest.raises(ValidationError) as excinfo:
        build_schedule(total=Decimal("100"), rules=rules, budget_id="b1", start=date(2026, 1, 1))
    assert excinfo.value.code == "INVALID_TRANCHE"
