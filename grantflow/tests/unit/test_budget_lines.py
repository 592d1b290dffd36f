from __future__ import annotations

from decimal import Decimal

import pytest

from grantflow.core.errors import ValidationError
from grantflow.services.budgets import normalize_lines


def test_normalize_lines_computes_amounts_and_total() -> None:
    lines, total = normalize_lines(
        [
            {"category": "staff", "qty": "3", "unit_cost": "1000.005"},
            {"category": "travel", "qty": 2, "unit_cost": 250},
        ]
    )

    assert [line["amount"] for line in lines] == ["3000.02", "500.00"]
    assert total == Decimal("3500.02")


def test_empty_lines_total_zero() -> None:
    assert normalize_lines(None) == ([], Decimal("0.00"))


@pytest.mark.parametrize(
    "line",
    [{"qty": "-1", "unit_cost": "5"}, {"qty": "two", "unit_cost": "5"}, {"qty": "1", "unit_cost": "NaN"}, "oops"],
)
def test_invalid_lines_are_rejected(line) -> None:
    with pytest.raises(ValidationError) as excinfo:
        normalize_lines([line])
    assert excinfo.value.code == "INVALID_BUDGET_LINE"
