from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from grantflow.core.config import get_settings
from grantflow.core.errors import ValidationError
from grantflow.domain.models import Disbursement, PartnerBudget
from grantflow.persistence.repos import budgets as budgets_repo


logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


@dataclass(frozen=True)
class Tranche:
    tranche_number: int
    title: str
    description: str | None
    amount: Decimal
    planned_date: date


def _to_decimal(value: Any, *, message: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(message, code="INVALID_TRANCHE") from exc


def add_months(start: date, months: int) -> date:
    # Clamp to the last day of the target month (Jan 31 + 1 month -> Feb 28/29).
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def _resolve_tranche_amount(tranche: dict[str, Any], total: Decimal) -> Decimal:
    if tranche.get("absolute") is not None:
        amount = _to_decimal(tranche["absolute"], message="Invalid absolute tranche amount in rules")
        if amount <= 0:
            raise ValidationError("Invalid absolute tranche amount in rules", code="INVALID_TRANCHE")
        return amount.quantize(_CENT, rounding=ROUND_HALF_UP)
    if tranche.get("percentage") is not None:
        percent = _to_decimal(tranche["percentage"], message="Invalid percentage tranche amount in rules")
        if percent <= 0 or percent > 100:
            raise ValidationError("Invalid percentage tranche amount in rules", code="INVALID_TRANCHE")
        return (total * percent / Decimal(100)).quantize(_CENT, rounding=ROUND_HALF_UP)
    raise ValidationError("Tranche definition missing amount", code="INVALID_TRANCHE")


def _planned_date(raw: Any, fallback: date) -> date:
    if not raw:
        return fallback
    try:
        return date.fromisoformat(str(raw))
    except ValueError as exc:
        raise ValidationError("Invalid tranche planned_date in rules", code="INVALID_TRANCHE") from exc


def build_schedule(
    *,
    total: Decimal,
    rules: dict[str, Any] | None,
    budget_id: str,
    start: date,
) -> list[Tranche]:
    """Plan disbursement tranches for an approved budget total.

    ``rules["disbursement_plan"]["tranches"]`` entries carry either an
    ``absolute`` or a ``percentage`` amount. Without a plan the total is split
    into equal tranches with the rounding remainder on the last one.
    """
    settings = get_settings()
    interval = max(1, int(settings.disbursement_interval_months))
    plan = (rules or {}).get("disbursement_plan") or {}
    planned = plan.get("tranches") or []
    if planned:
        schedule: list[Tranche] = []
        for index, tranche in enumerate(planned):
            schedule.append(
                Tranche(
                    tranche_number=index + 1,
                    title=tranche.get("title") or f"Tranche {index + 1}",
                    description=tranche.get("description"),
                    amount=_resolve_tranche_amount(tranche, total),
                    planned_date=_planned_date(tranche.get("planned_date"), add_months(start, index * interval)),
                )
            )
        return schedule

    count = max(1, int(settings.disbursement_default_tranches))
    base = (total / count).quantize(_CENT, rounding=ROUND_HALF_UP)
    remainder = total - base * count
    schedule = [
        Tranche(
            tranche_number=index + 1,
            title=f"Tranche {index + 1}",
            description=f"Auto-generated tranche for budget {budget_id}",
            amount=base,
            planned_date=add_months(start, index * interval),
        )
        for index in range(count)
    ]
    if remainder:
        last = schedule[-1]
        schedule[-1] = Tranche(
            tranche_number=last.tranche_number,
            title=last.title,
            description=last.description,
            amount=last.amount + remainder,
            planned_date=last.planned_date,
        )
    return schedule


async def seed_disbursement_schedule(
    session: AsyncSession,
    budget: PartnerBudget,
    *,
    actor_id: str | None,
    start: date | None = None,
) -> list[Disbursement]:
    """Insert the tranche schedule for ``budget`` unless one already exists."""
    existing = await budgets_repo.list_disbursements(session, budget.id)
    if existing:
        return existing
    total = Decimal(str(budget.ceiling_total or 0))
    if total <= 0:
        raise ValidationError(
            "Cannot seed disbursement schedule for zero total budget",
            code="ZERO_BUDGET_TOTAL",
            details={"budget_id": budget.id},
        )
    now = datetime.now(timezone.utc)
    schedule = build_schedule(
        total=total,
        rules=budget.rules_json,
        budget_id=budget.id,
        start=start or now.date(),
    )
    rows = [
        Disbursement(
            id=uuid4().hex,
            budget_id=budget.id,
            tranche_number=tranche.tranche_number,
            title=tranche.title,
            description=tranche.description,
            amount=tranche.amount,
            currency=budget.currency,
            planned_date=tranche.planned_date,
            status="planned",
            created_by=actor_id,
            created_at=now,
        )
        for tranche in schedule
    ]
    budgets_repo.add_disbursements(session, rows)
    await session.flush()
    logger.info("disbursements_seeded budget_id=%s tranches=%s total=%s", budget.id, len(rows), total)
    return rows
