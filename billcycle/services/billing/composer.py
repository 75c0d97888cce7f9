"""Invoice line composition.

Turns a plan, a billing period and a pricing-rule snapshot into priced
invoice lines. Nothing here touches the database; identical inputs always
produce identical lines.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from fractions import Fraction

from billcycle.models.catalog import Plan
from billcycle.services.billing.errors import BillingError, InvalidAmount, InvalidRule
from billcycle.services.billing.money import Money
from billcycle.services.billing.rules import PricingRules, resolve_line


@dataclass(frozen=True)
class Period:
    """Half-open date interval ``[start, end)``."""

    start: date
    end: date

    def __post_init__(self):
        if self.end < self.start:
            raise ValueError("period end must not be before its start")

    @property
    def days(self) -> int:
        return (self.end - self.start).days

    def clip(self, start: date | None, end: date | None) -> Period:
        clipped_start = max(self.start, start) if start else self.start
        clipped_end = min(self.end, end) if end else self.end
        if clipped_end < clipped_start:
            clipped_end = clipped_start
        return Period(clipped_start, clipped_end)


@dataclass(frozen=True)
class ComposedLine:
    position: int
    description: str
    quantity: Decimal
    unit_price: Decimal
    base: Money
    discount: Money
    tax: Money
    covered_days: int
    period_days: int
    plan_line_id: uuid.UUID | None = None
    product_id: uuid.UUID | None = None
    rules_snapshot: dict = field(default_factory=dict)

    @property
    def total(self) -> Money:
        return self.base - self.discount + self.tax


@dataclass(frozen=True)
class RejectedLine:
    position: int
    description: str
    error: BillingError
    plan_line_id: uuid.UUID | None = None


@dataclass(frozen=True)
class ComposeResult:
    lines: list[ComposedLine]
    rejected: list[RejectedLine]

    @property
    def currency(self) -> str | None:
        return self.lines[0].base.currency if self.lines else None


def proration_factor(period: Period, coverage: Period) -> Fraction:
    if period.days == 0:
        return Fraction(0)
    return Fraction(coverage.days, period.days)


def line_base(unit_price: Decimal, quantity: Decimal, factor: Fraction, currency: str) -> Money:
    """``unit_price * quantity * factor`` rounded half-up once to the minor unit."""
    unit = Money.of(unit_price, currency)
    return unit.scale(Fraction(Decimal(str(quantity))) * factor)


def compose_lines(
    plan: Plan,
    period: Period,
    coverage: Period,
    rules: PricingRules,
) -> ComposeResult:
    coverage = period.clip(coverage.start, coverage.end)
    factor = proration_factor(period, coverage)
    currency = plan.currency
    lines: list[ComposedLine] = []
    rejected: list[RejectedLine] = []

    for plan_line in sorted(plan.lines, key=lambda item: item.position):
        description = plan_line.description or (
            plan_line.product.name if plan_line.product else plan.name
        )
        quantity = Decimal(str(plan_line.quantity))
        unit_price = Decimal(str(plan_line.unit_price))
        discounts, taxes = rules.for_line(plan.id, plan_line.product_id, quantity)
        try:
            base = line_base(unit_price, quantity, factor, currency)
            resolved = resolve_line(base, discounts, taxes, period.start)
        except (InvalidRule, InvalidAmount) as exc:
            rejected.append(
                RejectedLine(
                    position=plan_line.position,
                    description=description,
                    error=exc,
                    plan_line_id=plan_line.id,
                )
            )
            continue
        lines.append(
            ComposedLine(
                position=plan_line.position,
                description=description,
                quantity=quantity,
                unit_price=unit_price,
                base=resolved.base,
                discount=resolved.discount,
                tax=resolved.tax,
                covered_days=coverage.days,
                period_days=period.days,
                plan_line_id=plan_line.id,
                product_id=plan_line.product_id,
                rules_snapshot={
                    "resolved_on": period.start.isoformat(),
                    "discounts": [rule.snapshot() for rule in discounts],
                    "taxes": [rule.snapshot() for rule in taxes],
                },
            )
        )
    return ComposeResult(lines=lines, rejected=rejected)
