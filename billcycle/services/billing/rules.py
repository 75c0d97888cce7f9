"""Discount and tax resolution.

Rules are frozen snapshots taken at invoice-generation time. Lines record the
snapshot they were priced with, so editing a Discount or TaxRate row later
never changes an issued invoice.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable, Protocol

from sqlalchemy import or_
from sqlalchemy.orm import Session

from billcycle.models.catalog import Discount, DiscountType, TaxRate
from billcycle.services.billing.errors import InvalidAmount, InvalidRule
from billcycle.services.billing.money import Money

_HUNDRED = Decimal("100")


@dataclass(frozen=True)
class RuleScope:
    plan_id: uuid.UUID | None = None
    product_id: uuid.UUID | None = None


@dataclass(frozen=True)
class DiscountRule:
    id: uuid.UUID | None
    discount_type: DiscountType
    value: Decimal
    currency: str | None = None
    starts_on: date | None = None
    ends_on: date | None = None
    plan_id: uuid.UUID | None = None
    product_id: uuid.UUID | None = None
    min_quantity: Decimal | None = None
    name: str | None = None

    def applies_to(self, plan_id, product_id, quantity: Decimal) -> bool:
        if self.plan_id is not None and self.plan_id != plan_id:
            return False
        if self.product_id is not None and self.product_id != product_id:
            return False
        if self.min_quantity is not None and quantity < self.min_quantity:
            return False
        return True

    def snapshot(self) -> dict:
        return {
            "id": str(self.id) if self.id else None,
            "type": self.discount_type.value,
            "value": str(self.value),
            "currency": self.currency,
        }


@dataclass(frozen=True)
class TaxRule:
    id: uuid.UUID | None
    rate: Decimal
    starts_on: date | None = None
    ends_on: date | None = None
    plan_id: uuid.UUID | None = None
    product_id: uuid.UUID | None = None
    name: str | None = None

    def applies_to(self, plan_id, product_id) -> bool:
        if self.plan_id is not None and self.plan_id != plan_id:
            return False
        if self.product_id is not None and self.product_id != product_id:
            return False
        return True

    def snapshot(self) -> dict:
        return {"id": str(self.id) if self.id else None, "rate": str(self.rate)}


@dataclass(frozen=True)
class PricingRules:
    """Explicit rule snapshot handed to the line composer."""

    discounts: tuple[DiscountRule, ...] = field(default_factory=tuple)
    taxes: tuple[TaxRule, ...] = field(default_factory=tuple)

    def for_line(self, plan_id, product_id, quantity: Decimal):
        discounts = tuple(
            rule for rule in self.discounts if rule.applies_to(plan_id, product_id, quantity)
        )
        taxes = tuple(rule for rule in self.taxes if rule.applies_to(plan_id, product_id))
        return discounts, taxes


@dataclass(frozen=True)
class ResolvedAmounts:
    base: Money
    discount: Money
    tax: Money

    @property
    def net(self) -> Money:
        return self.base - self.discount

    @property
    def total(self) -> Money:
        return self.base - self.discount + self.tax


def _check_window(starts_on: date | None, ends_on: date | None, as_of: date, label: str):
    if starts_on is not None and as_of < starts_on:
        raise InvalidRule(
            f"{label} is not valid before {starts_on.isoformat()}",
            details={"as_of": as_of.isoformat(), "starts_on": starts_on.isoformat()},
        )
    if ends_on is not None and as_of > ends_on:
        raise InvalidRule(
            f"{label} expired on {ends_on.isoformat()}",
            details={"as_of": as_of.isoformat(), "ends_on": ends_on.isoformat()},
        )


def validate_discount(discount: DiscountRule, as_of: date) -> None:
    label = f"Discount {discount.name or discount.id}"
    if discount.value < 0:
        raise InvalidRule(f"{label} has a negative value", details={"value": str(discount.value)})
    if discount.discount_type == DiscountType.percent and discount.value > _HUNDRED:
        raise InvalidRule(
            f"{label} percentage must be between 0 and 100",
            details={"value": str(discount.value)},
        )
    _check_window(discount.starts_on, discount.ends_on, as_of, label)


def validate_tax(tax: TaxRule, as_of: date) -> None:
    label = f"Tax {tax.name or tax.id}"
    if tax.rate < 0 or tax.rate > _HUNDRED:
        raise InvalidRule(
            f"{label} rate must be between 0 and 100", details={"rate": str(tax.rate)}
        )
    _check_window(tax.starts_on, tax.ends_on, as_of, label)


def resolve_discount(base: Money, discount: DiscountRule, as_of: date) -> Money:
    """Discount amount for one rule, never more than ``base``."""
    validate_discount(discount, as_of)
    if discount.discount_type == DiscountType.percent:
        return base.percent(discount.value).min(base)
    currency = discount.currency or base.currency
    if currency.upper() != base.currency:
        raise InvalidRule(
            f"Discount {discount.name or discount.id} is in {currency}, line is in {base.currency}",
            details={"discount_currency": currency, "line_currency": base.currency},
        )
    try:
        amount = Money.of(discount.value, base.currency)
    except InvalidAmount as exc:
        raise InvalidRule(
            f"Discount {discount.name or discount.id} is finer than {base.currency} allows",
            details=exc.details,
        ) from exc
    return amount.min(base)


def resolve_tax(taxable: Money, tax: TaxRule, as_of: date) -> Money:
    validate_tax(tax, as_of)
    return taxable.percent(tax.rate)


def resolve_taxes(taxable: Money, taxes: Iterable[TaxRule], as_of: date) -> Money:
    """Sum of all applicable taxes on the net amount.

    Rates are summed and rounded once; taxes never compound.
    """
    combined = Decimal("0")
    for tax in taxes:
        validate_tax(tax, as_of)
        combined += tax.rate
    return taxable.percent(combined)


def resolve_line(
    base: Money,
    discounts: Iterable[DiscountRule],
    taxes: Iterable[TaxRule],
    as_of: date,
) -> ResolvedAmounts:
    discount = Money.zero(base.currency)
    for rule in discounts:
        discount = discount + resolve_discount(base, rule, as_of)
    discount = discount.min(base)
    tax = resolve_taxes(base - discount, taxes, as_of)
    return ResolvedAmounts(base=base, discount=discount, tax=tax)


class RuleSource(Protocol):
    def resolve_discount_rules(self, scope: RuleScope, as_of: date) -> tuple[DiscountRule, ...]:
        ...

    def resolve_tax_rules(self, scope: RuleScope, as_of: date) -> tuple[TaxRule, ...]:
        ...


def _window_filter(model, as_of: date):
    return (
        or_(model.starts_on.is_(None), model.starts_on <= as_of),
        or_(model.ends_on.is_(None), model.ends_on >= as_of),
    )


def discount_rule_from_row(row: Discount) -> DiscountRule:
    return DiscountRule(
        id=row.id,
        discount_type=row.discount_type,
        value=Decimal(str(row.value)),
        currency=row.currency,
        starts_on=row.starts_on,
        ends_on=row.ends_on,
        plan_id=row.plan_id,
        product_id=row.product_id,
        min_quantity=Decimal(str(row.min_quantity)) if row.min_quantity is not None else None,
        name=row.name,
    )


def tax_rule_from_row(row: TaxRate) -> TaxRule:
    return TaxRule(
        id=row.id,
        rate=Decimal(str(row.rate)),
        starts_on=row.starts_on,
        ends_on=row.ends_on,
        plan_id=row.plan_id,
        product_id=row.product_id,
        name=row.name,
    )


class DatabaseRuleSource:
    """Active discount and tax rows valid at ``as_of`` for a plan scope."""

    def __init__(self, db: Session):
        self.db = db

    def resolve_discount_rules(self, scope: RuleScope, as_of: date) -> tuple[DiscountRule, ...]:
        query = (
            self.db.query(Discount)
            .filter(Discount.is_active.is_(True))
            .filter(*_window_filter(Discount, as_of))
        )
        if scope.plan_id is not None:
            query = query.filter(or_(Discount.plan_id.is_(None), Discount.plan_id == scope.plan_id))
        if scope.product_id is not None:
            query = query.filter(
                or_(Discount.product_id.is_(None), Discount.product_id == scope.product_id)
            )
        rows = query.order_by(Discount.created_at.asc(), Discount.id.asc()).all()
        return tuple(discount_rule_from_row(row) for row in rows)

    def resolve_tax_rules(self, scope: RuleScope, as_of: date) -> tuple[TaxRule, ...]:
        query = (
            self.db.query(TaxRate)
            .filter(TaxRate.is_active.is_(True))
            .filter(*_window_filter(TaxRate, as_of))
        )
        if scope.plan_id is not None:
            query = query.filter(or_(TaxRate.plan_id.is_(None), TaxRate.plan_id == scope.plan_id))
        if scope.product_id is not None:
            query = query.filter(
                or_(TaxRate.product_id.is_(None), TaxRate.product_id == scope.product_id)
            )
        rows = query.order_by(TaxRate.created_at.asc(), TaxRate.id.asc()).all()
        return tuple(tax_rule_from_row(row) for row in rows)


class StaticRuleSource:
    """Serves a fixed snapshot regardless of scope; used for previews and tests."""

    def __init__(
        self,
        discounts: Iterable[DiscountRule] = (),
        taxes: Iterable[TaxRule] = (),
    ):
        self.discounts = tuple(discounts)
        self.taxes = tuple(taxes)

    def resolve_discount_rules(self, scope: RuleScope, as_of: date) -> tuple[DiscountRule, ...]:
        return self.discounts

    def resolve_tax_rules(self, scope: RuleScope, as_of: date) -> tuple[TaxRule, ...]:
        return self.taxes


def load_pricing_rules(source: RuleSource, plan_id, as_of: date) -> PricingRules:
    scope = RuleScope(plan_id=plan_id)
    return PricingRules(
        discounts=tuple(source.resolve_discount_rules(scope, as_of)),
        taxes=tuple(source.resolve_tax_rules(scope, as_of)),
    )
