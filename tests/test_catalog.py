"""Tests for catalog services."""

import uuid
from decimal import Decimal

import pytest
from fastapi import HTTPException
from pydantic import ValidationError

from billcycle.models.catalog import DiscountType
from billcycle.schemas.catalog import (
    DiscountCreate,
    PlanCreate,
    PlanLineCreate,
    PlanRevision,
    TaxRateCreate,
)
from billcycle.services import catalog as catalog_service
from billcycle.services import subscriptions as subscription_service
from billcycle.services.billing.errors import InvalidAmount


def test_plan_code_is_unique(db_session, plan, product):
    with pytest.raises(HTTPException) as exc:
        catalog_service.plans.create(
            db_session,
            PlanCreate(
                code=plan.code,
                name="Copy",
                lines=[PlanLineCreate(product_id=product.id, unit_price=Decimal("1.00"))],
            ),
        )
    assert exc.value.status_code == 409


def test_plan_line_needs_known_product(db_session):
    with pytest.raises(HTTPException) as exc:
        catalog_service.plans.create(
            db_session,
            PlanCreate(
                code="GHOST",
                name="Ghost",
                lines=[PlanLineCreate(product_id=uuid.uuid4(), unit_price=Decimal("1.00"))],
            ),
        )
    assert exc.value.status_code == 404


def test_plan_currency_is_normalized(plan_factory):
    assert plan_factory(currency="eur").currency == "EUR"


def test_plan_prices_must_fit_currency_unit(db_session, product, plan_factory):
    with pytest.raises(InvalidAmount):
        plan_factory(
            currency="JPY",
            lines=[PlanLineCreate(product_id=product.id, unit_price=Decimal("9.99"))],
        )

    yen_plan = plan_factory(
        currency="JPY",
        lines=[PlanLineCreate(product_id=product.id, unit_price=Decimal("1000"))],
    )
    with pytest.raises(InvalidAmount):
        catalog_service.plans.revise(
            db_session,
            str(yen_plan.id),
            PlanRevision(
                name="Yen Fiber",
                lines=[PlanLineCreate(product_id=product.id, unit_price=Decimal("1.50"))],
            ),
        )
    db_session.refresh(yen_plan)
    assert yen_plan.name == "Monthly Fiber"
    assert [line.unit_price for line in yen_plan.lines] == [Decimal("1000")]


def test_unused_plan_is_revised_in_place(db_session, plan, product):
    revised = catalog_service.plans.revise(
        db_session,
        str(plan.id),
        PlanRevision(
            name="Fiber 200",
            lines=[PlanLineCreate(product_id=product.id, unit_price=Decimal("120.00"))],
        ),
    )
    assert revised.id == plan.id
    assert revised.version == 1
    assert revised.name == "Fiber 200"
    assert [line.unit_price for line in revised.lines] == [Decimal("120.00")]


def test_plan_in_use_gets_new_version(db_session, plan, subscription):
    revised = catalog_service.plans.revise(
        db_session,
        str(plan.id),
        PlanRevision(name="Fiber 100 (2024)"),
    )
    original = catalog_service.plans.get(db_session, str(plan.id))

    assert revised.id != original.id
    assert revised.code == original.code
    assert revised.version == 2
    assert [line.unit_price for line in revised.lines] == [Decimal("100.00")]
    assert original.superseded_by_id == revised.id
    assert original.is_active is False
    assert original.name == "Monthly Fiber"
    assert subscription_service.subscriptions.get(db_session, str(subscription.id)).plan_id == plan.id
    assert catalog_service.current_version(db_session, original).id == revised.id


def test_superseded_plan_cannot_be_revised(db_session, plan, subscription):
    catalog_service.plans.revise(db_session, str(plan.id), PlanRevision(name="v2"))
    with pytest.raises(HTTPException) as exc:
        catalog_service.plans.revise(db_session, str(plan.id), PlanRevision(name="v3"))
    assert exc.value.status_code == 409


def test_plan_in_use(db_session, plan, subscription_factory):
    assert not catalog_service.plan_in_use(db_session, plan.id)
    subscription_factory(plan, activate=False)
    assert not catalog_service.plan_in_use(db_session, plan.id)
    subscription_factory(plan)
    assert catalog_service.plan_in_use(db_session, plan.id)


def test_discount_scope_must_exist(db_session):
    with pytest.raises(HTTPException) as exc:
        catalog_service.discounts.create(
            db_session,
            DiscountCreate(name="Orphan", value=Decimal("5"), plan_id=uuid.uuid4()),
        )
    assert exc.value.status_code == 404


def test_fixed_discount_currency_normalized(db_session):
    discount = catalog_service.discounts.create(
        db_session,
        DiscountCreate(
            name="Five off",
            discount_type=DiscountType.fixed,
            value=Decimal("5.00"),
            currency="usd",
        ),
    )
    assert discount.currency == "USD"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"value": Decimal("101")},
        {"discount_type": DiscountType.fixed, "value": Decimal("5")},
        {"value": Decimal("5"), "starts_on": "2024-02-01", "ends_on": "2024-01-01"},
        {"value": Decimal("-1")},
    ],
)
def test_discount_schema_validation(kwargs):
    with pytest.raises(ValidationError):
        DiscountCreate(name="Bad", **kwargs)


def test_tax_rate_bounds():
    with pytest.raises(ValidationError):
        TaxRateCreate(name="Too much", rate=Decimal("100.5"))


def test_deactivate_tax_rate(db_session):
    tax = catalog_service.tax_rates.create(db_session, TaxRateCreate(name="VAT", rate=Decimal("20")))
    catalog_service.tax_rates.deactivate(db_session, str(tax.id))
    active = catalog_service.tax_rates.list(db_session, is_active=True)
    assert tax.id not in [item.id for item in active]


def test_product_list(db_session, product):
    items = catalog_service.products.list_response(db_session, is_active=True, limit=10, offset=0)
    assert items["count"] == 1
    assert items["items"][0].id == product.id
