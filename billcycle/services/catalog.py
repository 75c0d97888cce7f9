"""Products, plans, discounts and tax rates."""

import logging

from fastapi import HTTPException
from sqlalchemy import func
from sqlalchemy.orm import Session, selectinload

from billcycle.models.catalog import Discount, Plan, PlanLine, Product, TaxRate
from billcycle.models.subscription import Subscription, SubscriptionStatus
from billcycle.schemas.catalog import (
    DiscountCreate,
    PlanCreate,
    PlanLineCreate,
    PlanRevision,
    ProductCreate,
    TaxRateCreate,
)
from billcycle.services.common import (
    apply_ordering,
    apply_pagination,
    coerce_uuid,
    get_by_id,
    get_or_404,
)
from billcycle.services.response import ListResponseMixin

logger = logging.getLogger(__name__)

_PLAN_FIELDS = (
    "name",
    "description",
    "currency",
    "billing_period",
    "calendar_aligned",
    "renewable",
    "pausable",
    "closable",
)


def _validate_product(db: Session, product_id) -> Product:
    product = get_by_id(db, Product, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    if not product.is_active:
        raise HTTPException(status_code=400, detail="Product is inactive")
    return product


def _build_lines(db: Session, lines: list[PlanLineCreate], currency: str) -> list[PlanLine]:
    from billcycle.services.billing.money import Money

    built = []
    for index, line in enumerate(lines):
        _validate_product(db, line.product_id)
        # Raises InvalidAmount for prices finer than the currency's minor unit.
        Money.of(line.unit_price, currency)
        built.append(
            PlanLine(
                product_id=line.product_id,
                description=line.description,
                unit_price=line.unit_price,
                quantity=line.quantity,
                position=line.position if line.position is not None else index,
            )
        )
    return built


def plan_in_use(db: Session, plan_id) -> bool:
    """True while an active or suspended subscription bills on this plan."""
    return (
        db.query(Subscription.id)
        .filter(Subscription.plan_id == coerce_uuid(plan_id))
        .filter(
            Subscription.status.in_(
                [SubscriptionStatus.active, SubscriptionStatus.suspended]
            )
        )
        .first()
        is not None
    )


def current_version(db: Session, plan: Plan) -> Plan:
    """Follow ``superseded_by_id`` to the newest revision of ``plan``."""
    seen = set()
    while plan.superseded_by_id is not None and plan.id not in seen:
        seen.add(plan.id)
        plan = db.get(Plan, plan.superseded_by_id)
    return plan


class Products(ListResponseMixin):
    @staticmethod
    def create(db: Session, payload: ProductCreate):
        product = Product(**payload.model_dump())
        db.add(product)
        db.commit()
        db.refresh(product)
        return product

    @staticmethod
    def get(db: Session, product_id: str):
        return get_or_404(db, Product, product_id, "Product not found")

    @staticmethod
    def list(
        db: Session,
        is_active: bool | None = None,
        order_by: str = "created_at",
        order_dir: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ):
        query = db.query(Product)
        if is_active is not None:
            query = query.filter(Product.is_active == is_active)
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {"created_at": Product.created_at, "name": Product.name},
        )
        return apply_pagination(query, limit, offset).all()


class Plans(ListResponseMixin):
    @staticmethod
    def create(db: Session, payload: PlanCreate):
        existing = db.query(Plan.id).filter(Plan.code == payload.code).first()
        if existing:
            raise HTTPException(status_code=409, detail="Plan code already exists")
        data = payload.model_dump(exclude={"lines"})
        data["currency"] = data["currency"].upper()
        plan = Plan(**data, version=1)
        plan.lines = _build_lines(db, payload.lines, plan.currency)
        db.add(plan)
        db.commit()
        db.refresh(plan)
        return plan

    @staticmethod
    def get(db: Session, plan_id: str):
        plan = get_by_id(db, Plan, plan_id, options=[selectinload(Plan.lines)])
        if not plan:
            raise HTTPException(status_code=404, detail="Plan not found")
        return plan

    @staticmethod
    def list(
        db: Session,
        code: str | None = None,
        is_active: bool | None = None,
        order_by: str = "created_at",
        order_dir: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ):
        query = db.query(Plan).options(selectinload(Plan.lines))
        if code:
            query = query.filter(Plan.code == code)
        if is_active is not None:
            query = query.filter(Plan.is_active == is_active)
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {"created_at": Plan.created_at, "code": Plan.code, "version": Plan.version},
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def revise(db: Session, plan_id: str, payload: PlanRevision):
        """Apply changes to a plan.

        Plans billed by an active or suspended subscription are frozen, so the
        changes land on a new version and the old row points at it.
        """
        plan = Plans.get(db, plan_id)
        if plan.superseded_by_id is not None:
            raise HTTPException(status_code=409, detail="Plan has been superseded")
        data = payload.model_dump(exclude_unset=True, exclude={"lines"})
        if not plan_in_use(db, plan.id):
            lines = None
            if payload.lines is not None:
                lines = _build_lines(db, payload.lines, plan.currency)
            for key, value in data.items():
                setattr(plan, key, value)
            if lines is not None:
                plan.lines = lines
            db.commit()
            db.refresh(plan)
            return plan

        latest = (
            db.query(func.max(Plan.version)).filter(Plan.code == plan.code).scalar()
        ) or plan.version
        values = {field: getattr(plan, field) for field in _PLAN_FIELDS}
        values.update(data)
        revision = Plan(code=plan.code, version=latest + 1, is_active=True, **values)
        if payload.lines is not None:
            revision.lines = _build_lines(db, payload.lines, revision.currency)
        else:
            revision.lines = [
                PlanLine(
                    product_id=line.product_id,
                    description=line.description,
                    unit_price=line.unit_price,
                    quantity=line.quantity,
                    position=line.position,
                )
                for line in plan.lines
            ]
        db.add(revision)
        db.flush()
        plan.superseded_by_id = revision.id
        plan.is_active = False
        db.commit()
        db.refresh(revision)
        logger.info("Plan %s revised to version %s", plan.code, revision.version)
        return revision


class Discounts(ListResponseMixin):
    @staticmethod
    def create(db: Session, payload: DiscountCreate):
        data = payload.model_dump()
        if data.get("currency"):
            data["currency"] = data["currency"].upper()
        if data.get("plan_id"):
            get_or_404(db, Plan, data["plan_id"], "Plan not found")
        if data.get("product_id"):
            get_or_404(db, Product, data["product_id"], "Product not found")
        discount = Discount(**data)
        db.add(discount)
        db.commit()
        db.refresh(discount)
        return discount

    @staticmethod
    def list(
        db: Session,
        plan_id: str | None = None,
        is_active: bool | None = None,
        order_by: str = "created_at",
        order_dir: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ):
        query = db.query(Discount)
        if plan_id:
            query = query.filter(Discount.plan_id == coerce_uuid(plan_id))
        if is_active is not None:
            query = query.filter(Discount.is_active == is_active)
        query = apply_ordering(
            query, order_by, order_dir, {"created_at": Discount.created_at}
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def deactivate(db: Session, discount_id: str):
        discount = get_or_404(db, Discount, discount_id, "Discount not found")
        discount.is_active = False
        db.commit()
        db.refresh(discount)
        return discount


class TaxRates(ListResponseMixin):
    @staticmethod
    def create(db: Session, payload: TaxRateCreate):
        data = payload.model_dump()
        if data.get("plan_id"):
            get_or_404(db, Plan, data["plan_id"], "Plan not found")
        if data.get("product_id"):
            get_or_404(db, Product, data["product_id"], "Product not found")
        tax_rate = TaxRate(**data)
        db.add(tax_rate)
        db.commit()
        db.refresh(tax_rate)
        return tax_rate

    @staticmethod
    def list(
        db: Session,
        is_active: bool | None = None,
        order_by: str = "created_at",
        order_dir: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ):
        query = db.query(TaxRate)
        if is_active is not None:
            query = query.filter(TaxRate.is_active == is_active)
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {"created_at": TaxRate.created_at, "name": TaxRate.name},
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def deactivate(db: Session, tax_rate_id: str):
        tax_rate = get_or_404(db, TaxRate, tax_rate_id, "Tax rate not found")
        tax_rate.is_active = False
        db.commit()
        db.refresh(tax_rate)
        return tax_rate


products = Products()
plans = Plans()
discounts = Discounts()
tax_rates = TaxRates()
