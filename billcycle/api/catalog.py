from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from billcycle.db import get_db
from billcycle.schemas.catalog import (
    DiscountCreate,
    DiscountRead,
    PlanCreate,
    PlanRead,
    PlanRevision,
    ProductCreate,
    ProductRead,
    TaxRateCreate,
    TaxRateRead,
)
from billcycle.schemas.common import ListResponse
from billcycle.services import catalog as catalog_service

router = APIRouter(prefix="/catalog")


@router.post(
    "/products",
    response_model=ProductRead,
    status_code=status.HTTP_201_CREATED,
    tags=["products"],
)
def create_product(payload: ProductCreate, db: Session = Depends(get_db)):
    return catalog_service.products.create(db, payload)


@router.get("/products/{product_id}", response_model=ProductRead, tags=["products"])
def get_product(product_id: str, db: Session = Depends(get_db)):
    return catalog_service.products.get(db, product_id)


@router.get("/products", response_model=ListResponse[ProductRead], tags=["products"])
def list_products(
    is_active: bool | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return catalog_service.products.list_response(
        db,
        is_active=is_active,
        order_by=order_by,
        order_dir=order_dir,
        limit=limit,
        offset=offset,
    )


@router.post(
    "/plans",
    response_model=PlanRead,
    status_code=status.HTTP_201_CREATED,
    tags=["plans"],
)
def create_plan(payload: PlanCreate, db: Session = Depends(get_db)):
    return catalog_service.plans.create(db, payload)


@router.get("/plans/{plan_id}", response_model=PlanRead, tags=["plans"])
def get_plan(plan_id: str, db: Session = Depends(get_db)):
    return catalog_service.plans.get(db, plan_id)


@router.get("/plans", response_model=ListResponse[PlanRead], tags=["plans"])
def list_plans(
    code: str | None = None,
    is_active: bool | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return catalog_service.plans.list_response(
        db,
        code=code,
        is_active=is_active,
        order_by=order_by,
        order_dir=order_dir,
        limit=limit,
        offset=offset,
    )


@router.patch("/plans/{plan_id}", response_model=PlanRead, tags=["plans"])
def revise_plan(plan_id: str, payload: PlanRevision, db: Session = Depends(get_db)):
    return catalog_service.plans.revise(db, plan_id, payload)


@router.post(
    "/discounts",
    response_model=DiscountRead,
    status_code=status.HTTP_201_CREATED,
    tags=["discounts"],
)
def create_discount(payload: DiscountCreate, db: Session = Depends(get_db)):
    return catalog_service.discounts.create(db, payload)


@router.get("/discounts", response_model=ListResponse[DiscountRead], tags=["discounts"])
def list_discounts(
    plan_id: str | None = None,
    is_active: bool | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return catalog_service.discounts.list_response(
        db,
        plan_id=plan_id,
        is_active=is_active,
        order_by=order_by,
        order_dir=order_dir,
        limit=limit,
        offset=offset,
    )


@router.post("/discounts/{discount_id}/deactivate", response_model=DiscountRead, tags=["discounts"])
def deactivate_discount(discount_id: str, db: Session = Depends(get_db)):
    return catalog_service.discounts.deactivate(db, discount_id)


@router.post(
    "/tax-rates",
    response_model=TaxRateRead,
    status_code=status.HTTP_201_CREATED,
    tags=["tax-rates"],
)
def create_tax_rate(payload: TaxRateCreate, db: Session = Depends(get_db)):
    return catalog_service.tax_rates.create(db, payload)


@router.get("/tax-rates", response_model=ListResponse[TaxRateRead], tags=["tax-rates"])
def list_tax_rates(
    is_active: bool | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return catalog_service.tax_rates.list_response(
        db,
        is_active=is_active,
        order_by=order_by,
        order_dir=order_dir,
        limit=limit,
        offset=offset,
    )


@router.post("/tax-rates/{tax_rate_id}/deactivate", response_model=TaxRateRead, tags=["tax-rates"])
def deactivate_tax_rate(tax_rate_id: str, db: Session = Depends(get_db)):
    return catalog_service.tax_rates.deactivate(db, tax_rate_id)
