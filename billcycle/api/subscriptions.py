from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from billcycle.db import get_db
from billcycle.schemas.common import ListResponse
from billcycle.schemas.subscription import (
    SubscriptionAction,
    SubscriptionCreate,
    SubscriptionEventRead,
    SubscriptionRead,
    SubscriptionRenew,
)
from billcycle.services import subscriptions as subscription_service

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@router.post("", response_model=SubscriptionRead, status_code=status.HTTP_201_CREATED)
def create_subscription(payload: SubscriptionCreate, db: Session = Depends(get_db)):
    return subscription_service.subscriptions.create(db, payload)


@router.get("/{subscription_id}", response_model=SubscriptionRead)
def get_subscription(subscription_id: str, db: Session = Depends(get_db)):
    return subscription_service.subscriptions.get(db, subscription_id)


@router.get("", response_model=ListResponse[SubscriptionRead])
def list_subscriptions(
    customer_id: str | None = None,
    plan_id: str | None = None,
    status: str | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return subscription_service.subscriptions.list_response(
        db,
        customer_id=customer_id,
        plan_id=plan_id,
        status=status,
        order_by=order_by,
        order_dir=order_dir,
        limit=limit,
        offset=offset,
    )


@router.get("/{subscription_id}/history", response_model=list[SubscriptionEventRead])
def subscription_history(subscription_id: str, db: Session = Depends(get_db)):
    return subscription_service.subscriptions.history(db, subscription_id)


@router.post("/{subscription_id}/activate", response_model=SubscriptionRead)
def activate_subscription(
    subscription_id: str,
    payload: SubscriptionAction | None = None,
    db: Session = Depends(get_db),
):
    actor = payload.actor if payload else None
    return subscription_service.subscriptions.activate(db, subscription_id, actor=actor)


@router.post("/{subscription_id}/suspend", response_model=SubscriptionRead)
def suspend_subscription(
    subscription_id: str,
    payload: SubscriptionAction | None = None,
    db: Session = Depends(get_db),
):
    payload = payload or SubscriptionAction()
    return subscription_service.subscriptions.suspend(
        db, subscription_id, reason=payload.reason, actor=payload.actor
    )


@router.post("/{subscription_id}/reactivate", response_model=SubscriptionRead)
def reactivate_subscription(
    subscription_id: str,
    payload: SubscriptionAction | None = None,
    db: Session = Depends(get_db),
):
    actor = payload.actor if payload else None
    return subscription_service.subscriptions.reactivate(db, subscription_id, actor=actor)


@router.post("/{subscription_id}/cancel", response_model=SubscriptionRead)
def cancel_subscription(
    subscription_id: str,
    payload: SubscriptionAction | None = None,
    db: Session = Depends(get_db),
):
    payload = payload or SubscriptionAction()
    return subscription_service.cancel_subscription(
        db,
        subscription_id,
        effective_date=payload.effective_date,
        reason=payload.reason,
        actor=payload.actor,
    )


@router.post(
    "/{subscription_id}/renew",
    response_model=SubscriptionRead,
    status_code=status.HTTP_201_CREATED,
)
def renew_subscription(
    subscription_id: str,
    payload: SubscriptionRenew | None = None,
    db: Session = Depends(get_db),
):
    return subscription_service.subscriptions.renew(db, subscription_id, payload)
