import os
import uuid
from datetime import date
from decimal import Decimal

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite://")

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from billcycle.db import Base
from billcycle.models.catalog import BillingPeriod
from billcycle.schemas.catalog import PlanCreate, PlanLineCreate, ProductCreate
from billcycle.schemas.subscription import SubscriptionCreate
from billcycle.services import catalog as catalog_service
from billcycle.services import subscriptions as subscription_service


@pytest.fixture(scope="session")
def engine():
    database_url = os.getenv("TEST_DATABASE_URL")
    if database_url:
        engine = create_engine(database_url)
    else:
        engine = create_engine(
            "sqlite+pysqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

        @event.listens_for(engine, "connect")
        def _configure_sqlite(dbapi_connection, _connection_record):
            # Let SQLAlchemy emit BEGIN itself so SAVEPOINTs work under pysqlite.
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _begin(conn):
            conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    return engine


@pytest.fixture()
def db_session(engine):
    """Session whose commits and rollbacks stay inside one outer transaction."""
    connection = engine.connect()
    transaction = connection.begin()
    session = Session(
        bind=connection,
        autoflush=False,
        join_transaction_mode="create_savepoint",
    )
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture()
def customer_id():
    return uuid.uuid4()


@pytest.fixture()
def product(db_session):
    return catalog_service.products.create(
        db_session,
        ProductCreate(name="Fiber 100", sku=f"FIB-{uuid.uuid4().hex[:8]}"),
    )


def make_plan(db_session, product, **overrides):
    lines = overrides.pop(
        "lines",
        [PlanLineCreate(product_id=product.id, unit_price=Decimal("100.00"))],
    )
    data = {
        "code": f"PLAN-{uuid.uuid4().hex[:8]}",
        "name": "Monthly Fiber",
        "currency": "USD",
        "billing_period": BillingPeriod.monthly,
    }
    data.update(overrides)
    return catalog_service.plans.create(db_session, PlanCreate(lines=lines, **data))


def make_subscription(db_session, plan, customer_id, start=date(2024, 1, 1), end=None, activate=True):
    subscription = subscription_service.subscriptions.create(
        db_session,
        SubscriptionCreate(
            customer_id=customer_id,
            plan_id=plan.id,
            start_date=start,
            end_date=end,
        ),
    )
    if activate:
        subscription = subscription_service.subscriptions.activate(
            db_session, str(subscription.id)
        )
    return subscription


@pytest.fixture()
def plan(db_session, product):
    return make_plan(db_session, product)


@pytest.fixture()
def subscription(db_session, plan, customer_id):
    return make_subscription(db_session, plan, customer_id)


@pytest.fixture()
def plan_factory(db_session, product):
    def _factory(**overrides):
        return make_plan(db_session, product, **overrides)

    return _factory


@pytest.fixture()
def subscription_factory(db_session, customer_id):
    def _factory(plan, **kwargs):
        return make_subscription(db_session, plan, customer_id, **kwargs)

    return _factory
