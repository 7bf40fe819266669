import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("RUN_MIGRATIONS", "false")
os.environ.setdefault("PAYMENT_WEBHOOK_SECRET", "whsec_test")

from decimal import Decimal
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from commerce_core.api.deps import get_caller, get_payment_gateway
from commerce_core.application.orders import OrderService
from commerce_core.application.schemas import DiscountCreate, LineItemCreate, OrderCreate, Principal
from commerce_core.core_settings import get_settings
from commerce_core.domain.models import Base
from commerce_core.infrastructure.db import get_db
from commerce_core.infrastructure.gateway import GatewayCaller, MockPaymentGateway
from commerce_core.main import app

WEBHOOK_SECRET = get_settings().PAYMENT_WEBHOOK_SECRET
VISA = {"number": "4242424242424242", "exp_month": 12, "exp_year": 2030, "cvc": "123"}
DECLINED = {"number": "4000000000000002", "exp_month": 12, "exp_year": 2030, "cvc": "123"}


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture()
def db(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def gateway() -> MockPaymentGateway:
    return MockPaymentGateway(WEBHOOK_SECRET)


@pytest.fixture()
def caller() -> Generator[GatewayCaller, None, None]:
    caller = GatewayCaller(timeout=5.0)
    yield caller
    caller.shutdown()


@pytest.fixture()
def client(session_factory, gateway, caller) -> Generator[TestClient, None, None]:
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_caller] = lambda: caller
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture()
def customer() -> Principal:
    return Principal(id="user-1", role="customer", email="user1@example.com")


@pytest.fixture()
def other_customer() -> Principal:
    return Principal(id="user-2", role="customer", email="user2@example.com")


@pytest.fixture()
def admin() -> Principal:
    return Principal(id="admin-1", role="admin", email="admin@example.com")


def headers_for(principal: Principal) -> dict:
    headers = {"X-User-Id": principal.id, "X-User-Role": principal.role}
    if principal.email:
        headers["X-User-Email"] = principal.email
    return headers


def sample_order(**overrides) -> OrderCreate:
    """One line item of 25.00 x 2 with 10% off: total 45.00."""
    data = {
        "line_items": [LineItemCreate(product_id="prod-1", sku="MUG-1", quantity=2, price=Decimal("25.00"))],
        "discounts": [DiscountCreate(code="TEN", type="percentage", value=Decimal("10"))],
    }
    data.update(overrides)
    return OrderCreate(**data)


@pytest.fixture()
def order(db, customer):
    return OrderService(db).create_order(customer, sample_order())
