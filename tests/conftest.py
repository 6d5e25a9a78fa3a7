from __future__ import annotations

import os
from typing import Any, Dict, List, Optional, Tuple

# keep the import-time create_all away from the working directory
os.environ.setdefault("DATABASE_URL", "sqlite://")

import httpx
import pytest
import razorpay
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from aurelia.auth import create_token
from aurelia.config import Settings, get_settings
from aurelia.db import Base, get_db
from aurelia.main import app, get_http_client, get_razorpay_client
from aurelia.models import Order, Payment, Profile, User


class FakeUpstream:
    """Serves the phone widget JSON."""

    def __init__(self) -> None:
        self.widget: Optional[Dict[str, Any]] = {
            "user_country_code": "+1",
            "user_phone_number": "5551234567",
            "user_first_name": "Ada",
            "user_last_name": "Lovelace",
        }
        self.widget_status = 200
        self.widget_error: Optional[Exception] = None
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "widget.test":
            if self.widget_error is not None:
                raise self.widget_error
            if self.widget is None:
                return httpx.Response(404, text="not found")
            return httpx.Response(self.widget_status, json=self.widget)
        return httpx.Response(404)


class FakeOrders:
    """Stands in for ``razorpay.Client.order``; records every create call."""

    def __init__(self) -> None:
        self.response: Any = {"id": "order_rzp_1", "amount": 47000, "currency": "INR"}
        self.error: Optional[Exception] = None
        self.calls: List[Tuple[Dict[str, Any], Dict[str, Any]]] = []

    def create(self, data=None, **kwargs):
        self.calls.append((data, kwargs))
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        site_url="http://site.test",
        api_url="http://api.test",
        app_email_domain="aurelia.app",
        jwt_secret="test-secret",
        razorpay_key_id="rzp_test_key",
        razorpay_key_secret="s3cr3t",
        razorpay_api_base="https://api.razorpay.test",
        identity_page_size=2,
        identity_max_pages=20,
    )


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def http_client(upstream):
    with httpx.Client(transport=httpx.MockTransport(upstream)) as c:
        yield c


@pytest.fixture
def rzp(settings) -> razorpay.Client:
    c = razorpay.Client(auth=(settings.razorpay_key_id, settings.razorpay_key_secret))
    c.order = FakeOrders()
    return c


@pytest.fixture
def gateway(rzp) -> FakeOrders:
    return rzp.order


@pytest.fixture
def client(db, settings, http_client, rzp):
    def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_http_client] = lambda: http_client
    app.dependency_overrides[get_razorpay_client] = lambda: rzp
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def _make(email: Optional[str] = None, phone: Optional[str] = None, **kw) -> User:
        u = User(email=email, phone=phone, **kw)
        db.add(u)
        db.commit()
        db.refresh(u)
        return u

    return _make


@pytest.fixture
def auth_headers(settings):
    def _headers(user: User) -> Dict[str, str]:
        return {"Authorization": f"Bearer {create_token(user.id, settings)}"}

    return _headers


@pytest.fixture
def pending_order(db, make_user):
    """A customer with a profile and a pending order/payment totalling 250."""
    user = make_user(email="guest@example.com", phone="+919800000000")
    db.add(Profile(user_id=user.id, loyalty_points=10, total_orders=2))
    order = Order(order_number="ORD-20260101-ABCDEF", user_id=user.id, subtotal=200, tax_amount=0,
                  delivery_fee=50, total_amount=250, status="pending")
    db.add(order)
    db.flush()
    db.add(Payment(order_id=order.id, amount=250, status="pending", razorpay_order_id="order_abc"))
    db.commit()
    return user, order
