import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["EMAIL_ENABLED"] = "false"
os.environ["PAYMONGO_SANDBOX"] = "true"
os.environ["REALTIME_BACKEND"] = "memory"

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.session import Base, get_db
from app.main import app
from app.core.security import create_access_token
from app.models.user import User
from app.models.service_provider import ServiceProvider, ServicePackage
from app.models.booking import Booking
from app.models.payment import PaymentTransaction
# remaining models only need to be registered on Base.metadata
from app.models import refund, notification, email_log, audit_log  # noqa: F401

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture()
def db():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def client(db):
    def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def _user(db, email, account_type, first_name="Test"):
    u = User(email=email, first_name=first_name, last_name="User", account_type=account_type,
             password_hash="not-a-real-hash", is_active=True)
    db.add(u)
    db.commit()
    db.refresh(u)
    return u


@pytest.fixture()
def fur_parent(db):
    return _user(db, "owner@example.com", "fur_parent", "Maria")


@pytest.fixture()
def other_parent(db):
    return _user(db, "other@example.com", "fur_parent", "Pedro")


@pytest.fixture()
def business(db):
    return _user(db, "center@example.com", "business", "Rainbow")


@pytest.fixture()
def admin(db):
    return _user(db, "admin@example.com", "admin", "Admin")


@pytest.fixture()
def provider(db, business):
    p = ServiceProvider(user_id=business.id, name="Rainbow Bridge Pet Cremation", provider_type="cremation")
    db.add(p)
    db.commit()
    db.refresh(p)
    return p


@pytest.fixture()
def package(db, provider):
    p = ServicePackage(provider_id=provider.id, name="Private Cremation", description="With urn",
                       price=Decimal("1500.00"))
    db.add(p)
    db.commit()
    db.refresh(p)
    return p


@pytest.fixture()
def make_booking(db, fur_parent, provider, package):
    def _make(payment_method="cash", payment_status="paid", total="1500.00", user=None, booking_id=None):
        b = Booking(
            user_id=(user or fur_parent).id,
            provider_id=provider.id,
            package_id=package.id,
            pet_name="Mochi",
            booking_date="2026-11-02",
            booking_time="10:00",
            total_price=Decimal(total),
            payment_method=payment_method,
            payment_status=payment_status,
            status="confirmed" if payment_status == "paid" else "pending",
        )
        if booking_id is not None:
            b.id = booking_id
        db.add(b)
        db.commit()
        db.refresh(b)
        return b
    return _make


@pytest.fixture()
def gcash_payment(db):
    def _make(booking, payment_id="pay_test_123"):
        tx = PaymentTransaction(booking_id=booking.id, provider="paymongo", payment_method="gcash",
                                amount=booking.total_price, status="succeeded",
                                provider_transaction_id=payment_id)
        db.add(tx)
        db.commit()
        return tx
    return _make


def auth_headers(user) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id, user.account_type, user.email)}"}


class FakePayMongo:
    """Stands in for the gateway client; records calls and fails on demand."""

    def __init__(self, error=None, status="pending"):
        self.error = error
        self.status = status
        self.calls = []

    def create_refund(self, *, payment_id, amount, reason="requested_by_customer", notes=None):
        self.calls.append({"payment_id": payment_id, "amount": amount})
        if self.error:
            raise self.error
        return {"id": f"ref_fake_{len(self.calls)}", "attributes": {"status": self.status}}


@pytest.fixture()
def paymongo(monkeypatch):
    from app.services import refund_service

    fake = FakePayMongo()
    monkeypatch.setattr(refund_service, "get_paymongo_client", lambda: fake)
    return fake
