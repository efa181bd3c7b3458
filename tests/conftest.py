from decimal import Decimal
from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from core.db import Base, get_db
from core.payment_config import PaymentConfig, SSLCommerzConfig, ShurjoPayConfig, StripeConfig
from models.invoice import Invoice
from models.user import User
from services import email as email_service
from services.gateways.registry import build_registry, get_gateway_registry
from services.invoices import InvoiceLedger
from services.payment_orchestrator import PaymentOrchestrator


@pytest.fixture()
def payment_config():
    return PaymentConfig(
        stripe=StripeConfig(secret_key="sk_test_123", publishable_key="pk_test_123", webhook_secret="whsec_test"),
        ssl_commerz=SSLCommerzConfig(store_id="teststore", store_password="teststore@ssl", sandbox=True),
        shurjopay=ShurjoPayConfig(
            endpoint="https://sandbox.shurjopayment.com",
            username="sp_sandbox",
            password="sp_password",
            prefix="SP",
            return_url="http://localhost:3000/payment/shurjopay",
            cancel_url="http://localhost:3000/payment/cancelled",
        ),
        backend_url="http://testserver",
        frontend_url="http://localhost:3000",
        http_timeout=5,
    )


@pytest.fixture()
def gateways(payment_config):
    return build_registry(payment_config)


@pytest.fixture()
def stripe_client(gateways, monkeypatch):
    """Mock Stripe SDK client behind the registry's Stripe adapter."""
    client = Mock()
    monkeypatch.setattr(gateways.get("stripe"), "client", client)
    return client


@pytest.fixture()
def db():
    """Fresh in-memory database per test, shared with the app through get_db."""
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _fk_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture(autouse=True)
def mock_email_send(monkeypatch):
    sent = []

    def _fake_send(to_email: str, subject: str, body: str) -> None:
        sent.append({"to": to_email, "subject": subject, "body": body})

    monkeypatch.setattr(email_service, "send_email", _fake_send)
    return sent


@pytest.fixture()
def client(db, gateways):
    def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_gateway_registry] = lambda: gateways
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()


@pytest.fixture()
def orchestrator(db, gateways):
    return PaymentOrchestrator(db, gateways)


@pytest.fixture()
def ledger(db):
    return InvoiceLedger(db)


@pytest.fixture
def test_user(db):
    user = User(first_name="Rahim", last_name="Uddin", email="rahim@example.com", phone="01700000000")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def make_invoice(ledger, test_user):
    def _make(total="1500.00", payment_method="cash_on_delivery", **extra) -> Invoice:
        data = {
            "user_id": test_user.id,
            "subtotal": Decimal(total),
            "payment_method": payment_method,
        }
        data.update(extra)
        return ledger.create(data)

    return _make


@pytest.fixture
def invoice(make_invoice):
    return make_invoice()
