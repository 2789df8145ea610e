"""Pytest fixtures: in-memory database, seeded catalog, recording notifier."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from storefront.config import Config
from storefront.database import Base, make_session_factory
from storefront.main import create_app
from storefront.messaging.dispatcher import NotificationDispatcher
from storefront.models import Product, User
from storefront.schemas import OrderCreate, OrderDetail, OrderLine, ProductSnapshot
from storefront.site_settings import SiteSettings, StaticSettingsProvider

ALICE, BOB, ADMIN = 1, 2, 3


class RecordingTransport:
    """Keeps submitted events instead of delivering them."""

    def __init__(self):
        self.events = []

    def submit(self, event):
        self.events.append(event)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    factory = make_session_factory(engine)

    session = factory()
    session.add_all([
        User(id=ALICE, name="Alice Doe", email="alice@example.com", role="user"),
        User(id=BOB, name="Bob Roe", email="bob@example.com", role="user"),
        User(id=ADMIN, name="Admin", email="admin@example.com", role="admin"),
    ])
    session.add_all([
        Product(id=1, name="Terminal Block 12-Way", price=Decimal("8.75"), stock=10, sku="TB-12"),
        Product(id=2, name="5A Fast Blow Fuse", price=Decimal("1.25"), stock=5, sku="FUSE-5A"),
        Product(id=3, name="Relay 12V", price=Decimal("3.40"), stock=1, sku="RLY-12"),
        Product(id=4, name="Discontinued Sensor", price=Decimal("5.00"), stock=10, sku="OLD-1",
                is_active=False),
        Product(id=5, name="Resistor Kit", price=Decimal("2.10"), stock=50, sku="RES-KIT"),
    ])
    session.commit()
    session.close()
    return factory


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def notifier(transport):
    return NotificationDispatcher([], transport=transport)


def stock_of(session_factory, product_id):
    session = session_factory()
    try:
        return session.get(Product, product_id).stock
    finally:
        session.close()


def cart(*lines, payment_method="cash_on_delivery", notes=None):
    return OrderCreate(
        items=[{"product_id": pid, "quantity": qty} for pid, qty in lines],
        shipping_address="12 Market Street, Springfield",
        phone="+1 555 0100 200",
        payment_method=payment_method,
        notes=notes,
    )


@pytest.fixture
def order_detail():
    return OrderDetail(
        id=123,
        user_id=ALICE,
        customer_name="John Doe",
        customer_email="john@example.com",
        status="pending",
        total_amount=Decimal("10.00"),
        shipping_address="123 Main St, City",
        phone="123-4567890",
        payment_method="bank_transfer",
        notes="Leave at the door",
        created_at=datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc),
        items=[
            OrderLine(id=1, product_id=1, quantity=1, price=Decimal("8.75"),
                      product=ProductSnapshot(id=1, name="Terminal Block 12-Way", sku="TB-12")),
            OrderLine(id=2, product_id=2, quantity=1, price=Decimal("1.25"),
                      product=ProductSnapshot(id=2, name="5A Fast Blow Fuse", sku="FUSE-5A")),
        ],
    )


@pytest.fixture
def configured_settings():
    return StaticSettingsProvider(SiteSettings(
        site_name="Test Store",
        site_email="shop@example.com",
        smtp_host="smtp.example.com",
        smtp_username="mailer",
        smtp_password="secret",
        telegram_bot_token="test_token_12345",
        telegram_chat_id="123456789",
    ))


@pytest.fixture
def config(tmp_path):
    return Config(
        database_url="sqlite://",
        upload_dir=str(tmp_path / "uploads"),
        receipt_max_bytes=1024,
        notification_transport="inprocess",
        rabbitmq_host="localhost",
        rabbitmq_user="guest",
        rabbitmq_password="guest",
        telegram_api_base="http://telegram.test",
        log_level="INFO",
    )


@pytest.fixture
def client(engine, session_factory, notifier, config):
    app = create_app(config=config, engine=engine, dispatcher=notifier, settings=StaticSettingsProvider())
    return TestClient(app)


def as_user(user_id=ALICE):
    return {"X-User-Id": str(user_id), "X-User-Role": "user"}


def as_admin(user_id=ADMIN):
    return {"X-User-Id": str(user_id), "X-User-Role": "admin"}
