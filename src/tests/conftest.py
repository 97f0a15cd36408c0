"""Pytest fixtures: a file-backed SQLite database per test and seeded catalog data."""
import os

# Must be set before the app modules read their settings
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["PAYMENT_PROCESSOR_URL"] = ""
os.environ["PAYMENT_WEBHOOK_SECRET"] = ""

from datetime import timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from main import app
from src.api.deps import get_payment_gateway
from src.core.config import Settings
from src.core.database import get_db
from src.models.database import Base, utcnow
from src.models.schemas import EventCreate, ProductCreate
from src.services.catalog_service import CatalogService
from src.services.order_engine import OrderEngine
from src.services.payment_gateway import PaymentGatewayAdapter


@pytest.fixture
def test_settings():
    return Settings(
        DATABASE_URL="sqlite://",
        PAYMENT_PROCESSOR_URL="",
        PAYMENT_SIMULATION_DELAY_SECONDS=0,
        PAYMENT_WEBHOOK_SECRET="whsec_test",
        PICKUP_CANCEL_WINDOW_MINUTES=15,
    )


@pytest.fixture
def test_engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'merchstand_test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture
def test_db(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def gateway(test_settings):
    """Processor not configured: every intent is simulated and settles instantly"""
    return PaymentGatewayAdapter(test_settings)


@pytest.fixture
def make_engine(session_factory, gateway, test_settings):
    """Build order engines on independent sessions, like separate request handlers"""
    sessions = []

    def _make(payment_gateway=None):
        db = session_factory()
        sessions.append(db)
        return OrderEngine(db, gateway=payment_gateway or gateway, config=test_settings)

    yield _make
    for db in sessions:
        db.close()


@pytest.fixture
def merch_event(test_db):
    """An event running right now"""
    catalog = CatalogService(test_db)
    return catalog.create_event(EventCreate(
        name="Summer Tour - Berlin",
        venue_name="Columbiahalle",
        address="Columbiadamm 13-21, Berlin",
        latitude=52.4836,
        longitude=13.3907,
        geofence_radius=250.0,
        start_date=utcnow() - timedelta(hours=1),
        end_date=utcnow() + timedelta(hours=4),
        merchant_ids=["band-1"],
    ))


@pytest.fixture
def tour_tee(test_db, merch_event):
    """$20.00 shirt with S:5, M:3, L:0, sellable at merch_event"""
    catalog = CatalogService(test_db)
    product = catalog.create_product(ProductCreate(
        merchant_id="band-1",
        title="Tour Tee",
        price=Decimal("20.00"),
        sizes=["S", "M", "L"],
        inventory={"S": 5, "M": 3, "L": 0},
    ))
    catalog.link_product(product.id, merch_event.id)
    return product


@pytest.fixture
def tour_hoodie(test_db, merch_event):
    """$55.50 hoodie with M:2, XL:4, sellable at merch_event"""
    catalog = CatalogService(test_db)
    product = catalog.create_product(ProductCreate(
        merchant_id="band-1",
        title="Tour Hoodie",
        price=Decimal("55.50"),
        sizes=["M", "XL"],
        inventory={"M": 2, "XL": 4},
    ))
    catalog.link_product(product.id, merch_event.id)
    return product


@pytest.fixture
def client(session_factory, gateway):
    """FastAPI TestClient wired to the test database and the simulated gateway"""

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
