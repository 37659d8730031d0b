"""Pytest configuration for ordersync tests.

WHAT: Shared fixtures for service-level and HTTP endpoint tests
WHY: Consistent in-memory database, settings and tenant fixtures; no Redis,
     no SendCloud, no carrier-selection service needed
REFERENCES:
    - ordersync/main.py: FastAPI application
    - ordersync/database.py: Database configuration
    - ordersync/deps.py: Settings and API key dependency
"""

import os
import sys
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Generator, List

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure backend is in path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment (before any ordersync import reads it)
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("SENDCLOUD_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("ADMIN_PASSWORD", "test-admin-password")

API_KEY = os.environ["API_KEY"]
WEBHOOK_SECRET = os.environ["SENDCLOUD_WEBHOOK_SECRET"]


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """In-memory SQLite engine shared by every connection (TestClient threads)."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from ordersync.database import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)

    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def ctx():
    """Pipeline context with default ingestion settings."""
    from ordersync.services.tenant_context import PipelineContext

    return PipelineContext()


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(test_db_session):
    """FastAPI test application bound to the test session."""
    from ordersync.database import get_db
    from ordersync.main import create_app

    test_app = create_app()

    def override_get_db():
        yield test_db_session

    test_app.dependency_overrides[get_db] = override_get_db
    return test_app


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def api_headers():
    return {"X-API-Key": API_KEY, "Content-Type": "application/json"}


@pytest.fixture
def enrichments(monkeypatch) -> List[str]:
    """Capture product-enrichment enqueues."""
    calls: List[str] = []

    async def fake_enqueue(product_ids):
        ids = [str(product_id) for product_id in product_ids]
        calls.extend(ids)
        return len(ids)

    monkeypatch.setattr("ordersync.routers.orders.enqueue_product_enrichments", fake_enqueue)
    monkeypatch.setattr("ordersync.routers.sendcloud_webhooks.enqueue_product_enrichments", fake_enqueue)
    return calls


@pytest.fixture
def enqueued(monkeypatch, enrichments) -> List[str]:
    """Capture carrier-selection enqueues instead of talking to Redis."""
    calls: List[str] = []

    async def fake_enqueue(order_ids):
        ids = [str(order_id) for order_id in order_ids]
        calls.extend(ids)
        return len(ids)

    monkeypatch.setattr("ordersync.routers.orders.enqueue_carrier_selections", fake_enqueue)
    monkeypatch.setattr("ordersync.routers.sendcloud_webhooks.enqueue_carrier_selections", fake_enqueue)
    return calls


# ============================================================================
# Model Fixtures
# ============================================================================

@pytest.fixture
def make_product(test_db_session):
    """Factory: make_product("SKU-1", stock=5)."""
    from ordersync.models import Product

    def _make(reference: str, stock: int = 0, ean: str = None, name: str = None, weight: Decimal = Decimal("0.250")):
        product = Product(
            reference=reference,
            ean=ean,
            name=name or f"Product {reference}",
            unit_weight_kg=weight,
            stock_available=stock,
        )
        test_db_session.add(product)
        test_db_session.commit()
        return product

    return _make


@pytest.fixture
def tenant(test_db_session):
    """Client with a default sender, a brand sender, and a mapping on shop.fr."""
    from ordersync.models import Client, ClientMapping, SenderConfiguration

    client = Client(name="Maison Test")
    test_db_session.add(client)
    test_db_session.flush()

    default_sender = SenderConfiguration(
        client_id=client.id,
        name="Maison Test Entrepôt",
        address_line1="1 rue du Dépôt",
        postal_code="69000",
        city="Lyon",
        country_code="FR",
        is_default=True,
        created_at=datetime.utcnow() - timedelta(days=10),
    )
    brand_sender = SenderConfiguration(
        client_id=client.id,
        name="Brand B",
        address_line1="2 avenue des Marques",
        postal_code="75002",
        city="Paris",
        country_code="FR",
        created_at=datetime.utcnow() - timedelta(days=5),
    )
    test_db_session.add_all([default_sender, brand_sender])
    test_db_session.flush()

    mapping = ClientMapping(client_id=client.id, email_domain="shop.fr", sub_client="Shop FR")
    test_db_session.add(mapping)
    test_db_session.commit()

    return {"client": client, "default_sender": default_sender, "brand_sender": brand_sender, "mapping": mapping}


def order_payload(order_number: str = "CMD-1", sku: str = "SKU-1", quantity: int = 3, **overrides):
    """Flat inbound order payload with one line."""
    payload = {
        "id": f"ext-{order_number}",
        "order_number": order_number,
        "name": "Jeanne Martin",
        "email": "jeanne@shop.fr",
        "address": "10 rue de la Paix",
        "city": "Paris",
        "postal_code": "75001",
        "country": "FR",
        "total_order_value": "59.90",
        "order_items": [{"sku": sku, "name": "Mug", "quantity": quantity, "unit_price": "19.90"}],
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def payload_factory():
    return order_payload
