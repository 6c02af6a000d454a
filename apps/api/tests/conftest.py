"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

# Inject sys.path for reliable pytest imports
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))  # => .../apps/api
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "reaper"))  # => .../apps/reaper
sys.path.insert(0, str(Path(__file__).resolve().parent))  # => stripe_helpers

import os

# Must be set before resortpay_api.db.session is imported
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ["RESORTPAY_JSON_LOGS"] = "false"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["ADMIN_TOKEN"] = "admin-test-token"
os.environ.pop("STRIPE_SECRET_KEY", None)

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from resortpay_api.db.engine import build_engine, build_sessionmaker
from resortpay_api.db.models import Base, ChaletBooking, PoolTicket, RestaurantOrder, SnackOrder
from resortpay_api.db.session import get_db
from resortpay_api.main import create_app

WEBHOOK_SECRET = "whsec_test_secret"
ADMIN_TOKEN = "admin-test-token"

REFERENCE_MODELS = {
    "restaurant_order": RestaurantOrder,
    "snack_order": SnackOrder,
    "chalet_booking": ChaletBooking,
    "pool_ticket": PoolTicket,
}


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite (one connection per session, so threads and
    concurrent requests never share a transaction). Ledger triggers are
    installed by create_all."""
    engine = build_engine(f"sqlite:///{tmp_path / 'resortpay_test.db'}")
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_sessionmaker(engine)


@pytest.fixture
def db_session(session_factory) -> Session:
    """Fresh database session for each test."""
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def seed_reference(db_session: Session):
    """Create a reference row (order/booking/ticket) awaiting payment."""

    def _seed(reference_type: str, reference_id: str, *, customer_id="user_1", payment_status="pending"):
        model = REFERENCE_MODELS[reference_type]
        row = model(id=reference_id, customer_id=customer_id, payment_status=payment_status)
        db_session.add(row)
        db_session.commit()
        return row

    return _seed


@pytest.fixture
def mock_provider():
    """Stripe client stand-in injected through create_app()."""
    provider = AsyncMock()
    provider.create_refund = AsyncMock(return_value={"id": "re_test_1", "status": "succeeded"})
    return provider


@pytest.fixture
def app(session_factory, mock_provider):
    """Application wired to the test database and mocked provider."""
    test_app = create_app(payment_provider=mock_provider, otel_enabled=False)

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    test_app.dependency_overrides[get_db] = override_get_db
    yield test_app
    test_app.dependency_overrides.clear()


@pytest.fixture
def test_client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Token": ADMIN_TOKEN}
