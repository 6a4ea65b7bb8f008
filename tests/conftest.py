from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from storefront_core.config import Settings
from storefront_core.logic import create_coupon
from storefront_core.main import create_app
from storefront_core.models import CouponCreate, utcnow
from storefront_core.storage import Database


class FakeClock:
    """Manually advanced clock returning epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'storefront.db'}",
        log_level="WARNING",
        log_format="console",
    )


@pytest.fixture
def database(settings):
    db = Database(settings)
    db.startup()
    yield db
    db.shutdown()


@pytest.fixture
def session(database):
    with database.session() as session:
        yield session


@pytest.fixture
def make_coupon(session):
    def _make(code="SAVE10", **overrides):
        data = {
            "code": code,
            "description": "Ten percent off",
            "discountType": "PERCENTAGE",
            "discountValue": 10,
            "validFrom": utcnow() - timedelta(days=1),
        }
        data.update(overrides)
        return create_coupon(session, CouponCreate(**data))
    return _make


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client
