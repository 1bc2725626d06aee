import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import wayfare.db.models_all  # noqa: F401
from wayfare.api import deps
from wayfare.core import clock
from wayfare.core.config import settings
from wayfare.core.security import create_access_token
from wayfare.db.session import Base, get_db
from wayfare.main import app
from wayfare.services import cart_service
from wayfare.services.booking_coordinator import BookingCoordinator
from wayfare.services.booking_lifecycle import BookingLifecycleService
from wayfare.services.cancellation_service import CancellationService
from wayfare.services.checkout_service import CheckoutService
from wayfare.services.payment_service import PaymentService
from wayfare.services.providers import ProviderRegistry

from factories import NOW, USER_ID, adult, contact, flight
from fakes import FakeCatalog, FakeGateway, FakeProvider, RecordingNotifier

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class FrozenClock:
    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture(autouse=True)
def frozen_clock(monkeypatch):
    fake = FrozenClock(NOW)
    monkeypatch.setattr(clock, "now", fake)
    return fake


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    monkeypatch.setattr(settings, "EXTERNAL_CALL_BACKOFF_SECONDS", 0)
    monkeypatch.setattr(settings, "EXTERNAL_CALL_MAX_ATTEMPTS", 3)
    monkeypatch.setattr(settings, "PRICE_TOLERANCE_CENTS", 0)
    monkeypatch.setattr(settings, "PRICE_TOLERANCE_PERCENT", 0.0)


@pytest.fixture(autouse=True)
def clean_database():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def gateway():
    return FakeGateway()


@pytest.fixture()
def catalog():
    return FakeCatalog()


@pytest.fixture()
def air():
    return FakeProvider("air")


@pytest.fixture()
def hotel():
    return FakeProvider("hotel")


@pytest.fixture()
def cars():
    return FakeProvider("cars")


@pytest.fixture()
def providers(air, hotel, cars):
    registry = ProviderRegistry()
    registry.register("air", air)
    registry.register("hotel", hotel)
    registry.register("cars", cars)
    return registry


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def payments(db, gateway):
    return PaymentService(db, gateway)


@pytest.fixture()
def checkout(db, catalog, payments):
    return CheckoutService(db, catalog, payments)


@pytest.fixture()
def coordinator(db, checkout, payments, providers, notifier):
    return BookingCoordinator(db, checkout, payments, providers, notifier)


@pytest.fixture()
def lifecycle(db, providers, notifier, coordinator):
    return BookingLifecycleService(db, providers, notifier, coordinator=coordinator)


@pytest.fixture()
def cancellations(db, providers, payments, notifier):
    return CancellationService(db, providers, payments, notifier)


@pytest.fixture()
def fill_cart(db, catalog, frozen_clock):
    """Put items in the user's cart and publish their prices in the catalog.

    The clock ticks between items so cart order (by created_at) is stable.
    """

    def _fill(*items, user_id=USER_ID):
        cart = None
        for item in items:
            added = cart_service.add_item(db, user_id, **item)
            catalog.prices[added.offer_id] = added.price_cents
            frozen_clock.advance(seconds=1)
            cart = added.cart
        db.commit()
        return cart

    return _fill


@pytest.fixture()
def ready_session(db, checkout, fill_cart):
    """A checkout session with verified prices and valid travelers."""

    def _ready(*items, travelers=None, user_id=USER_ID):
        cart = fill_cart(*(items or (flight(),)), user_id=user_id)
        session = checkout.initialize(cart.id, user_id)
        checkout.verify_prices(session.id, user_id)
        checkout.submit_traveler_details(session.id, travelers or [adult()], contact(), user_id)
        return session

    return _ready


@pytest.fixture()
def auth_headers():
    return {"Authorization": f"Bearer {create_access_token(USER_ID)}"}


@pytest.fixture()
def client(gateway, catalog, providers):
    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[deps.get_gateway] = lambda: gateway
    app.dependency_overrides[deps.get_catalog] = lambda: catalog
    app.dependency_overrides[deps.get_providers] = lambda: providers
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
