"""Test configuration and fixtures."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from datetime import datetime, timedelta  # noqa: E402
from typing import Any  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from ridepool.core.database import Base, build_engine, build_session_factory, create_tables  # noqa: E402
from ridepool.core.dependencies import (  # noqa: E402
    get_credential_service,
    get_db,
    get_identity_resolver,
    get_notifier,
)
from ridepool.core.identity import AssertedIdentityResolver  # noqa: E402
from ridepool.schemas.booking import CreateBookingRequest  # noqa: E402
from ridepool.schemas.common import Money  # noqa: E402
from ridepool.schemas.ride import PublishRideRequest  # noqa: E402
from ridepool.services.booking_service import BookingService  # noqa: E402
from ridepool.services.pickup_credentials import PickupCredentialService  # noqa: E402
from ridepool.services.pickup_service import PickupVerificationService  # noqa: E402
from ridepool.services.ride_service import RideService  # noqa: E402

# Test database URL (in-memory SQLite for speed)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

DRIVER_ID = "driver_1"
OTHER_DRIVER_ID = "driver_2"
RIDER_ID = "rider_1"
OTHER_RIDER_ID = "rider_2"

# Lowest bcrypt cost keeps hashing fast in tests
TEST_HASH_ROUNDS = 4
TEST_PIN_SECRET = "test-pin-secret"


class FakeClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2025, 8, 2, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class RecordingNotifier:
    """Notifier that keeps every notification it was asked to deliver."""

    def __init__(self):
        self.sent: list[tuple[str, str, dict[str, Any]]] = []

    async def notify(self, recipient_id: str, event: str, payload: dict[str, Any]) -> None:
        self.sent.append((recipient_id, event, payload))

    def events(self) -> list[str]:
        return [event for _, event, _ in self.sent]


class FailingNotifier:
    """Notifier whose delivery always fails."""

    def __init__(self):
        self.attempts = 0

    async def notify(self, recipient_id: str, event: str, payload: dict[str, Any]) -> None:
        self.attempts += 1
        raise ConnectionError("push gateway unavailable")


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create a test database engine."""
    engine = build_engine(TEST_DATABASE_URL)
    await create_tables(engine)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def test_session(test_engine):
    """Create a test database session."""
    async_session = build_session_factory(test_engine)
    async with async_session() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def file_engine(tmp_path):
    """File-backed SQLite engine, so separate sessions use separate connections."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'ridepool.db'}")
    await create_tables(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def file_session_factory(file_engine):
    return build_session_factory(file_engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def failing_notifier():
    return FailingNotifier()


@pytest.fixture
def credential_service():
    return PickupCredentialService(secret=TEST_PIN_SECRET, hash_rounds=TEST_HASH_ROUNDS)


@pytest.fixture
def ride_service(test_session, notifier, clock):
    return RideService(test_session, notifier=notifier, clock=clock)


@pytest.fixture
def booking_service(test_session, credential_service, notifier, clock):
    return BookingService(
        test_session,
        credentials=credential_service,
        notifier=notifier,
        clock=clock,
        payment_authorization_enabled=False
    )


@pytest.fixture
def pickup_service(test_session, credential_service, notifier, clock):
    return PickupVerificationService(
        test_session,
        credentials=credential_service,
        notifier=notifier,
        clock=clock
    )


def ride_request(seats: int = 2, price: int = 1500, departure_at: datetime | None = None) -> PublishRideRequest:
    return PublishRideRequest(
        from_address="1 Market St, San Francisco",
        to_address="500 University Ave, Palo Alto",
        departure_at=departure_at or datetime(2025, 8, 3, 8, 30),
        total_seats=seats,
        price_per_seat=Money(amount=price, currency="USD")
    )


def booking_request(ride_id, seats: int = 1) -> CreateBookingRequest:
    return CreateBookingRequest(
        ride_id=str(ride_id),
        number_of_seats=seats,
        pickup_address="Caltrain Station, 4th & King",
        pickup_latitude=37.7764,
        pickup_longitude=-122.3947
    )


@pytest.fixture
def make_ride(ride_service):
    """Publish a ride for a driver."""

    async def _make(seats: int = 2, driver_id: str = DRIVER_ID, price: int = 1500):
        return await ride_service.publish_ride(ride_request(seats=seats, price=price), driver_id)

    return _make


@pytest.fixture
def make_booking(booking_service):
    """Create a pending booking for a rider."""

    async def _make(ride, rider_id: str = RIDER_ID, seats: int = 1):
        return await booking_service.request_booking(booking_request(ride.id, seats), rider_id)

    return _make


@pytest_asyncio.fixture(scope="function")
async def test_app(test_session, credential_service, notifier):
    """Create the application with test dependencies swapped in."""
    from ridepool.main import create_app

    app = create_app()

    async def override_get_db():
        yield test_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_identity_resolver] = lambda: AssertedIdentityResolver()
    app.dependency_overrides[get_credential_service] = lambda: credential_service
    app.dependency_overrides[get_notifier] = lambda: notifier

    yield app

    app.dependency_overrides.clear()


@pytest_asyncio.fixture(scope="function")
async def test_client(test_app):
    """Create a test HTTP client."""
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def as_driver(user_id: str = DRIVER_ID) -> dict[str, str]:
    return {"X-User-Id": user_id, "X-User-Role": "driver"}


def as_rider(user_id: str = RIDER_ID) -> dict[str, str]:
    return {"X-User-Id": user_id, "X-User-Role": "rider"}


@pytest.fixture
def driver_headers():
    return as_driver()


@pytest.fixture
def rider_headers():
    return as_rider()


@pytest.fixture
def sample_ride_data():
    """Sample ride publication payload."""
    return {
        "from_address": "1 Market St, San Francisco",
        "to_address": "500 University Ave, Palo Alto",
        "departure_at": "2030-08-03T08:30:00Z",
        "total_seats": 2,
        "price_per_seat": {"amount": 1500, "currency": "USD"}
    }


@pytest.fixture
def sample_booking_data():
    """Sample booking request payload, minus the ride id."""
    return {
        "number_of_seats": 2,
        "pickup_address": "Caltrain Station, 4th & King",
        "pickup_latitude": 37.7764,
        "pickup_longitude": -122.3947
    }


@pytest.fixture(name="booking_request")
def booking_request_fixture():
    """Builder for booking request payloads."""
    return booking_request


@pytest.fixture(name="ride_request")
def ride_request_fixture():
    """Builder for ride publication payloads."""
    return ride_request


@pytest.fixture
def driver_headers_for():
    return as_driver


@pytest.fixture
def rider_headers_for():
    return as_rider
