"""Concurrency tests for seat inventory and pickup verification.

Each concurrent caller gets its own session on a file-backed database, so the
statements really interleave on separate connections.
"""

import asyncio

import pytest

from ridepool.core.exceptions import InvalidStateError, PinMismatchError
from ridepool.models.booking import BookingStatus, PickupStatus
from ridepool.schemas.booking import CreateBookingRequest, UpdateBookingRequest
from ridepool.schemas.common import Money
from ridepool.schemas.ride import PublishRideRequest
from ridepool.services.booking_service import BookingService
from ridepool.services.pickup_service import PickupVerificationService
from ridepool.services.ride_service import RideService
from ridepool.services.seat_ledger import InsufficientSeatsError

pytestmark = pytest.mark.concurrency

DRIVER_ID = "driver_1"


@pytest.fixture
def services(file_session_factory, credential_service, notifier, clock):
    """Run a coroutine against fresh booking, ride and pickup services on a new session."""

    async def _run(operation):
        async with file_session_factory() as session:
            booking_service = BookingService(
                session,
                credentials=credential_service,
                notifier=notifier,
                clock=clock,
                payment_authorization_enabled=False
            )
            ride_service = RideService(session, notifier=notifier, clock=clock)
            pickup_service = PickupVerificationService(
                session,
                credentials=credential_service,
                notifier=notifier,
                clock=clock
            )
            return await operation(booking_service, ride_service, pickup_service)

    return _run


async def _ride_with_requests(services, total_seats: int, seats_per_request: list[int]):
    """Publish a ride and have one rider per entry request that many seats."""

    async def setup(bookings, rides, _):
        ride = await rides.publish_ride(
            PublishRideRequest(
                from_address="1 Market St, San Francisco",
                to_address="500 University Ave, Palo Alto",
                departure_at="2025-08-03T08:30:00",
                total_seats=total_seats,
                price_per_seat=Money(amount=1500, currency="USD")
            ),
            DRIVER_ID
        )
        requested = []
        for index, seats in enumerate(seats_per_request):
            booking = await bookings.request_booking(
                CreateBookingRequest(
                    ride_id=str(ride.id),
                    number_of_seats=seats,
                    pickup_address=f"Stop {index}",
                    pickup_latitude=37.7,
                    pickup_longitude=-122.4
                ),
                f"rider_{index}"
            )
            requested.append(booking)
        return ride, requested

    return await services(setup)


async def _ride_state(services, ride_id):
    async def read(bookings, rides, _):
        ride = await rides.get_ride_by_id(ride_id)
        return ride, await bookings.list_ride_bookings(ride_id, DRIVER_ID)

    return await services(read)


@pytest.mark.asyncio
async def test_concurrent_accepts_never_overbook(services):
    """Five one-seat requests race for three seats; exactly three are confirmed."""
    ride, requested = await _ride_with_requests(services, total_seats=3, seats_per_request=[1] * 5)

    async def accept(booking_id):
        return await services(lambda bookings, _, __: bookings.accept_booking(booking_id, DRIVER_ID))

    results = await asyncio.gather(*(accept(b.id) for b in requested), return_exceptions=True)

    accepted = [r for r in results if not isinstance(r, Exception)]
    refused = [r for r in results if isinstance(r, Exception)]
    assert len(accepted) == 3
    assert len(refused) == 2
    assert all(isinstance(r, InsufficientSeatsError) for r in refused)

    ride, bookings = await _ride_state(services, ride.id)
    assert ride.available_seats == 0
    statuses = sorted(b.status for b in bookings)
    assert statuses.count(BookingStatus.CONFIRMED) == 3
    assert statuses.count(BookingStatus.PENDING) == 2


@pytest.mark.asyncio
async def test_last_seat_goes_to_exactly_one_driver_accept(services):
    ride, requested = await _ride_with_requests(services, total_seats=2, seats_per_request=[2, 2])

    async def accept(booking_id):
        return await services(lambda bookings, _, __: bookings.accept_booking(booking_id, DRIVER_ID))

    results = await asyncio.gather(*(accept(b.id) for b in requested), return_exceptions=True)

    assert sum(1 for r in results if not isinstance(r, Exception)) == 1
    ride, _ = await _ride_state(services, ride.id)
    assert ride.available_seats == 0


@pytest.mark.asyncio
async def test_accept_racing_rider_cancel_keeps_inventory_consistent(services):
    ride, requested = await _ride_with_requests(services, total_seats=3, seats_per_request=[2])
    booking_id = requested[0].id

    accept = services(lambda bookings, _, __: bookings.accept_booking(booking_id, DRIVER_ID))
    cancel = services(lambda bookings, _, __: bookings.cancel_booking(booking_id, "rider_0"))
    results = await asyncio.gather(accept, cancel, return_exceptions=True)

    for result in results:
        if isinstance(result, Exception):
            assert isinstance(result, InvalidStateError)

    ride, bookings = await _ride_state(services, ride.id)
    held = sum(b.number_of_seats for b in bookings if b.status == BookingStatus.CONFIRMED)
    assert ride.available_seats == ride.total_seats - held


@pytest.mark.asyncio
async def test_concurrent_wrong_pins_are_all_counted(services):
    ride, requested = await _ride_with_requests(services, total_seats=2, seats_per_request=[1])
    booking_id = requested[0].id
    await services(lambda bookings, _, __: bookings.accept_booking(booking_id, DRIVER_ID))
    await services(lambda _, rides, __: rides.start_ride(ride.id, DRIVER_ID))

    async def wrong_pin():
        return await services(lambda _, __, pickups: pickups.verify_pickup(booking_id, DRIVER_ID, "0000"))

    results = await asyncio.gather(wrong_pin(), wrong_pin(), return_exceptions=True)

    assert all(isinstance(r, PinMismatchError) for r in results)
    remaining = sorted(r.problem_details["attempts_remaining"] for r in results)
    assert remaining == [3, 4]

    _, bookings = await _ride_state(services, ride.id)
    assert bookings[0].pickup_pin_attempts == 2


@pytest.mark.asyncio
async def test_concurrent_correct_pins_pick_up_once(services):
    ride, requested = await _ride_with_requests(services, total_seats=2, seats_per_request=[1])
    booking_id = requested[0].id
    await services(lambda bookings, _, __: bookings.accept_booking(booking_id, DRIVER_ID))
    await services(lambda _, rides, __: rides.start_ride(ride.id, DRIVER_ID))
    revealed = await services(lambda _, __, pickups: pickups.get_pickup_pin(booking_id, "rider_0"))

    async def verify():
        return await services(lambda _, __, pickups: pickups.verify_pickup(booking_id, DRIVER_ID, revealed.pin))

    outcomes = await asyncio.gather(verify(), verify())

    assert sorted(o.already_picked_up for o in outcomes) == [False, True]
    assert all(o.booking.pickup_status == PickupStatus.PICKED_UP for o in outcomes)


def _resize(services, booking_id, seats: int):
    """Have the rider change the seat count from a separate session."""
    return services(lambda bookings, _, __: bookings.update_booking(
        UpdateBookingRequest(booking_id=str(booking_id), number_of_seats=seats),
        "rider_0"
    ))


@pytest.mark.asyncio
async def test_accept_racing_pending_seat_edit_keeps_inventory_consistent(services, monkeypatch):
    """A resize landing after the driver read the booking makes the accept lose, not confirm the wrong size."""
    ride, requested = await _ride_with_requests(services, total_seats=4, seats_per_request=[1])
    booking_id = requested[0].id

    async def accept_with_resize_in_between(bookings, _, __):
        load_owned_ride = bookings.ride_service.get_owned_ride

        async def resize_then_load(ride_id, driver_id):
            await _resize(services, booking_id, 3)
            return await load_owned_ride(ride_id, driver_id)

        monkeypatch.setattr(bookings.ride_service, "get_owned_ride", resize_then_load)
        return await bookings.accept_booking(booking_id, DRIVER_ID)

    with pytest.raises(InvalidStateError):
        await services(accept_with_resize_in_between)

    ride, bookings = await _ride_state(services, ride.id)
    assert bookings[0].status == BookingStatus.PENDING
    assert bookings[0].number_of_seats == 3
    held = sum(b.number_of_seats for b in bookings if b.status == BookingStatus.CONFIRMED)
    assert ride.available_seats == ride.total_seats - held == 4

    # A fresh accept reserves the edited count
    await services(lambda bookings, _, __: bookings.accept_booking(booking_id, DRIVER_ID))
    ride, _ = await _ride_state(services, ride.id)
    assert ride.available_seats == 1


@pytest.mark.asyncio
async def test_cancel_racing_confirmed_seat_edit_keeps_inventory_consistent(services, monkeypatch):
    """A resize landing after the rider's cancel read the booking never leaks seats."""
    ride, requested = await _ride_with_requests(services, total_seats=4, seats_per_request=[2])
    booking_id = requested[0].id
    await services(lambda bookings, _, __: bookings.accept_booking(booking_id, DRIVER_ID))

    async def cancel_with_resize_in_between(bookings, _, __):
        load_ride = bookings.ride_service.get_ride_by_id_or_raise

        async def resize_then_load(ride_id):
            await _resize(services, booking_id, 3)
            return await load_ride(ride_id)

        monkeypatch.setattr(bookings.ride_service, "get_ride_by_id_or_raise", resize_then_load)
        return await bookings.cancel_booking(booking_id, "rider_0")

    with pytest.raises(InvalidStateError):
        await services(cancel_with_resize_in_between)

    ride, bookings = await _ride_state(services, ride.id)
    assert bookings[0].status == BookingStatus.CONFIRMED
    assert bookings[0].number_of_seats == 3
    held = sum(b.number_of_seats for b in bookings if b.status == BookingStatus.CONFIRMED)
    assert ride.available_seats == ride.total_seats - held == 1

    # Cancelling again releases everything the booking holds
    await services(lambda bookings, _, __: bookings.cancel_booking(booking_id, "rider_0"))
    ride, _ = await _ride_state(services, ride.id)
    assert ride.available_seats == 4
