"""Unit tests for BookingService."""

import re
from datetime import timedelta
from uuid import uuid4

import pytest

from ridepool.core.exceptions import AuthorizationError, InvalidStateError, NotFoundError
from ridepool.models.booking import BookingStatus, PickupStatus
from ridepool.schemas.booking import UpdateBookingRequest
from ridepool.services.booking_service import BookingService, DuplicateBookingError, PaymentDeclinedError
from ridepool.services.collaborators import PaymentAuthorization
from ridepool.services.seat_ledger import InsufficientSeatsError

DRIVER_ID = "driver_1"
OTHER_DRIVER_ID = "driver_2"
RIDER_ID = "rider_1"
OTHER_RIDER_ID = "rider_2"


class DecliningPayments:
    """Payment collaborator that declines every authorization."""

    def __init__(self):
        self.requests = []

    async def authorize(self, amount, payer_reference):
        self.requests.append((amount, payer_reference))
        return PaymentAuthorization(approved=False, reason="card expired")


class ApprovingPayments:
    def __init__(self):
        self.requests = []

    async def authorize(self, amount, payer_reference):
        self.requests.append((amount, payer_reference))
        return PaymentAuthorization(approved=True, reference="auth_test_1")


async def _available(ride_service, ride_id) -> int:
    ride = await ride_service.get_ride_by_id(ride_id)
    return ride.available_seats


class TestRequestBooking:
    """Tests for creating booking requests."""

    @pytest.mark.asyncio
    async def test_request_creates_pending_booking(self, make_ride, booking_service, ride_service, booking_request, notifier):
        ride = await make_ride(seats=2, price=1500)

        booking = await booking_service.request_booking(booking_request(ride.id, 2), RIDER_ID)

        assert booking.status == BookingStatus.PENDING
        assert booking.pickup_status == PickupStatus.PENDING
        assert booking.number_of_seats == 2
        assert booking.price_per_seat_amount == 1500
        assert booking.pickup_pin_hash is None
        assert re.fullmatch(r"RP-20250802-[A-Z0-9]{6}", booking.confirmation_number)

        # Pending requests hold no seats
        assert await _available(ride_service, ride.id) == 2
        assert notifier.sent[-1][0] == DRIVER_ID
        assert notifier.events() == ["booking.requested"]

    @pytest.mark.asyncio
    async def test_request_more_seats_than_available(self, make_ride, booking_service, booking_request):
        ride = await make_ride(seats=2)

        with pytest.raises(InsufficientSeatsError) as exc_info:
            await booking_service.request_booking(booking_request(ride.id, 3), RIDER_ID)

        assert exc_info.value.available_seats == 2

    @pytest.mark.asyncio
    async def test_request_unknown_or_malformed_ride(self, booking_service, booking_request):
        with pytest.raises(NotFoundError):
            await booking_service.request_booking(booking_request(uuid4()), RIDER_ID)

        with pytest.raises(NotFoundError):
            await booking_service.request_booking(booking_request("not-a-uuid"), RIDER_ID)

    @pytest.mark.asyncio
    async def test_duplicate_open_booking_is_rejected(self, make_ride, make_booking, booking_service, booking_request):
        ride = await make_ride(seats=3)
        first = await make_booking(ride)

        with pytest.raises(DuplicateBookingError) as exc_info:
            await booking_service.request_booking(booking_request(ride.id), RIDER_ID)

        problem = exc_info.value.problem_details
        assert problem["code"] == "DUPLICATE_BOOKING"
        assert problem["conflicting_resource"]["booking_id"] == str(first.id)

    @pytest.mark.asyncio
    async def test_rider_can_rebook_after_rejection(self, make_ride, make_booking, booking_service, booking_request):
        ride = await make_ride(seats=2)
        first = await make_booking(ride)
        await booking_service.reject_booking(first.id, DRIVER_ID)

        second = await booking_service.request_booking(booking_request(ride.id), RIDER_ID)

        assert second.id != first.id
        assert second.status == BookingStatus.PENDING

    @pytest.mark.asyncio
    async def test_request_on_started_ride(self, make_ride, ride_service, booking_service, booking_request):
        ride = await make_ride()
        await ride_service.start_ride(ride.id, DRIVER_ID)

        with pytest.raises(InvalidStateError):
            await booking_service.request_booking(booking_request(ride.id), RIDER_ID)

    @pytest.mark.asyncio
    async def test_declined_payment_creates_nothing(self, test_session, make_ride, credential_service, clock, booking_request):
        ride = await make_ride(seats=2, price=1200)
        payments = DecliningPayments()
        service = BookingService(
            test_session,
            credentials=credential_service,
            payments=payments,
            clock=clock,
            payment_authorization_enabled=True
        )

        with pytest.raises(PaymentDeclinedError) as exc_info:
            await service.request_booking(booking_request(ride.id, 2), RIDER_ID)

        assert exc_info.value.status_code == 402
        assert payments.requests[0][0].amount == 2400
        assert await service.list_rider_bookings(RIDER_ID) == []

    @pytest.mark.asyncio
    async def test_approved_payment_reference_is_stored(self, test_session, make_ride, credential_service, clock, booking_request):
        ride = await make_ride()
        service = BookingService(
            test_session,
            credentials=credential_service,
            payments=ApprovingPayments(),
            clock=clock,
            payment_authorization_enabled=True
        )

        booking = await service.request_booking(booking_request(ride.id), RIDER_ID)

        assert booking.payment_authorization_ref == "auth_test_1"

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_request(
        self, test_session, make_ride, credential_service, clock, booking_request, failing_notifier
    ):
        ride = await make_ride()
        notifier = failing_notifier
        service = BookingService(
            test_session,
            credentials=credential_service,
            notifier=notifier,
            clock=clock,
            payment_authorization_enabled=False
        )

        booking = await service.request_booking(booking_request(ride.id), RIDER_ID)

        assert notifier.attempts == 1
        assert booking.status == BookingStatus.PENDING


class TestDriverDecisions:
    """Tests for accepting and rejecting requests."""

    @pytest.mark.asyncio
    async def test_accept_reserves_seats_and_issues_pin(self, make_ride, make_booking, booking_service, ride_service, clock, notifier):
        # Two seats requested on a two-seat ride empties it
        ride = await make_ride(seats=2)
        booking = await make_booking(ride, seats=2)

        accepted = await booking_service.accept_booking(booking.id, DRIVER_ID)

        assert accepted.status == BookingStatus.CONFIRMED
        assert accepted.pickup_status == PickupStatus.PENDING
        assert accepted.pickup_pin_hash is not None
        assert accepted.pickup_pin_encrypted is not None
        assert accepted.pickup_pin_attempts == 0
        assert accepted.pickup_pin_expires_at == clock() + timedelta(hours=24)
        assert await _available(ride_service, ride.id) == 0
        assert notifier.sent[-1][:2] == (RIDER_ID, "booking.accepted")

    @pytest.mark.asyncio
    async def test_accept_without_enough_seats_leaves_booking_pending(self, make_ride, make_booking, booking_service, ride_service):
        ride = await make_ride(seats=2)
        first = await make_booking(ride, seats=2)
        second = await make_booking(ride, rider_id=OTHER_RIDER_ID, seats=1)
        await booking_service.accept_booking(first.id, DRIVER_ID)

        with pytest.raises(InsufficientSeatsError):
            await booking_service.accept_booking(second.id, DRIVER_ID)

        second = await booking_service.get_booking_by_id(second.id)
        assert second.status == BookingStatus.PENDING
        assert second.pickup_pin_hash is None
        assert await _available(ride_service, ride.id) == 0

    @pytest.mark.asyncio
    async def test_accept_twice(self, make_ride, make_booking, booking_service, ride_service):
        ride = await make_ride(seats=3)
        booking = await make_booking(ride)
        await booking_service.accept_booking(booking.id, DRIVER_ID)

        with pytest.raises(InvalidStateError) as exc_info:
            await booking_service.accept_booking(booking.id, DRIVER_ID)

        assert "already confirmed" in exc_info.value.problem_details["detail"]
        assert await _available(ride_service, ride.id) == 2

    @pytest.mark.asyncio
    async def test_only_the_rides_driver_can_decide(self, make_ride, make_booking, booking_service):
        ride = await make_ride()
        booking = await make_booking(ride)

        with pytest.raises(AuthorizationError):
            await booking_service.accept_booking(booking.id, OTHER_DRIVER_ID)

        with pytest.raises(AuthorizationError):
            await booking_service.reject_booking(booking.id, OTHER_DRIVER_ID)

    @pytest.mark.asyncio
    async def test_accept_on_cancelled_ride(self, make_ride, make_booking, booking_service, ride_service):
        ride = await make_ride()
        booking = await make_booking(ride)
        await ride_service.cancel_ride(ride.id, DRIVER_ID)

        with pytest.raises(InvalidStateError):
            await booking_service.accept_booking(booking.id, DRIVER_ID)

    @pytest.mark.asyncio
    async def test_reject_leaves_inventory_alone(self, make_ride, make_booking, booking_service, ride_service, notifier):
        ride = await make_ride(seats=2)
        booking = await make_booking(ride)

        rejected = await booking_service.reject_booking(booking.id, DRIVER_ID)

        assert rejected.status == BookingStatus.REJECTED
        assert await _available(ride_service, ride.id) == 2
        assert notifier.sent[-1][:2] == (RIDER_ID, "booking.rejected")

    @pytest.mark.asyncio
    async def test_reject_confirmed_booking(self, make_ride, make_booking, booking_service):
        ride = await make_ride()
        booking = await make_booking(ride)
        await booking_service.accept_booking(booking.id, DRIVER_ID)

        with pytest.raises(InvalidStateError):
            await booking_service.reject_booking(booking.id, DRIVER_ID)


class TestCancelBooking:
    """Tests for rider cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_confirmed_releases_seats(self, make_ride, make_booking, booking_service, ride_service, notifier):
        ride = await make_ride(seats=3)
        booking = await make_booking(ride, seats=2)
        await booking_service.accept_booking(booking.id, DRIVER_ID)
        assert await _available(ride_service, ride.id) == 1

        cancelled = await booking_service.cancel_booking(booking.id, RIDER_ID)

        assert cancelled.status == BookingStatus.CANCELLED
        assert await _available(ride_service, ride.id) == 3
        assert notifier.sent[-1][:2] == (DRIVER_ID, "booking.cancelled")

    @pytest.mark.asyncio
    async def test_cancel_pending_keeps_inventory(self, make_ride, make_booking, booking_service, ride_service):
        ride = await make_ride(seats=2)
        booking = await make_booking(ride)

        cancelled = await booking_service.cancel_booking(booking.id, RIDER_ID)

        assert cancelled.status == BookingStatus.CANCELLED
        assert await _available(ride_service, ride.id) == 2

    @pytest.mark.asyncio
    async def test_cancel_twice(self, make_ride, make_booking, booking_service, ride_service):
        ride = await make_ride(seats=2)
        booking = await make_booking(ride, seats=2)
        await booking_service.accept_booking(booking.id, DRIVER_ID)
        await booking_service.cancel_booking(booking.id, RIDER_ID)

        with pytest.raises(InvalidStateError):
            await booking_service.cancel_booking(booking.id, RIDER_ID)

        # Seats are released exactly once
        assert await _available(ride_service, ride.id) == 2

    @pytest.mark.asyncio
    async def test_cancel_someone_elses_booking(self, make_ride, make_booking, booking_service):
        ride = await make_ride()
        booking = await make_booking(ride)

        with pytest.raises(AuthorizationError):
            await booking_service.cancel_booking(booking.id, OTHER_RIDER_ID)

    @pytest.mark.asyncio
    async def test_cancel_after_ride_completed(self, make_ride, make_booking, booking_service, ride_service):
        ride = await make_ride()
        booking = await make_booking(ride)
        await booking_service.accept_booking(booking.id, DRIVER_ID)
        await ride_service.start_ride(ride.id, DRIVER_ID)
        await ride_service.complete_ride(ride.id, DRIVER_ID)

        with pytest.raises(InvalidStateError):
            await booking_service.cancel_booking(booking.id, RIDER_ID)


class TestUpdateBooking:
    """Tests for rider edits before the ride starts."""

    @pytest.mark.asyncio
    async def test_confirmed_seat_increase_goes_through_ledger(self, make_ride, make_booking, booking_service, ride_service, notifier):
        ride = await make_ride(seats=3)
        booking = await make_booking(ride, seats=1)
        await booking_service.accept_booking(booking.id, DRIVER_ID)

        updated = await booking_service.update_booking(
            UpdateBookingRequest(booking_id=str(booking.id), number_of_seats=3),
            RIDER_ID
        )

        assert updated.number_of_seats == 3
        assert updated.status == BookingStatus.CONFIRMED
        assert await _available(ride_service, ride.id) == 0
        assert notifier.sent[-1][:2] == (DRIVER_ID, "booking.updated")

    @pytest.mark.asyncio
    async def test_confirmed_seat_decrease_releases(self, make_ride, make_booking, booking_service, ride_service):
        ride = await make_ride(seats=3)
        booking = await make_booking(ride, seats=3)
        await booking_service.accept_booking(booking.id, DRIVER_ID)

        await booking_service.update_booking(
            UpdateBookingRequest(booking_id=str(booking.id), number_of_seats=1),
            RIDER_ID
        )

        assert await _available(ride_service, ride.id) == 2

    @pytest.mark.asyncio
    async def test_confirmed_increase_beyond_inventory_changes_nothing(self, make_ride, make_booking, booking_service, ride_service):
        ride = await make_ride(seats=2)
        booking = await make_booking(ride, seats=1)
        await booking_service.accept_booking(booking.id, DRIVER_ID)

        with pytest.raises(InsufficientSeatsError):
            await booking_service.update_booking(
                UpdateBookingRequest(booking_id=str(booking.id), number_of_seats=3),
                RIDER_ID
            )

        booking = await booking_service.get_booking_by_id(booking.id)
        assert booking.number_of_seats == 1
        assert await _available(ride_service, ride.id) == 1

    @pytest.mark.asyncio
    async def test_pending_seat_change_is_only_checked(self, make_ride, make_booking, booking_service, ride_service):
        ride = await make_ride(seats=2)
        booking = await make_booking(ride, seats=1)

        updated = await booking_service.update_booking(
            UpdateBookingRequest(booking_id=str(booking.id), number_of_seats=2),
            RIDER_ID
        )
        assert updated.number_of_seats == 2
        assert await _available(ride_service, ride.id) == 2

        with pytest.raises(InsufficientSeatsError):
            await booking_service.update_booking(
                UpdateBookingRequest(booking_id=str(booking.id), number_of_seats=3),
                RIDER_ID
            )

    @pytest.mark.asyncio
    async def test_location_change(self, make_ride, make_booking, booking_service):
        ride = await make_ride()
        booking = await make_booking(ride)

        updated = await booking_service.update_booking(
            UpdateBookingRequest(
                booking_id=str(booking.id),
                pickup_address="Millbrae Station",
                pickup_latitude=37.6002,
                pickup_longitude=-122.3867
            ),
            RIDER_ID
        )

        assert updated.pickup_address == "Millbrae Station"
        assert updated.pickup_latitude == pytest.approx(37.6002)

    @pytest.mark.asyncio
    async def test_update_after_ride_started(self, make_ride, make_booking, booking_service, ride_service):
        ride = await make_ride(seats=3)
        booking = await make_booking(ride)
        await booking_service.accept_booking(booking.id, DRIVER_ID)
        await ride_service.start_ride(ride.id, DRIVER_ID)

        with pytest.raises(InvalidStateError):
            await booking_service.update_booking(
                UpdateBookingRequest(booking_id=str(booking.id), number_of_seats=2),
                RIDER_ID
            )

    @pytest.mark.asyncio
    async def test_update_closed_booking(self, make_ride, make_booking, booking_service):
        ride = await make_ride()
        booking = await make_booking(ride)
        await booking_service.cancel_booking(booking.id, RIDER_ID)

        with pytest.raises(InvalidStateError):
            await booking_service.update_booking(
                UpdateBookingRequest(booking_id=str(booking.id), number_of_seats=2),
                RIDER_ID
            )


class TestQueries:
    """Tests for booking visibility and listings."""

    @pytest.mark.asyncio
    async def test_booking_visible_to_rider_and_driver_only(self, make_ride, make_booking, booking_service):
        ride = await make_ride()
        booking = await make_booking(ride)

        assert (await booking_service.get_booking(booking.id, RIDER_ID)).id == booking.id
        assert (await booking_service.get_booking(booking.id, DRIVER_ID)).id == booking.id

        with pytest.raises(AuthorizationError):
            await booking_service.get_booking(booking.id, OTHER_RIDER_ID)

        with pytest.raises(NotFoundError):
            await booking_service.get_booking(uuid4(), RIDER_ID)

    @pytest.mark.asyncio
    async def test_list_ride_bookings_requires_ownership(self, make_ride, make_booking, booking_service):
        ride = await make_ride(seats=3)
        await make_booking(ride)
        await make_booking(ride, rider_id=OTHER_RIDER_ID)

        bookings = await booking_service.list_ride_bookings(ride.id, DRIVER_ID)
        assert {b.rider_id for b in bookings} == {RIDER_ID, OTHER_RIDER_ID}

        with pytest.raises(AuthorizationError):
            await booking_service.list_ride_bookings(ride.id, OTHER_DRIVER_ID)

    @pytest.mark.asyncio
    async def test_list_rider_bookings(self, make_ride, make_booking, booking_service):
        first_ride = await make_ride()
        second_ride = await make_ride()
        await make_booking(first_ride)
        await make_booking(second_ride)
        await make_booking(second_ride, rider_id=OTHER_RIDER_ID)

        bookings = await booking_service.list_rider_bookings(RIDER_ID)

        assert len(bookings) == 2
        assert all(b.rider_id == RIDER_ID for b in bookings)
