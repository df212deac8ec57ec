"""Booking service for business logic operations."""

import asyncio
import logging
import secrets
import string
from datetime import datetime
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.exceptions import AuthorizationError, ConflictError, InvalidStateError, NotFoundError, ProblemDetailsException
from ..core.observability import metrics_collector
from ..models.booking import ACTIVE_BOOKING_STATUSES, Booking, BookingStatus, PickupStatus
from ..models.ride import Ride, RideStatus
from ..schemas.booking import CreateBookingRequest, UpdateBookingRequest
from ..schemas.common import Money
from .booking_state import BookingAction, BookingTransition, apply_ride_transition, apply_transition, resolve_transition
from .collaborators import (
    BookingEvent,
    LocalPaymentAuthorizer,
    LoggingNotifier,
    Notifier,
    PaymentAuthorizer,
    emit_notification,
)
from .pickup_credentials import PickupCredentialService
from .ride_service import RideService, parse_id
from .seat_ledger import InsufficientSeatsError, SeatLedger

logger = logging.getLogger(__name__)

_CLOSED_BOOKING_STATUSES = (BookingStatus.CANCELLED, BookingStatus.REJECTED, BookingStatus.COMPLETED)


class DuplicateBookingError(ConflictError):
    """Exception when a rider already has an open booking on a ride."""

    def __init__(self, ride_id: str, rider_id: str, booking_id: Optional[str] = None):
        conflicting = {"ride_id": ride_id, "rider_id": rider_id}
        if booking_id:
            conflicting["booking_id"] = booking_id

        super().__init__(
            detail="You already have a booking for this ride",
            conflicting_resource=conflicting
        )
        self.problem_details.update({
            "code": "DUPLICATE_BOOKING",
            "retryable": False
        })


class PaymentDeclinedError(ProblemDetailsException):
    """Exception when the payment collaborator declines the authorization."""

    def __init__(self, reason: Optional[str] = None):
        super().__init__(
            status_code=402,
            title="Payment Declined",
            detail=f"Payment authorization was declined{': ' + reason if reason else ''}",
            type_uri="https://example.com/problems/payment-declined",
            extensions={
                "code": "PAYMENT_DECLINED",
                "retryable": True,
            },
        )


class BookingService:
    """Service for booking-related operations."""

    def __init__(
        self,
        db: AsyncSession,
        credentials: Optional[PickupCredentialService] = None,
        notifier: Optional[Notifier] = None,
        payments: Optional[PaymentAuthorizer] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        payment_authorization_enabled: Optional[bool] = None,
    ):
        self.db = db
        self.credentials = credentials or PickupCredentialService.from_settings()
        self.notifier = notifier or LoggingNotifier()
        self.payments = payments or LocalPaymentAuthorizer()
        self.clock = clock
        self.payment_authorization_enabled = (
            settings.payment_authorization_enabled
            if payment_authorization_enabled is None
            else payment_authorization_enabled
        )
        self.ledger = SeatLedger(db)
        self.ride_service = RideService(db, notifier=self.notifier, clock=clock)

    def _generate_confirmation_number(self, now: datetime, length: int = 6) -> str:
        """Generate a booking confirmation number like RP-20250802-7K3QX9."""
        alphabet = string.ascii_uppercase + string.digits
        suffix = ''.join(secrets.choice(alphabet) for _ in range(length))
        return f"RP-{now:%Y%m%d}-{suffix}"

    async def request_booking(self, request: CreateBookingRequest, rider_id: str) -> Booking:
        """
        Create a pending booking request on a scheduled ride.

        No seats are reserved; the seat check here is advisory and the
        driver's accept is where inventory is actually taken.

        Args:
            request: Booking request
            rider_id: Rider requesting the seats

        Returns:
            Created booking entity in 'pending' status

        Raises:
            NotFoundError: If ride not found
            InvalidStateError: If the ride is no longer scheduled
            InsufficientSeatsError: If the ride cannot currently seat the request
            DuplicateBookingError: If the rider already has an open booking on the ride
            PaymentDeclinedError: If payment authorization is enabled and declined
        """
        ride_id = parse_id(request.ride_id, "ride")
        ride = await self.ride_service.get_ride_by_id_or_raise(ride_id)

        if ride.status != RideStatus.SCHEDULED:
            raise InvalidStateError(
                resource_type="ride",
                resource_id=request.ride_id,
                current_status=RideStatus(ride.status).value,
                detail="This ride is no longer accepting bookings",
            )

        if ride.available_seats < request.number_of_seats:
            logger.warning(
                "Booking request rejected - insufficient seats",
                extra={
                    "ride_id": request.ride_id,
                    "rider_id": rider_id,
                    "requested_seats": request.number_of_seats,
                    "available_seats": ride.available_seats
                }
            )
            raise InsufficientSeatsError(
                ride_id=request.ride_id,
                requested_seats=request.number_of_seats,
                available_seats=ride.available_seats
            )

        existing = await self._find_active_booking(ride_id, rider_id)
        if existing:
            raise DuplicateBookingError(request.ride_id, rider_id, str(existing.id))

        price_per_seat = Money(amount=ride.price_per_seat_amount, currency=ride.price_currency)
        authorization_ref = None
        if self.payment_authorization_enabled:
            authorization = await self.payments.authorize(
                price_per_seat.times(request.number_of_seats),
                rider_id
            )
            if not authorization.approved:
                logger.warning(
                    "Booking request rejected - payment declined",
                    extra={"ride_id": request.ride_id, "rider_id": rider_id, "reason": authorization.reason}
                )
                raise PaymentDeclinedError(authorization.reason)
            authorization_ref = authorization.reference

        now = self.clock()
        booking = Booking(
            ride_id=ride_id,
            rider_id=rider_id,
            confirmation_number=self._generate_confirmation_number(now),
            number_of_seats=request.number_of_seats,
            status=BookingStatus.PENDING,
            pickup_status=PickupStatus.PENDING,
            pickup_address=request.pickup_address,
            pickup_latitude=request.pickup_latitude,
            pickup_longitude=request.pickup_longitude,
            price_per_seat_amount=price_per_seat.amount,
            price_currency=price_per_seat.currency,
            payment_authorization_ref=authorization_ref,
            pickup_pin_attempts=0
        )
        self.db.add(booking)

        try:
            await self.db.commit()
        except IntegrityError:
            # Lost a race against a concurrent request by the same rider
            await self.db.rollback()
            raise DuplicateBookingError(request.ride_id, rider_id) from None

        await self.db.refresh(booking)
        metrics_collector.record_booking_requested()

        logger.info(
            "Booking requested",
            extra={
                "booking_id": str(booking.id),
                "ride_id": request.ride_id,
                "rider_id": rider_id,
                "seats": booking.number_of_seats,
                "confirmation_number": booking.confirmation_number
            }
        )

        await emit_notification(
            self.notifier,
            ride.driver_id,
            BookingEvent.REQUESTED,
            {
                "booking_id": str(booking.id),
                "ride_id": request.ride_id,
                "number_of_seats": booking.number_of_seats
            }
        )
        return booking

    async def accept_booking(self, booking_id: UUID, driver_id: str) -> Booking:
        """
        Accept a pending booking: reserve its seats and issue a pickup PIN.

        The seat reservation, the status change and the new credential are
        one transaction. If the ride runs out of seats nothing is applied and
        the booking stays pending.

        Raises:
            NotFoundError: If booking not found
            AuthorizationError: If the driver does not own the ride
            InvalidStateError: If the ride is over or the booking is not pending
            InsufficientSeatsError: If the ride no longer has enough seats
        """
        booking = await self.get_booking_by_id_or_raise(booking_id)
        ride = await self.ride_service.get_owned_ride(booking.ride_id, driver_id)
        self._ensure_ride_open(ride)
        edge = resolve_transition(BookingAction.ACCEPT, booking)

        now = self.clock()
        credential = await asyncio.to_thread(self.credentials.issue, now)

        try:
            remaining = await self.ledger.reserve(ride.id, booking.number_of_seats)

            # The ride may have been cancelled while we waited on its row
            ride_status = await self._current_ride_status(ride.id)
            if ride_status.is_terminal:
                raise InvalidStateError(
                    resource_type="ride",
                    resource_id=str(ride.id),
                    current_status=ride_status.value,
                    detail=f"Cannot accept bookings on a {ride_status.value} ride",
                )

            await apply_transition(
                self.db,
                booking,
                edge,
                now,
                pickup_status=PickupStatus.PENDING,
                picked_up_at=None,
                pickup_pin_hash=credential.pin_hash,
                pickup_pin_encrypted=credential.pin_encrypted,
                pickup_pin_expires_at=credential.expires_at,
                pickup_pin_attempts=0,
                pickup_pin_locked_until=None
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Booking accepted",
            extra={
                "booking_id": str(booking_id),
                "ride_id": str(ride.id),
                "driver_id": driver_id,
                "seats": booking.number_of_seats,
                "available_seats": remaining,
                "pin_expires_at": credential.expires_at.isoformat()
            }
        )

        booking = await self.get_booking_by_id_or_raise(booking_id)
        await emit_notification(
            self.notifier,
            booking.rider_id,
            BookingEvent.ACCEPTED,
            {
                "booking_id": str(booking.id),
                "ride_id": str(ride.id),
                "confirmation_number": booking.confirmation_number
            }
        )
        return booking

    async def reject_booking(self, booking_id: UUID, driver_id: str) -> Booking:
        """
        Reject a pending booking. Pending bookings hold no seats, so inventory is untouched.

        Raises:
            NotFoundError: If booking not found
            AuthorizationError: If the driver does not own the ride
            InvalidStateError: If the booking is not pending
        """
        booking = await self.get_booking_by_id_or_raise(booking_id)
        ride = await self.ride_service.get_owned_ride(booking.ride_id, driver_id)
        edge = resolve_transition(BookingAction.REJECT, booking)

        try:
            await apply_transition(self.db, booking, edge, self.clock())
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Booking rejected",
            extra={"booking_id": str(booking_id), "ride_id": str(ride.id), "driver_id": driver_id}
        )

        booking = await self.get_booking_by_id_or_raise(booking_id)
        await emit_notification(
            self.notifier,
            booking.rider_id,
            BookingEvent.REJECTED,
            {"booking_id": str(booking.id), "ride_id": str(ride.id)}
        )
        return booking

    async def cancel_booking(self, booking_id: UUID, rider_id: str) -> Booking:
        """
        Cancel a rider's booking, releasing its seats if it was confirmed.

        Raises:
            NotFoundError: If booking not found
            AuthorizationError: If the booking belongs to another rider
            InvalidStateError: If the booking or its ride is already closed
        """
        booking = await self.get_rider_booking(booking_id, rider_id)
        ride = await self.ride_service.get_ride_by_id_or_raise(booking.ride_id)
        self._ensure_ride_open(ride)
        edge = resolve_transition(BookingAction.CANCEL, booking)

        try:
            await apply_transition(self.db, booking, edge, self.clock())
            if edge.releases_seats:
                await self.ledger.release(ride.id, booking.number_of_seats)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Booking cancelled",
            extra={
                "booking_id": str(booking_id),
                "ride_id": str(ride.id),
                "rider_id": rider_id,
                "previous_status": edge.source.value,
                "seats_released": booking.number_of_seats if edge.releases_seats else 0
            }
        )

        booking = await self.get_booking_by_id_or_raise(booking_id)
        await emit_notification(
            self.notifier,
            ride.driver_id,
            BookingEvent.CANCELLED,
            {"booking_id": str(booking.id), "ride_id": str(ride.id)}
        )
        return booking

    async def update_booking(self, request: UpdateBookingRequest, rider_id: str) -> Booking:
        """
        Edit seats or pickup location before the ride starts.

        A seat change on a confirmed booking goes through the ledger in the
        same transaction as the new seat count; on a pending booking it is
        only checked against the ride's current availability.

        Raises:
            NotFoundError: If booking not found
            AuthorizationError: If the booking belongs to another rider
            InvalidStateError: If the booking is closed or the ride is no longer scheduled
            InsufficientSeatsError: If the ride cannot seat the new count
        """
        booking_id = parse_id(request.booking_id, "booking")
        booking = await self.get_rider_booking(booking_id, rider_id)

        current = BookingStatus(booking.status)
        if current in _CLOSED_BOOKING_STATUSES:
            raise InvalidStateError(
                resource_type="booking",
                resource_id=request.booking_id,
                current_status=current.value,
                detail=f"Cannot update a {current.value} booking",
            )

        ride = await self.ride_service.get_ride_by_id_or_raise(booking.ride_id)
        if ride.status != RideStatus.SCHEDULED:
            raise InvalidStateError(
                resource_type="ride",
                resource_id=str(ride.id),
                current_status=RideStatus(ride.status).value,
                detail="Bookings can only be changed before the ride starts",
            )

        values = {}
        if request.changes_location:
            values.update(
                pickup_address=request.pickup_address,
                pickup_latitude=request.pickup_latitude,
                pickup_longitude=request.pickup_longitude
            )

        old_seats = booking.number_of_seats
        new_seats = request.number_of_seats
        seat_delta = 0
        if new_seats is not None and new_seats != old_seats:
            seat_delta = new_seats - old_seats
            values["number_of_seats"] = new_seats

            if current == BookingStatus.PENDING and new_seats > ride.available_seats:
                raise InsufficientSeatsError(
                    ride_id=str(ride.id),
                    requested_seats=new_seats,
                    available_seats=ride.available_seats
                )

        if not values:
            return booking

        try:
            if seat_delta and current == BookingStatus.CONFIRMED:
                await self.ledger.adjust(ride.id, seat_delta)

            stmt = (
                update(Booking)
                .where(
                    Booking.id == booking_id,
                    Booking.status == current,
                    Booking.number_of_seats == old_seats
                )
                .values(updated_at=self.clock(), **values)
                .execution_options(synchronize_session=False)
            )
            result = await self.db.execute(stmt)
            if result.rowcount != 1:
                raise InvalidStateError(
                    resource_type="booking",
                    resource_id=request.booking_id,
                    current_status="changed",
                    detail=f"Booking {booking_id} was modified concurrently",
                )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Booking updated",
            extra={
                "booking_id": request.booking_id,
                "rider_id": rider_id,
                "seat_delta": seat_delta,
                "location_changed": request.changes_location
            }
        )

        booking = await self.get_booking_by_id_or_raise(booking_id)
        await emit_notification(
            self.notifier,
            ride.driver_id,
            BookingEvent.UPDATED,
            {
                "booking_id": str(booking.id),
                "ride_id": str(ride.id),
                "number_of_seats": booking.number_of_seats,
                "pickup_address": booking.pickup_address
            }
        )
        return booking

    async def complete_bookings_for_ride(self, ride_id: UUID) -> list[UUID]:
        """
        Complete every confirmed booking of a ride, inside the caller's transaction.

        Returns:
            IDs of the bookings completed
        """
        moved = await apply_ride_transition(self.db, ride_id, BookingTransition.COMPLETE, self.clock())
        return [booking_id for booking_id, _, _ in moved]

    async def get_booking_by_id(self, booking_id: UUID) -> Booking | None:
        """
        Get booking by ID, always reloading its columns from the database.

        Args:
            booking_id: Booking ID to search for

        Returns:
            Booking if found, None otherwise
        """
        stmt = (
            select(Booking)
            .where(Booking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_booking_by_id_or_raise(self, booking_id: UUID) -> Booking:
        """
        Get booking by ID or raise NotFoundError.

        Raises:
            NotFoundError: If booking not found
        """
        booking = await self.get_booking_by_id(booking_id)
        if not booking:
            logger.warning(
                "Booking not found",
                extra={"booking_id": str(booking_id)}
            )
            raise NotFoundError(
                resource_type="booking",
                resource_id=str(booking_id)
            )
        return booking

    async def get_rider_booking(self, booking_id: UUID, rider_id: str) -> Booking:
        """Get a booking that belongs to the given rider."""
        booking = await self.get_booking_by_id_or_raise(booking_id)
        if booking.rider_id != rider_id:
            logger.warning(
                "Rider does not own booking",
                extra={"booking_id": str(booking_id), "rider_id": rider_id}
            )
            raise AuthorizationError(detail="You do not have permission to manage this booking")
        return booking

    async def get_booking(self, booking_id: UUID, user_id: str) -> Booking:
        """
        Get a booking visible to the caller: its rider or the driver of its ride.

        Raises:
            NotFoundError: If booking not found
            AuthorizationError: If the caller is neither the rider nor the driver
        """
        booking = await self.get_booking_by_id_or_raise(booking_id)
        if booking.rider_id == user_id:
            return booking

        ride = await self.ride_service.get_ride_by_id_or_raise(booking.ride_id)
        if ride.driver_id != user_id:
            raise AuthorizationError(detail="You do not have permission to view this booking")
        return booking

    async def list_ride_bookings(self, ride_id: UUID, driver_id: str) -> list[Booking]:
        """List all bookings on a ride the driver owns, oldest first."""
        await self.ride_service.get_owned_ride(ride_id, driver_id)
        stmt = (
            select(Booking)
            .where(Booking.ride_id == ride_id)
            .order_by(Booking.created_at, Booking.confirmation_number)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def list_rider_bookings(self, rider_id: str) -> list[Booking]:
        """List a rider's bookings, newest first."""
        stmt = (
            select(Booking)
            .where(Booking.rider_id == rider_id)
            .order_by(Booking.created_at.desc(), Booking.confirmation_number)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def _find_active_booking(self, ride_id: UUID, rider_id: str) -> Booking | None:
        stmt = select(Booking).where(
            Booking.ride_id == ride_id,
            Booking.rider_id == rider_id,
            Booking.status.in_(ACTIVE_BOOKING_STATUSES)
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def _current_ride_status(self, ride_id: UUID) -> RideStatus:
        result = await self.db.execute(select(Ride.status).where(Ride.id == ride_id))
        return RideStatus(result.scalar_one())

    @staticmethod
    def _ensure_ride_open(ride: Ride) -> None:
        status = RideStatus(ride.status)
        if status.is_terminal:
            raise InvalidStateError(
                resource_type="ride",
                resource_id=str(ride.id),
                current_status=status.value,
                detail=f"Ride is already {status.value}",
            )
