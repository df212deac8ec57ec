"""Pickup verification: drivers confirm a rider's presence with the rider's PIN."""

import asyncio
import logging
from datetime import datetime
from typing import Callable, NamedTuple, Optional
from uuid import UUID

from cryptography.fernet import InvalidToken
from sqlalchemy import and_, case, or_, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.exceptions import (
    InternalServerError,
    InvalidPinFormatError,
    InvalidStateError,
    NotFoundError,
    PinExpiredError,
    PinLockedError,
    PinMismatchError,
)
from ..core.observability import metrics_collector
from ..models.booking import Booking, BookingStatus, PickupStatus
from ..models.ride import RideStatus
from .booking_service import BookingService
from .collaborators import BookingEvent, LoggingNotifier, Notifier, emit_notification
from .pickup_credentials import PickupCredentialService
from .ride_service import RideService

logger = logging.getLogger(__name__)


class PickupOutcome(NamedTuple):
    booking: Booking
    already_picked_up: bool


class RevealedPin(NamedTuple):
    booking: Booking
    pin: str


class PickupVerificationService:
    """
    Verify pickups against the booking's one-way PIN hash.

    The attempt counter and lockout live on the booking row and are only
    changed through single conditional UPDATE statements, so concurrent
    attempts on one booking are ordered by the database.
    """

    def __init__(
        self,
        db: AsyncSession,
        credentials: Optional[PickupCredentialService] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.db = db
        self.credentials = credentials or PickupCredentialService.from_settings()
        self.notifier = notifier or LoggingNotifier()
        self.clock = clock
        self.bookings = BookingService(db, credentials=self.credentials, notifier=self.notifier, clock=clock)
        self.ride_service = RideService(db, notifier=self.notifier, clock=clock)

    async def verify_pickup(self, booking_id: UUID, driver_id: str, pin: str) -> PickupOutcome:
        """
        Check a PIN read out by the rider and mark the booking picked up.

        Verifying an already picked-up booking succeeds again without
        touching the attempt counter.

        Args:
            booking_id: Booking being picked up
            driver_id: Driver of the booking's ride
            pin: Submitted PIN

        Returns:
            The booking and whether it had already been picked up

        Raises:
            InvalidPinFormatError: If the PIN is not four digits
            NotFoundError: If booking not found
            AuthorizationError: If the driver does not own the ride
            InvalidStateError: If the ride is not in progress, the booking is not confirmed or has no PIN
            PinExpiredError: If the PIN has expired
            PinLockedError: If verification is locked after too many failures
            PinMismatchError: If the PIN is wrong
        """
        if not self.credentials.is_valid_format(pin):
            metrics_collector.record_pickup_pin_failure("format")
            raise InvalidPinFormatError()

        booking = await self.bookings.get_booking_by_id_or_raise(booking_id)
        ride = await self.ride_service.get_owned_ride(booking.ride_id, driver_id)

        if ride.status != RideStatus.IN_PROGRESS:
            raise InvalidStateError(
                resource_type="ride",
                resource_id=str(ride.id),
                current_status=RideStatus(ride.status).value,
                detail="Passengers can only be picked up once the ride has started",
            )

        if booking.status != BookingStatus.CONFIRMED:
            raise InvalidStateError(
                resource_type="booking",
                resource_id=str(booking_id),
                current_status=BookingStatus(booking.status).value,
                detail="Only confirmed bookings can be picked up",
            )

        if booking.pickup_status == PickupStatus.PICKED_UP:
            return PickupOutcome(booking, already_picked_up=True)

        now = self.clock()
        self._ensure_verifiable(booking, now)

        matched = await asyncio.to_thread(self.credentials.verify_pin, pin, booking.pickup_pin_hash)
        if matched:
            return await self._record_success(booking, driver_id, now)

        return await self._record_failure(booking, now)

    async def get_pickup_pin(self, booking_id: UUID, rider_id: str) -> RevealedPin:
        """
        Reveal the pickup PIN of a confirmed booking to its rider.

        Raises:
            NotFoundError: If the booking or its PIN does not exist
            AuthorizationError: If the booking belongs to another rider
            InvalidStateError: If the booking is not confirmed
            PinExpiredError: If the PIN has expired
            InternalServerError: If the stored PIN cannot be decrypted
        """
        booking = await self.bookings.get_rider_booking(booking_id, rider_id)

        if booking.status != BookingStatus.CONFIRMED:
            raise InvalidStateError(
                resource_type="booking",
                resource_id=str(booking_id),
                current_status=BookingStatus(booking.status).value,
                detail="A pickup PIN is only available for confirmed bookings",
            )

        if not booking.pickup_pin_encrypted:
            raise NotFoundError(resource_type="pickup PIN", resource_id=str(booking_id))

        if self.credentials.is_expired(booking.pickup_pin_expires_at, self.clock()):
            raise PinExpiredError(str(booking_id), booking.pickup_pin_expires_at)

        try:
            pin = self.credentials.decrypt_pin(booking.pickup_pin_encrypted)
        except InvalidToken:
            logger.error(
                "Stored pickup PIN could not be decrypted",
                extra={"booking_id": str(booking_id)},
                exc_info=True
            )
            raise InternalServerError(detail="Unable to retrieve pickup PIN") from None

        return RevealedPin(booking, pin)

    def _ensure_verifiable(self, booking: Booking, now: datetime) -> None:
        booking_id = str(booking.id)

        if not booking.has_pickup_pin:
            raise InvalidStateError(
                resource_type="booking",
                resource_id=booking_id,
                current_status=BookingStatus(booking.status).value,
                detail="No pickup PIN has been issued for this booking",
            )

        if self.credentials.is_expired(booking.pickup_pin_expires_at, now):
            metrics_collector.record_pickup_pin_failure("expired")
            raise PinExpiredError(booking_id, booking.pickup_pin_expires_at)

        if self.credentials.is_locked(booking.pickup_pin_locked_until, now):
            metrics_collector.record_pickup_pin_failure("locked")
            logger.warning(
                "Pickup verification refused - locked",
                extra={
                    "booking_id": booking_id,
                    "locked_until": booking.pickup_pin_locked_until.isoformat()
                }
            )
            raise PinLockedError(booking_id, booking.pickup_pin_locked_until, now)

    def _verifiable_clause(self, now: datetime):
        """Row still awaiting pickup and not actively locked."""
        return and_(
            Booking.status == BookingStatus.CONFIRMED,
            Booking.pickup_status == PickupStatus.PENDING,
            or_(
                Booking.pickup_pin_locked_until.is_(None),
                Booking.pickup_pin_locked_until <= now
            )
        )

    async def _record_success(self, booking: Booking, driver_id: str, now: datetime) -> PickupOutcome:
        stmt = (
            update(Booking)
            .where(Booking.id == booking.id, self._verifiable_clause(now))
            .values(
                pickup_status=PickupStatus.PICKED_UP,
                picked_up_at=now,
                pickup_pin_attempts=0,
                pickup_pin_locked_until=None,
                updated_at=now
            )
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.db.execute(stmt)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if result.rowcount != 1:
            return await self._resolve_lost_race(booking.id, now)

        metrics_collector.record_pickup_verified()
        logger.info(
            "Pickup verified",
            extra={
                "booking_id": str(booking.id),
                "ride_id": str(booking.ride_id),
                "driver_id": driver_id
            }
        )

        booking = await self.bookings.get_booking_by_id_or_raise(booking.id)
        await emit_notification(
            self.notifier,
            booking.rider_id,
            BookingEvent.PICKED_UP,
            {"booking_id": str(booking.id), "ride_id": str(booking.ride_id)}
        )
        return PickupOutcome(booking, already_picked_up=False)

    async def _record_failure(self, booking: Booking, now: datetime) -> PickupOutcome:
        """Count a wrong PIN and lock the booking once the threshold is reached."""
        lockout_elapsed = and_(
            Booking.pickup_pin_locked_until.is_not(None),
            Booking.pickup_pin_locked_until <= now
        )
        attempts_so_far = case((lockout_elapsed, 0), else_=Booking.pickup_pin_attempts)
        reaches_threshold = attempts_so_far + 1 >= self.credentials.max_attempts

        stmt = (
            update(Booking)
            .where(Booking.id == booking.id, self._verifiable_clause(now))
            .values(
                pickup_pin_attempts=attempts_so_far + 1,
                pickup_pin_locked_until=case(
                    (reaches_threshold, self.credentials.lockout_until(now)),
                    (lockout_elapsed, None),
                    else_=Booking.pickup_pin_locked_until
                ),
                updated_at=now
            )
            .returning(Booking.pickup_pin_attempts, Booking.pickup_pin_locked_until)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.db.execute(stmt)
            row = result.one_or_none()
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if row is None:
            return await self._resolve_lost_race(booking.id, now)

        attempts, locked_until = row
        remaining = self.credentials.attempts_remaining(attempts)
        metrics_collector.record_pickup_pin_failure("mismatch")

        if locked_until is not None and locked_until > now:
            metrics_collector.record_pickup_pin_lockout()
            logger.warning(
                "Pickup PIN locked after repeated failures",
                extra={
                    "booking_id": str(booking.id),
                    "attempts": attempts,
                    "locked_until": locked_until.isoformat()
                }
            )
            raise PinMismatchError(str(booking.id), attempts_remaining=0, locked_until=locked_until)

        logger.warning(
            "Pickup PIN mismatch",
            extra={"booking_id": str(booking.id), "attempts": attempts, "attempts_remaining": remaining}
        )
        raise PinMismatchError(str(booking.id), attempts_remaining=remaining)

    async def _resolve_lost_race(self, booking_id: UUID, now: datetime) -> PickupOutcome:
        """Explain why a guarded pickup update matched no row."""
        current = await self.bookings.get_booking_by_id_or_raise(booking_id)

        if current.status == BookingStatus.CONFIRMED and current.pickup_status == PickupStatus.PICKED_UP:
            return PickupOutcome(current, already_picked_up=True)

        if self.credentials.is_locked(current.pickup_pin_locked_until, now):
            metrics_collector.record_pickup_pin_failure("locked")
            raise PinLockedError(str(booking_id), current.pickup_pin_locked_until, now)

        raise InvalidStateError(
            resource_type="booking",
            resource_id=str(booking_id),
            current_status=BookingStatus(current.status).value,
            detail="Booking changed during verification",
        )
