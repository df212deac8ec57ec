"""Ride service for publishing rides and moving them through their status lifecycle."""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.exceptions import AuthorizationError, InvalidStateError, NotFoundError, ValidationError
from ..models.ride import Ride, RideStatus
from ..schemas.ride import PublishRideRequest
from .booking_state import BookingTransition, apply_ride_transition
from .collaborators import BookingEvent, LoggingNotifier, Notifier, emit_notification
from .seat_ledger import SeatLedger

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def parse_id(value: str, resource_type: str) -> UUID:
    """Parse an opaque id, treating malformed ids as unknown resources."""
    try:
        return UUID(str(value))
    except (ValueError, TypeError):
        raise NotFoundError(resource_type=resource_type, resource_id=str(value)) from None


def to_naive_utc(value: datetime) -> datetime:
    """Normalize a datetime to naive UTC, the form timestamps are compared in."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class RideService:
    """Service for ride-related operations."""

    def __init__(
        self,
        db: AsyncSession,
        notifier: Optional[Notifier] = None,
        clock: Clock = datetime.utcnow,
    ):
        self.db = db
        self.ledger = SeatLedger(db)
        self.notifier = notifier or LoggingNotifier()
        self.clock = clock

    async def publish_ride(self, request: PublishRideRequest, driver_id: str) -> Ride:
        """
        Publish a new ride with all of its seats available.

        Args:
            request: Ride publication request
            driver_id: Driver publishing the ride

        Returns:
            Created ride entity

        Raises:
            ValidationError: If the seat count exceeds the configured maximum
        """
        if request.total_seats > settings.max_seats_per_ride:
            raise ValidationError(
                detail=f"A ride can offer at most {settings.max_seats_per_ride} seats",
                errors={"total_seats": request.total_seats}
            )

        ride = Ride(
            driver_id=driver_id,
            from_address=request.from_address,
            to_address=request.to_address,
            departure_at=to_naive_utc(request.departure_at),
            total_seats=request.total_seats,
            available_seats=request.total_seats,  # Initially every seat is available
            price_per_seat_amount=request.price_per_seat.amount,
            price_currency=request.price_per_seat.currency,
            status=RideStatus.SCHEDULED
        )

        self.db.add(ride)
        await self.db.commit()
        await self.db.refresh(ride)

        logger.info(
            "Ride published successfully",
            extra={
                "ride_id": str(ride.id),
                "driver_id": driver_id,
                "departure_at": ride.departure_at.isoformat(),
                "total_seats": ride.total_seats
            }
        )

        return ride

    async def get_ride_by_id(self, ride_id: UUID) -> Ride | None:
        """
        Get ride by ID, always reloading its columns from the database.

        Args:
            ride_id: Ride ID to search for

        Returns:
            Ride if found, None otherwise
        """
        stmt = (
            select(Ride)
            .where(Ride.id == ride_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_ride_by_id_or_raise(self, ride_id: UUID) -> Ride:
        """
        Get ride by ID or raise NotFoundError.

        Raises:
            NotFoundError: If ride not found
        """
        ride = await self.get_ride_by_id(ride_id)
        if not ride:
            logger.warning(
                "Ride not found",
                extra={"ride_id": str(ride_id)}
            )
            raise NotFoundError(
                resource_type="ride",
                resource_id=str(ride_id)
            )
        return ride

    async def get_owned_ride(self, ride_id: UUID, driver_id: str) -> Ride:
        """
        Get a ride the given driver owns.

        Raises:
            NotFoundError: If ride not found
            AuthorizationError: If the ride belongs to another driver
        """
        ride = await self.get_ride_by_id_or_raise(ride_id)
        if ride.driver_id != driver_id:
            logger.warning(
                "Driver does not own ride",
                extra={"ride_id": str(ride_id), "driver_id": driver_id}
            )
            raise AuthorizationError(detail="You do not have permission to manage this ride")
        return ride

    async def start_ride(self, ride_id: UUID, driver_id: str) -> Ride:
        """Move a scheduled ride to in-progress so passengers can be picked up."""
        ride = await self.get_owned_ride(ride_id, driver_id)
        await self._set_status(ride, (RideStatus.SCHEDULED,), RideStatus.IN_PROGRESS)
        await self.db.commit()

        logger.info(
            "Ride started",
            extra={"ride_id": str(ride_id), "driver_id": driver_id}
        )
        return await self.get_ride_by_id_or_raise(ride_id)

    async def complete_ride(self, ride_id: UUID, driver_id: str) -> Ride:
        """
        Complete an in-progress ride; its confirmed bookings complete with it.

        Seats of completed bookings stay counted against the ride.
        """
        from .booking_service import BookingService

        ride = await self.get_owned_ride(ride_id, driver_id)
        bookings = BookingService(self.db, notifier=self.notifier, clock=self.clock)

        try:
            await self._set_status(ride, (RideStatus.IN_PROGRESS,), RideStatus.COMPLETED)
            completed = await bookings.complete_bookings_for_ride(ride_id)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Ride completed",
            extra={
                "ride_id": str(ride_id),
                "driver_id": driver_id,
                "bookings_completed": len(completed)
            }
        )
        return await self.get_ride_by_id_or_raise(ride_id)

    async def cancel_ride(self, ride_id: UUID, driver_id: str) -> Ride:
        """
        Cancel a ride and every open booking on it.

        Pending requests are cancelled outright; confirmed bookings are
        cancelled and their seats released through the ledger, all in one
        transaction with the ride status change.
        """
        ride = await self.get_owned_ride(ride_id, driver_id)
        now = self.clock()

        try:
            # The ride row is written first so concurrent seat changes queue behind it
            await self._set_status(
                ride,
                (RideStatus.SCHEDULED, RideStatus.IN_PROGRESS),
                RideStatus.CANCELLED
            )
            requests = await apply_ride_transition(self.db, ride_id, BookingTransition.CANCEL_REQUEST, now)
            confirmed = await apply_ride_transition(self.db, ride_id, BookingTransition.CANCEL_CONFIRMED, now)

            seats_to_release = sum(seats for _, _, seats in confirmed)
            if seats_to_release:
                await self.ledger.release(ride_id, seats_to_release)

            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Ride cancelled",
            extra={
                "ride_id": str(ride_id),
                "driver_id": driver_id,
                "requests_cancelled": len(requests),
                "bookings_cancelled": len(confirmed),
                "seats_released": seats_to_release
            }
        )

        for booking_id, rider_id, _ in requests + confirmed:
            await emit_notification(
                self.notifier,
                rider_id,
                BookingEvent.RIDE_CANCELLED,
                {"booking_id": str(booking_id), "ride_id": str(ride_id)}
            )

        return await self.get_ride_by_id_or_raise(ride_id)

    async def _set_status(
        self,
        ride: Ride,
        allowed_from: tuple[RideStatus, ...],
        target: RideStatus,
    ) -> None:
        """Conditionally write a ride status; raises InvalidStateError if the ride moved on."""
        if RideStatus(ride.status) not in allowed_from:
            raise InvalidStateError(
                resource_type="ride",
                resource_id=str(ride.id),
                current_status=RideStatus(ride.status).value,
                detail=f"Cannot move ride from '{RideStatus(ride.status).value}' to '{target.value}'",
            )

        stmt = (
            update(Ride)
            .where(Ride.id == ride.id, Ride.status.in_(allowed_from))
            .values(status=target, updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount != 1:
            raise InvalidStateError(
                resource_type="ride",
                resource_id=str(ride.id),
                current_status="changed",
                detail=f"Ride {ride.id} was modified concurrently",
            )
