"""Seat inventory ledger: the only writer of a ride's available seat count."""

import logging
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.exceptions import ConflictError, NotFoundError
from ..core.observability import metrics_collector
from ..models.ride import Ride

logger = logging.getLogger(__name__)


class InsufficientSeatsError(ConflictError):
    """Exception when a ride does not have enough available seats."""

    def __init__(self, ride_id: str, requested_seats: int, available_seats: int):
        super().__init__(
            detail=(
                f"Not enough available seats on ride {ride_id}. "
                f"Requested: {requested_seats}, Available: {available_seats}"
            ),
            conflicting_resource={
                "ride_id": ride_id,
                "requested_seats": requested_seats,
                "available_seats": available_seats
            }
        )
        self.requested_seats = requested_seats
        self.available_seats = available_seats
        self.problem_details.update({
            "code": "INSUFFICIENT_SEATS",
            "retryable": False,
            "available_seats": available_seats
        })


class SeatLedger:
    """
    Atomic reserve/release/adjust operations on ``rides.available_seats``.

    Each operation is a single conditional UPDATE, so the check and the write
    happen inside the store and concurrent callers are ordered by it. The
    ledger never commits: callers commit or roll back the surrounding
    transaction together with the booking change that needed the seats.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def reserve(self, ride_id: UUID, seats: int) -> int:
        """
        Take seats from a ride's inventory.

        Args:
            ride_id: Ride to reserve on
            seats: Number of seats, at least 1

        Returns:
            Available seats remaining after the reservation

        Raises:
            NotFoundError: If the ride does not exist
            InsufficientSeatsError: If fewer than ``seats`` are available
        """
        self._check_positive(seats)

        stmt = (
            update(Ride)
            .where(Ride.id == ride_id, Ride.available_seats >= seats)
            .values(available_seats=Ride.available_seats - seats)
            .returning(Ride.available_seats)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        remaining = result.scalar_one_or_none()

        if remaining is None:
            available = await self._current_available(ride_id)
            logger.warning(
                "Seat reservation rejected - insufficient seats",
                extra={
                    "ride_id": str(ride_id),
                    "requested_seats": seats,
                    "available_seats": available
                }
            )
            metrics_collector.record_seat_reservation_failed()
            raise InsufficientSeatsError(
                ride_id=str(ride_id),
                requested_seats=seats,
                available_seats=available
            )

        logger.info(
            "Seats reserved",
            extra={
                "ride_id": str(ride_id),
                "seats": seats,
                "available_seats": remaining
            }
        )
        return remaining

    async def release(self, ride_id: UUID, seats: int) -> int:
        """
        Return previously reserved seats to a ride's inventory.

        Args:
            ride_id: Ride to release on
            seats: Number of seats, at least 1

        Returns:
            Available seats after the release

        Raises:
            NotFoundError: If the ride does not exist
        """
        self._check_positive(seats)

        stmt = (
            update(Ride)
            .where(Ride.id == ride_id)
            .values(available_seats=Ride.available_seats + seats)
            .returning(Ride.available_seats)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        available = result.scalar_one_or_none()

        if available is None:
            raise NotFoundError(resource_type="ride", resource_id=str(ride_id))

        logger.info(
            "Seats released",
            extra={
                "ride_id": str(ride_id),
                "seats": seats,
                "available_seats": available
            }
        )
        return available

    async def adjust(self, ride_id: UUID, delta: int) -> int | None:
        """
        Apply a signed seat change for an already-confirmed booking.

        Positive deltas reserve (and can fail with InsufficientSeatsError),
        negative deltas release. A zero delta touches nothing and returns None.
        """
        if delta > 0:
            return await self.reserve(ride_id, delta)
        if delta < 0:
            return await self.release(ride_id, -delta)
        return None

    async def _current_available(self, ride_id: UUID) -> int:
        """Read the committed seat count, raising NotFoundError for unknown rides."""
        stmt = select(Ride.available_seats).where(Ride.id == ride_id)
        result = await self.db.execute(stmt)
        available = result.scalar_one_or_none()
        if available is None:
            raise NotFoundError(resource_type="ride", resource_id=str(ride_id))
        return available

    @staticmethod
    def _check_positive(seats: int) -> None:
        if seats < 1:
            raise ValueError(f"Seat count must be at least 1, got {seats}")
