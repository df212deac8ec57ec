"""Booking lifecycle edges and the guarded status write that applies them."""

import logging
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.exceptions import InvalidStateError
from ..core.observability import metrics_collector
from ..models.booking import Booking, BookingStatus

logger = logging.getLogger(__name__)


class BookingTransition(Enum):
    """Every legal booking status edge."""

    ACCEPT = (BookingStatus.PENDING, BookingStatus.CONFIRMED)
    REJECT = (BookingStatus.PENDING, BookingStatus.REJECTED)
    CANCEL_REQUEST = (BookingStatus.PENDING, BookingStatus.CANCELLED)
    CANCEL_CONFIRMED = (BookingStatus.CONFIRMED, BookingStatus.CANCELLED)
    COMPLETE = (BookingStatus.CONFIRMED, BookingStatus.COMPLETED)

    @property
    def source(self) -> BookingStatus:
        return self.value[0]

    @property
    def target(self) -> BookingStatus:
        return self.value[1]

    @property
    def releases_seats(self) -> bool:
        """Leaving 'confirmed' for anything but completion hands the seats back."""
        return self is BookingTransition.CANCEL_CONFIRMED

    @property
    def reserves_seats(self) -> bool:
        return self.target == BookingStatus.CONFIRMED


class BookingAction(str, Enum):
    """Caller-facing actions; an action maps to one edge per source status."""
    ACCEPT = "accept"
    REJECT = "reject"
    CANCEL = "cancel"
    COMPLETE = "complete"


_ACTION_EDGES: dict[BookingAction, tuple[BookingTransition, ...]] = {
    BookingAction.ACCEPT: (BookingTransition.ACCEPT,),
    BookingAction.REJECT: (BookingTransition.REJECT,),
    BookingAction.CANCEL: (BookingTransition.CANCEL_REQUEST, BookingTransition.CANCEL_CONFIRMED),
    BookingAction.COMPLETE: (BookingTransition.COMPLETE,),
}

_STATUS_MESSAGES = {
    (BookingAction.ACCEPT, BookingStatus.CONFIRMED): "Booking is already confirmed",
    (BookingAction.ACCEPT, BookingStatus.REJECTED): "Cannot accept a rejected booking",
    (BookingAction.ACCEPT, BookingStatus.CANCELLED): "Cannot accept a cancelled booking",
    (BookingAction.REJECT, BookingStatus.CONFIRMED): "Cannot reject a confirmed booking",
    (BookingAction.REJECT, BookingStatus.REJECTED): "Booking is already rejected",
    (BookingAction.REJECT, BookingStatus.CANCELLED): "Booking is already cancelled",
    (BookingAction.CANCEL, BookingStatus.CANCELLED): "Booking is already cancelled",
    (BookingAction.CANCEL, BookingStatus.REJECTED): "Booking is already rejected",
    (BookingAction.CANCEL, BookingStatus.COMPLETED): "Cannot cancel a completed booking",
}


def resolve_transition(action: BookingAction, booking: Booking) -> BookingTransition:
    """
    Find the edge an action takes from the booking's current status.

    Raises:
        InvalidStateError: If the action has no edge leaving that status
    """
    current = BookingStatus(booking.status)
    for edge in _ACTION_EDGES[action]:
        if edge.source == current:
            return edge

    raise InvalidStateError(
        resource_type="booking",
        resource_id=str(booking.id),
        current_status=current.value,
        detail=_STATUS_MESSAGES.get(
            (action, current),
            f"Cannot {action.value} a booking in status '{current.value}'"
        ),
    )


async def apply_transition(
    db: AsyncSession,
    booking: Booking,
    edge: BookingTransition,
    now: datetime,
    **values: Any,
) -> None:
    """
    Write the edge's target status, conditional on the source status still holding.

    The seat count read by the caller is part of the guard, so seats reserved
    or released alongside the edge always match what the booking holds.
    Extra column values are written in the same statement. The caller owns
    the transaction; a lost race leaves nothing applied once it rolls back.

    Raises:
        InvalidStateError: If another request moved or resized the booking first
    """
    stmt = (
        update(Booking)
        .where(
            Booking.id == booking.id,
            Booking.status == edge.source,
            Booking.number_of_seats == booking.number_of_seats
        )
        .values(status=edge.target, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)

    if result.rowcount != 1:
        logger.warning(
            "Booking transition lost to a concurrent update",
            extra={
                "booking_id": str(booking.id),
                "transition": edge.name,
                "expected_status": edge.source.value,
                "expected_seats": booking.number_of_seats
            }
        )
        raise InvalidStateError(
            resource_type="booking",
            resource_id=str(booking.id),
            current_status="changed",
            detail=(
                f"Booking {booking.id} was modified concurrently; it is no longer "
                f"{edge.source.value} with {booking.number_of_seats} seat(s)"
            ),
        )

    metrics_collector.record_booking_transition(edge.name.lower())
    logger.debug(
        "Booking transition applied",
        extra={
            "booking_id": str(booking.id),
            "transition": edge.name,
            "from_status": edge.source.value,
            "to_status": edge.target.value
        }
    )


async def apply_ride_transition(
    db: AsyncSession,
    ride_id: UUID,
    edge: BookingTransition,
    now: datetime,
) -> list[tuple[UUID, str, int]]:
    """
    Move every booking of a ride that sits on the edge's source status.

    Used when the ride itself completes or is cancelled.

    Returns:
        (booking id, rider id, seats) for each booking moved
    """
    stmt = (
        update(Booking)
        .where(Booking.ride_id == ride_id, Booking.status == edge.source)
        .values(status=edge.target, updated_at=now)
        .returning(Booking.id, Booking.rider_id, Booking.number_of_seats)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    moved = [(row[0], row[1], row[2]) for row in result.all()]

    for _ in moved:
        metrics_collector.record_booking_transition(edge.name.lower())

    return moved
