"""Models module exporting all database models."""

from .booking import ACTIVE_BOOKING_STATUSES, Booking, BookingStatus, PickupStatus
from .ride import Ride, RideStatus

__all__ = [
    # Ride entity
    "Ride",
    "RideStatus",

    # Booking entity
    "Booking",
    "BookingStatus",
    "PickupStatus",
    "ACTIVE_BOOKING_STATUSES",
]
