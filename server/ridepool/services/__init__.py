"""Service layer package."""

from .booking_service import BookingService, DuplicateBookingError, PaymentDeclinedError
from .booking_state import BookingAction, BookingTransition
from .collaborators import BookingEvent, LocalPaymentAuthorizer, LoggingNotifier, PaymentAuthorization
from .pickup_credentials import PickupCredentialService
from .pickup_service import PickupVerificationService
from .ride_service import RideService
from .seat_ledger import InsufficientSeatsError, SeatLedger

__all__ = [
    "BookingAction",
    "BookingEvent",
    "BookingService",
    "BookingTransition",
    "DuplicateBookingError",
    "InsufficientSeatsError",
    "LocalPaymentAuthorizer",
    "LoggingNotifier",
    "PaymentAuthorization",
    "PaymentDeclinedError",
    "PickupCredentialService",
    "PickupVerificationService",
    "RideService",
    "SeatLedger",
]
