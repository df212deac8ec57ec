"""Booking router for the booking lifecycle operations."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.dependencies import (
    get_credential_service,
    get_current_identity,
    get_db,
    get_notifier,
    get_payment_authorizer,
    require_driver,
    require_rider,
)
from ..core.exceptions import InternalServerError, ProblemDetailsException
from ..core.identity import Identity
from ..schemas.booking import (
    Booking,
    BookingActionRequest,
    BookingList,
    CreateBookingRequest,
    UpdateBookingRequest,
)
from ..schemas.common import Money
from ..services.booking_service import BookingService
from ..services.collaborators import Notifier, PaymentAuthorizer
from ..services.pickup_credentials import PickupCredentialService
from ..services.ride_service import parse_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/booking", tags=["booking"])

# Define dependencies to avoid B008 linting errors
DB_DEPENDENCY = Depends(get_db)
IDENTITY_DEPENDENCY = Depends(get_current_identity)
DRIVER_DEPENDENCY = Depends(require_driver)
RIDER_DEPENDENCY = Depends(require_rider)
NOTIFIER_DEPENDENCY = Depends(get_notifier)
PAYMENTS_DEPENDENCY = Depends(get_payment_authorizer)
CREDENTIALS_DEPENDENCY = Depends(get_credential_service)


def _convert_booking_to_schema(booking_model) -> Booking:
    """Convert booking model to schema. PIN material never leaves the service layer here."""
    return Booking(
        id=str(booking_model.id),
        ride_id=str(booking_model.ride_id),
        rider_id=booking_model.rider_id,
        confirmation_number=booking_model.confirmation_number,
        number_of_seats=booking_model.number_of_seats,
        status=booking_model.status,
        pickup_status=booking_model.pickup_status,
        pickup_address=booking_model.pickup_address,
        pickup_latitude=booking_model.pickup_latitude,
        pickup_longitude=booking_model.pickup_longitude,
        price_per_seat=Money(
            amount=booking_model.price_per_seat_amount,
            currency=booking_model.price_currency
        ),
        picked_up_at=booking_model.picked_up_at,
        pickup_pin_expires_at=booking_model.pickup_pin_expires_at,
        created_at=booking_model.created_at
    )


def _booking_response(booking_model) -> JSONResponse:
    return JSONResponse(
        status_code=200,
        content=_convert_booking_to_schema(booking_model).model_dump(mode="json")
    )


def _service(
    db: AsyncSession,
    credentials: PickupCredentialService,
    notifier: Notifier,
    payments: Optional[PaymentAuthorizer] = None
) -> BookingService:
    return BookingService(db, credentials=credentials, notifier=notifier, payments=payments)


def _unexpected(operation: str, error: Exception, **context) -> InternalServerError:
    logger.error(
        f"Unexpected error in {operation}",
        extra={**context, "error": str(error)},
        exc_info=True
    )
    return InternalServerError()


@router.post("/request", response_model=Booking)
async def request_booking(
    request: CreateBookingRequest,
    db: AsyncSession = DB_DEPENDENCY,
    identity: Identity = RIDER_DEPENDENCY,
    credentials: PickupCredentialService = CREDENTIALS_DEPENDENCY,
    notifier: Notifier = NOTIFIER_DEPENDENCY,
    payments: PaymentAuthorizer = PAYMENTS_DEPENDENCY
) -> JSONResponse:
    """
    Request seats on a scheduled ride.

    The booking starts out pending; no seats are taken until the driver accepts.
    """
    booking_service = _service(db, credentials, notifier, payments)

    try:
        booking = await booking_service.request_booking(request, identity.user_id)
        return _booking_response(booking)

    except ProblemDetailsException:
        raise

    except Exception as e:
        raise _unexpected(
            "booking request", e,
            ride_id=request.ride_id,
            rider_id=identity.user_id,
            seats=request.number_of_seats
        ) from e


@router.post("/accept", response_model=Booking)
async def accept_booking(
    request: BookingActionRequest,
    db: AsyncSession = DB_DEPENDENCY,
    identity: Identity = DRIVER_DEPENDENCY,
    credentials: PickupCredentialService = CREDENTIALS_DEPENDENCY,
    notifier: Notifier = NOTIFIER_DEPENDENCY
) -> JSONResponse:
    """Accept a pending booking, reserving its seats and issuing the pickup PIN."""
    booking_service = _service(db, credentials, notifier)

    try:
        booking = await booking_service.accept_booking(
            parse_id(request.booking_id, "booking"),
            identity.user_id
        )
        return _booking_response(booking)

    except ProblemDetailsException:
        raise

    except Exception as e:
        raise _unexpected("booking acceptance", e, booking_id=request.booking_id) from e


@router.post("/reject", response_model=Booking)
async def reject_booking(
    request: BookingActionRequest,
    db: AsyncSession = DB_DEPENDENCY,
    identity: Identity = DRIVER_DEPENDENCY,
    credentials: PickupCredentialService = CREDENTIALS_DEPENDENCY,
    notifier: Notifier = NOTIFIER_DEPENDENCY
) -> JSONResponse:
    """Reject a pending booking."""
    booking_service = _service(db, credentials, notifier)

    try:
        booking = await booking_service.reject_booking(
            parse_id(request.booking_id, "booking"),
            identity.user_id
        )
        return _booking_response(booking)

    except ProblemDetailsException:
        raise

    except Exception as e:
        raise _unexpected("booking rejection", e, booking_id=request.booking_id) from e


@router.post("/cancel", response_model=Booking)
async def cancel_booking(
    request: BookingActionRequest,
    db: AsyncSession = DB_DEPENDENCY,
    identity: Identity = RIDER_DEPENDENCY,
    credentials: PickupCredentialService = CREDENTIALS_DEPENDENCY,
    notifier: Notifier = NOTIFIER_DEPENDENCY
) -> JSONResponse:
    """Cancel the caller's booking, releasing its seats if it was confirmed."""
    booking_service = _service(db, credentials, notifier)

    try:
        booking = await booking_service.cancel_booking(
            parse_id(request.booking_id, "booking"),
            identity.user_id
        )
        return _booking_response(booking)

    except ProblemDetailsException:
        raise

    except Exception as e:
        raise _unexpected("booking cancellation", e, booking_id=request.booking_id) from e


@router.post("/update", response_model=Booking)
async def update_booking(
    request: UpdateBookingRequest,
    db: AsyncSession = DB_DEPENDENCY,
    identity: Identity = RIDER_DEPENDENCY,
    credentials: PickupCredentialService = CREDENTIALS_DEPENDENCY,
    notifier: Notifier = NOTIFIER_DEPENDENCY
) -> JSONResponse:
    """Change seats or pickup location before the ride starts."""
    booking_service = _service(db, credentials, notifier)

    try:
        booking = await booking_service.update_booking(request, identity.user_id)
        return _booking_response(booking)

    except ProblemDetailsException:
        raise

    except Exception as e:
        raise _unexpected("booking update", e, booking_id=request.booking_id) from e


@router.post("/get", response_model=Booking)
async def get_booking(
    request: BookingActionRequest,
    db: AsyncSession = DB_DEPENDENCY,
    identity: Identity = IDENTITY_DEPENDENCY,
    credentials: PickupCredentialService = CREDENTIALS_DEPENDENCY
) -> JSONResponse:
    """Get a booking as its rider or as the driver of its ride."""
    booking_service = BookingService(db, credentials=credentials)

    try:
        booking = await booking_service.get_booking(
            parse_id(request.booking_id, "booking"),
            identity.user_id
        )
        return _booking_response(booking)

    except ProblemDetailsException:
        raise

    except Exception as e:
        raise _unexpected("booking retrieval", e, booking_id=request.booking_id) from e


@router.post("/mine", response_model=BookingList)
async def list_my_bookings(
    db: AsyncSession = DB_DEPENDENCY,
    identity: Identity = RIDER_DEPENDENCY,
    credentials: PickupCredentialService = CREDENTIALS_DEPENDENCY
) -> JSONResponse:
    """List the caller's bookings, newest first."""
    booking_service = BookingService(db, credentials=credentials)

    try:
        bookings = await booking_service.list_rider_bookings(identity.user_id)
        response_data = BookingList(items=[_convert_booking_to_schema(b) for b in bookings])
        return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))

    except ProblemDetailsException:
        raise

    except Exception as e:
        raise _unexpected("rider booking listing", e, rider_id=identity.user_id) from e
