"""Ride router for publishing rides and driving their status."""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.dependencies import get_credential_service, get_db, get_notifier, require_driver
from ..core.exceptions import InternalServerError, ProblemDetailsException
from ..core.identity import Identity
from ..schemas.booking import BookingList
from ..schemas.common import Money
from ..schemas.ride import PublishRideRequest, Ride, RideRequest
from ..services.booking_service import BookingService
from ..services.collaborators import Notifier
from ..services.pickup_credentials import PickupCredentialService
from ..services.ride_service import RideService, parse_id
from .booking import _convert_booking_to_schema

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/ride", tags=["ride"])

DB_DEPENDENCY = Depends(get_db)
DRIVER_DEPENDENCY = Depends(require_driver)
NOTIFIER_DEPENDENCY = Depends(get_notifier)
CREDENTIALS_DEPENDENCY = Depends(get_credential_service)


def _convert_ride_to_schema(ride_model) -> Ride:
    """Convert ride model to schema with Money conversion."""
    return Ride(
        id=str(ride_model.id),
        driver_id=ride_model.driver_id,
        from_address=ride_model.from_address,
        to_address=ride_model.to_address,
        departure_at=ride_model.departure_at,
        total_seats=ride_model.total_seats,
        available_seats=ride_model.available_seats,
        price_per_seat=Money(
            amount=ride_model.price_per_seat_amount,
            currency=ride_model.price_currency
        ),
        status=ride_model.status
    )


def _ride_response(ride_model) -> JSONResponse:
    return JSONResponse(
        status_code=200,
        content=_convert_ride_to_schema(ride_model).model_dump(mode="json")
    )


def _unexpected(operation: str, error: Exception, **context) -> InternalServerError:
    logger.error(
        f"Unexpected error in {operation}",
        extra={**context, "error": str(error)},
        exc_info=True
    )
    return InternalServerError()


@router.post("/publish", response_model=Ride)
async def publish_ride(
    request: PublishRideRequest,
    db: AsyncSession = DB_DEPENDENCY,
    identity: Identity = DRIVER_DEPENDENCY,
    notifier: Notifier = NOTIFIER_DEPENDENCY
) -> JSONResponse:
    """Publish a ride with all of its seats available."""
    ride_service = RideService(db, notifier=notifier)

    try:
        ride = await ride_service.publish_ride(request, identity.user_id)
        return _ride_response(ride)

    except ProblemDetailsException:
        raise

    except Exception as e:
        raise _unexpected("ride publication", e, driver_id=identity.user_id) from e


@router.post("/get", response_model=Ride)
async def get_ride(
    request: RideRequest,
    db: AsyncSession = DB_DEPENDENCY
) -> JSONResponse:
    """Get ride details, including current seat availability."""
    ride_service = RideService(db)

    try:
        ride = await ride_service.get_ride_by_id_or_raise(parse_id(request.ride_id, "ride"))
        return _ride_response(ride)

    except ProblemDetailsException:
        raise

    except Exception as e:
        raise _unexpected("ride retrieval", e, ride_id=request.ride_id) from e


@router.post("/start", response_model=Ride)
async def start_ride(
    request: RideRequest,
    db: AsyncSession = DB_DEPENDENCY,
    identity: Identity = DRIVER_DEPENDENCY,
    notifier: Notifier = NOTIFIER_DEPENDENCY
) -> JSONResponse:
    """Start a scheduled ride."""
    ride_service = RideService(db, notifier=notifier)

    try:
        ride = await ride_service.start_ride(parse_id(request.ride_id, "ride"), identity.user_id)
        return _ride_response(ride)

    except ProblemDetailsException:
        raise

    except Exception as e:
        raise _unexpected("ride start", e, ride_id=request.ride_id) from e


@router.post("/complete", response_model=Ride)
async def complete_ride(
    request: RideRequest,
    db: AsyncSession = DB_DEPENDENCY,
    identity: Identity = DRIVER_DEPENDENCY,
    notifier: Notifier = NOTIFIER_DEPENDENCY
) -> JSONResponse:
    """Complete an in-progress ride together with its confirmed bookings."""
    ride_service = RideService(db, notifier=notifier)

    try:
        ride = await ride_service.complete_ride(parse_id(request.ride_id, "ride"), identity.user_id)
        return _ride_response(ride)

    except ProblemDetailsException:
        raise

    except Exception as e:
        raise _unexpected("ride completion", e, ride_id=request.ride_id) from e


@router.post("/cancel", response_model=Ride)
async def cancel_ride(
    request: RideRequest,
    db: AsyncSession = DB_DEPENDENCY,
    identity: Identity = DRIVER_DEPENDENCY,
    notifier: Notifier = NOTIFIER_DEPENDENCY
) -> JSONResponse:
    """Cancel a ride, cancelling its bookings and releasing confirmed seats."""
    ride_service = RideService(db, notifier=notifier)

    try:
        ride = await ride_service.cancel_ride(parse_id(request.ride_id, "ride"), identity.user_id)
        return _ride_response(ride)

    except ProblemDetailsException:
        raise

    except Exception as e:
        raise _unexpected("ride cancellation", e, ride_id=request.ride_id) from e


@router.post("/bookings", response_model=BookingList)
async def list_ride_bookings(
    request: RideRequest,
    db: AsyncSession = DB_DEPENDENCY,
    identity: Identity = DRIVER_DEPENDENCY,
    credentials: PickupCredentialService = CREDENTIALS_DEPENDENCY
) -> JSONResponse:
    """List every booking on a ride the caller drives."""
    booking_service = BookingService(db, credentials=credentials)

    try:
        bookings = await booking_service.list_ride_bookings(
            parse_id(request.ride_id, "ride"),
            identity.user_id
        )
        response_data = BookingList(items=[_convert_booking_to_schema(b) for b in bookings])
        return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))

    except ProblemDetailsException:
        raise

    except Exception as e:
        raise _unexpected("ride booking listing", e, ride_id=request.ride_id) from e
