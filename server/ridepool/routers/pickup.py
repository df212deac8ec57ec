"""Pickup router: PIN display for riders and PIN verification for drivers."""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.dependencies import get_credential_service, get_db, get_notifier, require_driver, require_rider
from ..core.exceptions import InternalServerError, ProblemDetailsException
from ..core.identity import Identity
from ..schemas.pickup import PickupPin, PickupPinRequest, PickupResult, VerifyPickupRequest
from ..services.collaborators import Notifier
from ..services.pickup_credentials import PickupCredentialService
from ..services.pickup_service import PickupVerificationService
from ..services.ride_service import parse_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/pickup", tags=["pickup"])

DB_DEPENDENCY = Depends(get_db)
DRIVER_DEPENDENCY = Depends(require_driver)
RIDER_DEPENDENCY = Depends(require_rider)
NOTIFIER_DEPENDENCY = Depends(get_notifier)
CREDENTIALS_DEPENDENCY = Depends(get_credential_service)


@router.post("/pin", response_model=PickupPin)
async def get_pickup_pin(
    request: PickupPinRequest,
    db: AsyncSession = DB_DEPENDENCY,
    identity: Identity = RIDER_DEPENDENCY,
    credentials: PickupCredentialService = CREDENTIALS_DEPENDENCY
) -> JSONResponse:
    """Show the rider the PIN to read out to the driver at pickup."""
    pickup_service = PickupVerificationService(db, credentials=credentials)

    try:
        booking, pin = await pickup_service.get_pickup_pin(
            parse_id(request.booking_id, "booking"),
            identity.user_id
        )
        response_data = PickupPin(
            booking_id=str(booking.id),
            pin=pin,
            expires_at=booking.pickup_pin_expires_at,
            pickup_status=booking.pickup_status
        )
        return JSONResponse(
            status_code=200,
            content=response_data.model_dump(mode="json"),
            headers={"Cache-Control": "no-store"}
        )

    except ProblemDetailsException:
        raise

    except Exception as e:
        logger.error(
            "Unexpected error in pickup PIN retrieval",
            extra={"booking_id": request.booking_id, "error": str(e)},
            exc_info=True
        )
        raise InternalServerError() from e


@router.post("/verify", response_model=PickupResult)
async def verify_pickup(
    request: VerifyPickupRequest,
    db: AsyncSession = DB_DEPENDENCY,
    identity: Identity = DRIVER_DEPENDENCY,
    credentials: PickupCredentialService = CREDENTIALS_DEPENDENCY,
    notifier: Notifier = NOTIFIER_DEPENDENCY
) -> JSONResponse:
    """
    Verify the PIN a rider reads out and mark the rider picked up.

    Verifying an already picked-up booking succeeds again.
    """
    pickup_service = PickupVerificationService(db, credentials=credentials, notifier=notifier)

    try:
        outcome = await pickup_service.verify_pickup(
            parse_id(request.booking_id, "booking"),
            identity.user_id,
            request.pin
        )
        response_data = PickupResult(
            booking_id=str(outcome.booking.id),
            pickup_status=outcome.booking.pickup_status,
            picked_up_at=outcome.booking.picked_up_at,
            already_picked_up=outcome.already_picked_up
        )
        return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))

    except ProblemDetailsException:
        raise

    except Exception as e:
        logger.error(
            "Unexpected error in pickup verification",
            extra={"booking_id": request.booking_id, "driver_id": identity.user_id, "error": str(e)},
            exc_info=True
        )
        raise InternalServerError() from e
