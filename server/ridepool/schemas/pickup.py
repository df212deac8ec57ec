"""Pickup-related Pydantic schemas."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from ..models.booking import PickupStatus


class PickupPinRequest(BaseModel):
    """Request schema for a rider retrieving the pickup PIN."""

    booking_id: str = Field(..., description="Confirmed booking")


class PickupPin(BaseModel):
    """Pickup PIN response schema, shown to the rider only."""

    booking_id: str = Field(..., description="Booking the PIN belongs to")
    pin: str = Field(..., description="4-digit pickup PIN")
    expires_at: datetime = Field(..., description="PIN expiry (ISO 8601)")
    pickup_status: PickupStatus = Field(..., description="Pickup status")


class VerifyPickupRequest(BaseModel):
    """Request schema for a driver verifying a rider's pickup PIN."""

    booking_id: str = Field(..., description="Booking being picked up")
    # Format is checked by the verification flow so it can report a typed error
    pin: str = Field(..., max_length=16, description="PIN read out by the rider")


class PickupResult(BaseModel):
    """Pickup verification response schema."""

    booking_id: str = Field(..., description="Booking that was verified")
    pickup_status: PickupStatus = Field(..., description="Pickup status")
    picked_up_at: Optional[datetime] = Field(None, description="Pickup time (ISO 8601)")
    already_picked_up: bool = Field(False, description="True if the rider had already been verified")
