"""Booking-related Pydantic schemas."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from ..models.booking import BookingStatus, PickupStatus
from .common import Money


class CreateBookingRequest(BaseModel):
    """Request schema for a rider requesting seats on a ride."""

    ride_id: str = Field(..., description="Ride to request seats on")
    number_of_seats: int = Field(1, ge=1, le=8, description="Number of seats requested")
    pickup_address: str = Field(..., min_length=1, max_length=255, description="Pickup address")
    pickup_latitude: float = Field(..., ge=-90, le=90, description="Pickup latitude")
    pickup_longitude: float = Field(..., ge=-180, le=180, description="Pickup longitude")


class BookingActionRequest(BaseModel):
    """Request schema for accept, reject, cancel and get operations."""

    booking_id: str = Field(..., description="Booking to operate on")


class UpdateBookingRequest(BaseModel):
    """Request schema for a rider editing a booking before pickup."""

    booking_id: str = Field(..., description="Booking to update")
    number_of_seats: Optional[int] = Field(None, ge=1, le=8, description="New number of seats")
    pickup_address: Optional[str] = Field(None, min_length=1, max_length=255, description="New pickup address")
    pickup_latitude: Optional[float] = Field(None, ge=-90, le=90, description="New pickup latitude")
    pickup_longitude: Optional[float] = Field(None, ge=-180, le=180, description="New pickup longitude")

    @model_validator(mode="after")
    def require_coordinates_with_address(self) -> "UpdateBookingRequest":
        """A new pickup address must come with its coordinates."""
        if self.pickup_address is not None and (
            self.pickup_latitude is None or self.pickup_longitude is None
        ):
            raise ValueError("pickup_latitude and pickup_longitude are required when updating pickup_address")
        return self

    @property
    def changes_location(self) -> bool:
        return self.pickup_address is not None


class Booking(BaseModel):
    """Booking response schema."""

    id: str = Field(..., description="Unique booking ID")
    ride_id: str = Field(..., description="Associated ride ID")
    rider_id: str = Field(..., description="Rider who requested the booking")
    confirmation_number: str = Field(..., description="Booking confirmation number")
    number_of_seats: int = Field(..., ge=1, description="Number of seats")
    status: BookingStatus = Field(..., description="Booking status")
    pickup_status: PickupStatus = Field(..., description="Pickup status")
    pickup_address: str = Field(..., description="Pickup address")
    pickup_latitude: float = Field(..., description="Pickup latitude")
    pickup_longitude: float = Field(..., description="Pickup longitude")
    price_per_seat: Money = Field(..., description="Price of one seat at request time")
    picked_up_at: Optional[datetime] = Field(None, description="Pickup time (ISO 8601)")
    pickup_pin_expires_at: Optional[datetime] = Field(None, description="Pickup PIN expiry (ISO 8601)")
    created_at: datetime = Field(..., description="Booking creation time (ISO 8601)")

    class Config:
        from_attributes = True


class BookingList(BaseModel):
    """Response schema for booking listings."""

    items: list[Booking] = Field(..., description="Bookings")
