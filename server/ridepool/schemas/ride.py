"""Ride-related Pydantic schemas."""

from datetime import datetime

from pydantic import BaseModel, Field

from ..models.ride import RideStatus
from .common import Money


class PublishRideRequest(BaseModel):
    """Request schema for publishing a ride."""

    from_address: str = Field(..., min_length=1, max_length=255, description="Departure address")
    to_address: str = Field(..., min_length=1, max_length=255, description="Destination address")
    departure_at: datetime = Field(..., description="Departure time (ISO 8601)")
    total_seats: int = Field(..., ge=1, le=8, description="Seats offered on this ride")
    price_per_seat: Money = Field(..., description="Price of one seat")


class RideRequest(BaseModel):
    """Request schema for operations addressing a single ride."""

    ride_id: str = Field(..., description="Ride to operate on")


class Ride(BaseModel):
    """Ride response schema."""

    id: str = Field(..., description="Unique ride ID")
    driver_id: str = Field(..., description="Driver who published the ride")
    from_address: str = Field(..., description="Departure address")
    to_address: str = Field(..., description="Destination address")
    departure_at: datetime = Field(..., description="Departure time (ISO 8601)")
    total_seats: int = Field(..., ge=1, description="Seats published")
    available_seats: int = Field(..., ge=0, description="Seats not held by confirmed bookings")
    price_per_seat: Money = Field(..., description="Price of one seat")
    status: RideStatus = Field(..., description="Ride status")

    class Config:
        from_attributes = True
