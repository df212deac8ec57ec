"""Booking model definition."""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime, Float, ForeignKey, Index, Integer, String, func, text
from sqlalchemy.dialects.postgresql import UUID as PgUUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..core.database import Base

if TYPE_CHECKING:
    from .ride import Ride


class BookingStatus(str, Enum):
    """Booking status enumeration."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class PickupStatus(str, Enum):
    """Pickup status enumeration, meaningful once a booking is confirmed."""
    PENDING = "pending"
    PICKED_UP = "picked_up"


# Statuses that block a rider from requesting the same ride again
ACTIVE_BOOKING_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)

_ACTIVE_BOOKING_CLAUSE = text("status IN ('pending', 'confirmed')")


class Booking(Base):
    """Booking entity representing one rider's request for seats on a ride."""

    __tablename__ = "bookings"

    # Primary key
    id: Mapped[UUID] = mapped_column(
        PgUUID(as_uuid=True),
        primary_key=True,
        default=uuid4
    )

    # Foreign key to ride
    ride_id: Mapped[UUID] = mapped_column(
        PgUUID(as_uuid=True),
        ForeignKey("rides.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    rider_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Booking details
    confirmation_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True, index=True)
    number_of_seats: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[BookingStatus] = mapped_column(
        String(20),
        nullable=False,
        default=BookingStatus.PENDING,
        index=True
    )

    # Pickup location
    pickup_address: Mapped[str] = mapped_column(String(255), nullable=False)
    pickup_latitude: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_longitude: Mapped[float] = mapped_column(Float, nullable=False)

    # Price snapshot at request time and payment authorization
    price_per_seat_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    price_currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    payment_authorization_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # Pickup verification
    pickup_status: Mapped[PickupStatus] = mapped_column(
        String(20),
        nullable=False,
        default=PickupStatus.PENDING
    )
    picked_up_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)
    pickup_pin_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    pickup_pin_encrypted: Mapped[str | None] = mapped_column(String(255), nullable=True)
    pickup_pin_expires_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)
    pickup_pin_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pickup_pin_locked_until: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        nullable=False,
        server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        nullable=False,
        server_default=func.now(),
        server_onupdate=func.now()
    )

    # Constraints
    __table_args__ = (
        CheckConstraint("number_of_seats > 0", name="ck_booking_seats_positive"),
        CheckConstraint("pickup_pin_attempts >= 0", name="ck_booking_pin_attempts_non_negative"),
        CheckConstraint("price_per_seat_amount >= 0", name="ck_booking_price_non_negative"),
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'rejected', 'cancelled', 'completed')",
            name="ck_booking_status_valid"
        ),
        CheckConstraint(
            "pickup_status IN ('pending', 'picked_up')",
            name="ck_booking_pickup_status_valid"
        ),
        # One open request or confirmed booking per rider per ride
        Index(
            "uq_booking_active_rider_ride",
            "ride_id",
            "rider_id",
            unique=True,
            postgresql_where=_ACTIVE_BOOKING_CLAUSE,
            sqlite_where=_ACTIVE_BOOKING_CLAUSE,
        ),
    )

    # Relationships
    ride: Mapped["Ride"] = relationship("Ride", back_populates="bookings")

    @property
    def holds_seats(self) -> bool:
        """Whether this booking's seats are counted against the ride's inventory."""
        return self.status == BookingStatus.CONFIRMED

    @property
    def has_pickup_pin(self) -> bool:
        return self.pickup_pin_hash is not None

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, ride_id={self.ride_id}, rider_id='{self.rider_id}', "
            f"seats={self.number_of_seats}, status={self.status}, pickup={self.pickup_status})>"
        )
