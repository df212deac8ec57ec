"""Ride model definition."""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime, Integer, String, func
from sqlalchemy.dialects.postgresql import UUID as PgUUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..core.database import Base

if TYPE_CHECKING:
    from .booking import Booking


class RideStatus(str, Enum):
    """Ride status enumeration."""
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RideStatus.COMPLETED, RideStatus.CANCELLED)


class Ride(Base):
    """Ride entity representing one published trip with a finite seat inventory."""

    __tablename__ = "rides"

    # Primary key
    id: Mapped[UUID] = mapped_column(
        PgUUID(as_uuid=True),
        primary_key=True,
        default=uuid4
    )

    # Owning driver (opaque id from the identity provider)
    driver_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Route details
    from_address: Mapped[str] = mapped_column(String(255), nullable=False)
    to_address: Mapped[str] = mapped_column(String(255), nullable=False)
    departure_at: Mapped[datetime] = mapped_column(DateTime(), nullable=False, index=True)

    # Seat inventory; available_seats is written only by the seat ledger
    total_seats: Mapped[int] = mapped_column(Integer, nullable=False)
    available_seats: Mapped[int] = mapped_column(Integer, nullable=False)

    # Price information (stored as minor units, e.g., cents)
    price_per_seat_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    price_currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    status: Mapped[RideStatus] = mapped_column(
        String(20),
        nullable=False,
        default=RideStatus.SCHEDULED,
        index=True
    )

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
        CheckConstraint("total_seats > 0", name="ck_ride_total_seats_positive"),
        CheckConstraint("available_seats >= 0", name="ck_ride_available_seats_non_negative"),
        CheckConstraint("available_seats <= total_seats", name="ck_ride_available_seats_lte_total"),
        CheckConstraint("price_per_seat_amount >= 0", name="ck_ride_price_non_negative"),
        CheckConstraint("length(price_currency) = 3", name="ck_ride_price_currency_length"),
        CheckConstraint(
            "status IN ('scheduled', 'in-progress', 'completed', 'cancelled')",
            name="ck_ride_status_valid"
        ),
    )

    # Relationships
    bookings: Mapped[list["Booking"]] = relationship(
        "Booking",
        back_populates="ride",
        cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return (
            f"<Ride(id={self.id}, driver_id='{self.driver_id}', status={self.status}, "
            f"seats={self.available_seats}/{self.total_seats})>"
        )
