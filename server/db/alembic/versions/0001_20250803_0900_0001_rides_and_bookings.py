"""Rides and bookings

Revision ID: 0001
Revises:
Create Date: 2025-08-03 09:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '0001'
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Upgrade database schema."""
    # Create rides table
    op.create_table('rides',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('driver_id', sa.String(length=64), nullable=False),
        sa.Column('from_address', sa.String(length=255), nullable=False),
        sa.Column('to_address', sa.String(length=255), nullable=False),
        sa.Column('departure_at', sa.DateTime(), nullable=False),
        sa.Column('total_seats', sa.Integer(), nullable=False),
        sa.Column('available_seats', sa.Integer(), nullable=False),
        sa.Column('price_per_seat_amount', sa.Integer(), nullable=False),
        sa.Column('price_currency', sa.String(length=3), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.CheckConstraint('total_seats > 0', name='ck_ride_total_seats_positive'),
        sa.CheckConstraint('available_seats >= 0', name='ck_ride_available_seats_non_negative'),
        sa.CheckConstraint('available_seats <= total_seats', name='ck_ride_available_seats_lte_total'),
        sa.CheckConstraint('price_per_seat_amount >= 0', name='ck_ride_price_non_negative'),
        sa.CheckConstraint('length(price_currency) = 3', name='ck_ride_price_currency_length'),
        sa.CheckConstraint(
            "status IN ('scheduled', 'in-progress', 'completed', 'cancelled')",
            name='ck_ride_status_valid'
        ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_rides_departure_at'), 'rides', ['departure_at'], unique=False)
    op.create_index(op.f('ix_rides_driver_id'), 'rides', ['driver_id'], unique=False)
    op.create_index(op.f('ix_rides_status'), 'rides', ['status'], unique=False)

    # Create bookings table
    op.create_table('bookings',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('ride_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('rider_id', sa.String(length=64), nullable=False),
        sa.Column('confirmation_number', sa.String(length=32), nullable=False),
        sa.Column('number_of_seats', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('pickup_address', sa.String(length=255), nullable=False),
        sa.Column('pickup_latitude', sa.Float(), nullable=False),
        sa.Column('pickup_longitude', sa.Float(), nullable=False),
        sa.Column('price_per_seat_amount', sa.Integer(), nullable=False),
        sa.Column('price_currency', sa.String(length=3), nullable=False),
        sa.Column('payment_authorization_ref', sa.String(length=128), nullable=True),
        sa.Column('pickup_status', sa.String(length=20), nullable=False),
        sa.Column('picked_up_at', sa.DateTime(), nullable=True),
        sa.Column('pickup_pin_hash', sa.String(length=128), nullable=True),
        sa.Column('pickup_pin_encrypted', sa.String(length=255), nullable=True),
        sa.Column('pickup_pin_expires_at', sa.DateTime(), nullable=True),
        sa.Column('pickup_pin_attempts', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('pickup_pin_locked_until', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.CheckConstraint('number_of_seats > 0', name='ck_booking_seats_positive'),
        sa.CheckConstraint('pickup_pin_attempts >= 0', name='ck_booking_pin_attempts_non_negative'),
        sa.CheckConstraint('price_per_seat_amount >= 0', name='ck_booking_price_non_negative'),
        sa.CheckConstraint(
            "status IN ('pending', 'confirmed', 'rejected', 'cancelled', 'completed')",
            name='ck_booking_status_valid'
        ),
        sa.CheckConstraint("pickup_status IN ('pending', 'picked_up')", name='ck_booking_pickup_status_valid'),
        sa.ForeignKeyConstraint(['ride_id'], ['rides.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('confirmation_number')
    )
    op.create_index(op.f('ix_bookings_confirmation_number'), 'bookings', ['confirmation_number'], unique=False)
    op.create_index(op.f('ix_bookings_ride_id'), 'bookings', ['ride_id'], unique=False)
    op.create_index(op.f('ix_bookings_rider_id'), 'bookings', ['rider_id'], unique=False)
    op.create_index(op.f('ix_bookings_status'), 'bookings', ['status'], unique=False)

    # One open request or confirmed booking per rider per ride
    op.create_index(
        'uq_booking_active_rider_ride',
        'bookings',
        ['ride_id', 'rider_id'],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'confirmed')"),
        sqlite_where=sa.text("status IN ('pending', 'confirmed')")
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index('uq_booking_active_rider_ride', table_name='bookings')
    op.drop_index(op.f('ix_bookings_status'), table_name='bookings')
    op.drop_index(op.f('ix_bookings_rider_id'), table_name='bookings')
    op.drop_index(op.f('ix_bookings_ride_id'), table_name='bookings')
    op.drop_index(op.f('ix_bookings_confirmation_number'), table_name='bookings')
    op.drop_table('bookings')

    op.drop_index(op.f('ix_rides_status'), table_name='rides')
    op.drop_index(op.f('ix_rides_driver_id'), table_name='rides')
    op.drop_index(op.f('ix_rides_departure_at'), table_name='rides')
    op.drop_table('rides')
