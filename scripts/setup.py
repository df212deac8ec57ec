#!/usr/bin/env python3
"""Setup script for the ride booking API: migrate the database and seed a demo ride."""

import asyncio
import logging
import sys
from datetime import datetime, timedelta
from pathlib import Path

# Add the server directory to the Python path
server_dir = Path(__file__).parent.parent / "server"
sys.path.insert(0, str(server_dir))

from alembic import command  # noqa: E402
from alembic.config import Config  # noqa: E402
from sqlalchemy import func, select  # noqa: E402

from ridepool.core.database import async_session_factory, close_db  # noqa: E402
from ridepool.models import Ride, RideStatus  # noqa: E402

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DEMO_DRIVER_ID = "demo-driver"


def migrate_database() -> None:
    """Run Alembic migrations up to head."""
    alembic_cfg = Config(str(server_dir / "db" / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(server_dir / "db" / "alembic"))

    logger.info("Running database migrations...")
    command.upgrade(alembic_cfg, "head")
    logger.info("Database migrations completed")


async def create_sample_data() -> None:
    """Publish a demo ride for the demo driver, unless one exists already."""
    logger.info("Creating sample data...")

    async with async_session_factory() as db:
        try:
            existing = await db.execute(
                select(func.count()).select_from(Ride).where(Ride.driver_id == DEMO_DRIVER_ID)
            )
            if existing.scalar_one() > 0:
                logger.info("Sample data already exists, skipping...")
                return

            seats = 3
            db.add(Ride(
                driver_id=DEMO_DRIVER_ID,
                from_address="1 Market St, San Francisco, CA",
                to_address="500 University Ave, Palo Alto, CA",
                departure_at=datetime.utcnow().replace(microsecond=0) + timedelta(days=1),
                total_seats=seats,
                available_seats=seats,
                price_per_seat_amount=1500,  # $15.00
                price_currency="USD",
                status=RideStatus.SCHEDULED
            ))
            await db.commit()
            logger.info("Sample data created successfully!")

        except Exception:
            await db.rollback()
            logger.exception("Failed to create sample data")
            raise

    await close_db()


def main() -> None:
    """Main setup function."""
    logger.info("Starting ride booking API setup...")

    migrate_database()
    asyncio.run(create_sample_data())

    logger.info("Setup completed successfully!")
    logger.info("You can now start the API server with: cd server && uvicorn ridepool.main:app --reload")


if __name__ == "__main__":
    main()
