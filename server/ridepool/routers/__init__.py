"""FastAPI routers package."""

from .booking import router as booking_router
from .health import router as health_router
from .metrics import router as metrics_router
from .pickup import router as pickup_router
from .ride import router as ride_router

__all__ = [
    "booking_router",
    "health_router",
    "metrics_router",
    "pickup_router",
    "ride_router",
]
