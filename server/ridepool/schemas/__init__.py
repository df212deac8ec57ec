"""Pydantic schemas for request/response validation."""

from .booking import *  # noqa: F403
from .common import *  # noqa: F403
from .health import *  # noqa: F403
from .pickup import *  # noqa: F403
from .ride import *  # noqa: F403
