"""Identity resolution strategies for authenticated callers.

The application picks one resolver at wiring time. Services only ever see the
resolved user id, so nothing below the router layer knows which strategy ran.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Mapping, Protocol

import jwt
from jwt import PyJWTError

from .config import Settings
from .exceptions import AuthenticationError, AuthorizationError

logger = logging.getLogger(__name__)


class Role(str, Enum):
    """Caller role enumeration."""
    DRIVER = "driver"
    RIDER = "rider"


@dataclass(frozen=True)
class Identity:
    """Authenticated caller."""

    user_id: str
    role: Role

    def require_role(self, role: Role) -> "Identity":
        """Return self if the caller has the given role, else raise AuthorizationError."""
        if self.role != role:
            raise AuthorizationError(
                detail=f"This operation requires the '{role.value}' role",
                required_permissions=[role.value],
            )
        return self


class IdentityResolver(Protocol):
    """Resolve the caller's identity from request headers."""

    def resolve(self, headers: Mapping[str, str]) -> Identity:
        ...


def _parse_role(value: str | None) -> Role:
    try:
        return Role((value or "").lower())
    except ValueError:
        raise AuthenticationError(detail=f"Unknown role '{value}'") from None


class TrustedTokenResolver:
    """Resolve identity from a verified HS256 bearer token."""

    def __init__(self, secret: str, algorithms: tuple[str, ...] = ("HS256",)):
        self.secret = secret
        self.algorithms = list(algorithms)

    def resolve(self, headers: Mapping[str, str]) -> Identity:
        authorization = headers.get("authorization")
        if not authorization:
            raise AuthenticationError(detail="Authorization header missing")

        try:
            scheme, token = authorization.split()
        except ValueError:
            raise AuthenticationError(detail="Invalid authorization header format") from None

        if scheme.lower() != "bearer":
            raise AuthenticationError(detail="Invalid authentication scheme")

        try:
            payload = jwt.decode(token, self.secret, algorithms=self.algorithms)
        except PyJWTError as e:
            raise AuthenticationError(detail=f"Token validation failed: {str(e)}") from e

        user_id = payload.get("sub")
        if user_id is None:
            raise AuthenticationError(detail="Invalid token payload")

        # Check token expiration
        exp = payload.get("exp")
        if exp and datetime.utcnow().timestamp() > exp:
            raise AuthenticationError(detail="Token has expired")

        return Identity(user_id=str(user_id), role=_parse_role(payload.get("role")))


class AssertedIdentityResolver:
    """
    Accept a caller-supplied identity without verifying any credential.

    Only wired in non-production configurations, for local testing of
    driver and rider flows without a token issuer.
    """

    def __init__(self, user_header: str = "X-User-Id", role_header: str = "X-User-Role"):
        self.user_header = user_header.lower()
        self.role_header = role_header.lower()

    def resolve(self, headers: Mapping[str, str]) -> Identity:
        user_id = headers.get(self.user_header)
        if not user_id:
            raise AuthenticationError(detail=f"{self.user_header} header is required")

        identity = Identity(user_id=user_id, role=_parse_role(headers.get(self.role_header)))
        logger.debug(
            "Using asserted identity",
            extra={"user_id": identity.user_id, "role": identity.role.value}
        )
        return identity


def build_identity_resolver(config: Settings) -> IdentityResolver:
    """Build the resolver selected by configuration."""
    if config.identity_mode == "asserted":
        if config.is_production:
            raise RuntimeError("Asserted identity is not allowed in production")
        logger.warning(
            "Asserted identity mode enabled - callers are not authenticated",
            extra={"environment": config.environment}
        )
        return AssertedIdentityResolver()
    return TrustedTokenResolver(config.bearer_token_secret)
