"""FastAPI dependencies for database sessions, caller identity and service collaborators."""

from functools import lru_cache
from typing import AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..services.collaborators import LocalPaymentAuthorizer, LoggingNotifier, Notifier, PaymentAuthorizer
from ..services.pickup_credentials import PickupCredentialService
from .config import settings
from .database import get_async_session
from .identity import Identity, IdentityResolver, Role, build_identity_resolver


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Database dependency that provides async database sessions.

    Yields:
        AsyncSession: Database session
    """
    async for session in get_async_session():
        yield session


@lru_cache
def get_identity_resolver() -> IdentityResolver:
    """Resolver chosen once from configuration."""
    return build_identity_resolver(settings)


async def get_current_identity(
    request: Request,
    resolver: IdentityResolver = Depends(get_identity_resolver)
) -> Identity:
    """
    Authentication dependency resolving the caller from request headers.

    Raises:
        AuthenticationError: If the caller cannot be identified
    """
    return resolver.resolve(request.headers)


async def require_driver(identity: Identity = Depends(get_current_identity)) -> Identity:
    return identity.require_role(Role.DRIVER)


async def require_rider(identity: Identity = Depends(get_current_identity)) -> Identity:
    return identity.require_role(Role.RIDER)


@lru_cache
def get_credential_service() -> PickupCredentialService:
    return PickupCredentialService.from_settings(settings)


@lru_cache
def get_notifier() -> Notifier:
    return LoggingNotifier()


@lru_cache
def get_payment_authorizer() -> PaymentAuthorizer:
    return LocalPaymentAuthorizer()


DatabaseSession = Depends(get_db)
CurrentIdentity = Depends(get_current_identity)
DriverIdentity = Depends(require_driver)
RiderIdentity = Depends(require_rider)
CredentialService = Depends(get_credential_service)
NotifierDependency = Depends(get_notifier)
PaymentAuthorizerDependency = Depends(get_payment_authorizer)
