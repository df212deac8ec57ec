"""Unit tests for identity resolution."""

import time

import jwt
import pytest

from ridepool.core.config import Settings
from ridepool.core.exceptions import AuthenticationError, AuthorizationError
from ridepool.core.identity import (
    AssertedIdentityResolver,
    Identity,
    Role,
    TrustedTokenResolver,
    build_identity_resolver,
)

SECRET = "identity-test-secret"


def _bearer(payload: dict, secret: str = SECRET) -> dict[str, str]:
    return {"authorization": f"Bearer {jwt.encode(payload, secret, algorithm='HS256')}"}


class TestTrustedTokenResolver:

    def test_valid_token(self):
        resolver = TrustedTokenResolver(SECRET)

        identity = resolver.resolve(_bearer({"sub": "driver_1", "role": "driver"}))

        assert identity == Identity(user_id="driver_1", role=Role.DRIVER)

    def test_missing_header(self):
        with pytest.raises(AuthenticationError) as exc_info:
            TrustedTokenResolver(SECRET).resolve({})

        assert exc_info.value.status_code == 401

    @pytest.mark.parametrize("header", ["Bearer", "Basic abc", "Bearer a b"])
    def test_malformed_header(self, header):
        with pytest.raises(AuthenticationError):
            TrustedTokenResolver(SECRET).resolve({"authorization": header})

    def test_wrong_signature(self):
        headers = _bearer({"sub": "rider_1", "role": "rider"}, secret="someone-else")

        with pytest.raises(AuthenticationError):
            TrustedTokenResolver(SECRET).resolve(headers)

    def test_expired_token(self):
        expired = int(time.time()) - 60
        headers = _bearer({"sub": "rider_1", "role": "rider", "exp": expired})

        with pytest.raises(AuthenticationError):
            TrustedTokenResolver(SECRET).resolve(headers)

    def test_token_without_subject_or_role(self):
        with pytest.raises(AuthenticationError):
            TrustedTokenResolver(SECRET).resolve(_bearer({"role": "rider"}))

        with pytest.raises(AuthenticationError):
            TrustedTokenResolver(SECRET).resolve(_bearer({"sub": "rider_1", "role": "admin"}))


class TestAssertedIdentityResolver:

    def test_headers_are_taken_at_face_value(self):
        identity = AssertedIdentityResolver().resolve({"x-user-id": "rider_7", "x-user-role": "RIDER"})

        assert identity.user_id == "rider_7"
        assert identity.role == Role.RIDER

    def test_user_header_required(self):
        with pytest.raises(AuthenticationError):
            AssertedIdentityResolver().resolve({"x-user-role": "rider"})


def test_require_role():
    driver = Identity(user_id="driver_1", role=Role.DRIVER)

    assert driver.require_role(Role.DRIVER) is driver
    with pytest.raises(AuthorizationError) as exc_info:
        driver.require_role(Role.RIDER)

    assert exc_info.value.status_code == 403


def test_build_resolver_from_settings():
    assert isinstance(
        build_identity_resolver(Settings(identity_mode="token", bearer_token_secret=SECRET)),
        TrustedTokenResolver
    )
    assert isinstance(
        build_identity_resolver(Settings(identity_mode="asserted", environment="development")),
        AssertedIdentityResolver
    )


def test_asserted_identity_refused_in_production():
    with pytest.raises(ValueError):
        Settings(identity_mode="asserted", environment="production")
