"""Pickup credential service: PIN generation, dual-form storage, expiry and lockout policy."""

import base64
import hashlib
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from cryptography.fernet import Fernet
from passlib.context import CryptContext

from ..core.config import Settings, settings

logger = logging.getLogger(__name__)

PIN_LENGTH = 4
PIN_PATTERN = re.compile(r"[0-9]{4}")


def _weak_pins() -> frozenset[str]:
    """All-same-digit codes plus ascending and descending runs."""
    digits = "0123456789"
    same = {d * PIN_LENGTH for d in digits}
    ascending = {digits[i:i + PIN_LENGTH] for i in range(len(digits) - PIN_LENGTH + 1)}
    descending = {run[::-1] for run in ascending}
    return frozenset(same | ascending | descending)


WEAK_PINS = _weak_pins()


@dataclass(frozen=True)
class IssuedCredential:
    """Stored forms of a freshly issued pickup PIN. The plaintext is not kept."""

    pin_hash: str
    pin_encrypted: str
    expires_at: datetime


class PickupCredentialService:
    """Issue, reveal and check 4-digit pickup PINs."""

    def __init__(
        self,
        secret: str,
        ttl: timedelta = timedelta(hours=24),
        max_attempts: int = 5,
        lockout: timedelta = timedelta(minutes=10),
        hash_rounds: int = 10,
    ):
        self.ttl = ttl
        self.max_attempts = max_attempts
        self.lockout = lockout
        self._fernet = Fernet(self.derive_key(secret))
        self._hasher = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=hash_rounds)

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "PickupCredentialService":
        """Build the service from application settings."""
        return cls(
            secret=config.pickup_pin_encryption_secret,
            ttl=timedelta(hours=config.pickup_pin_ttl_hours),
            max_attempts=config.pickup_pin_max_attempts,
            lockout=timedelta(minutes=config.pickup_pin_lockout_minutes),
            hash_rounds=config.pickup_pin_hash_rounds,
        )

    @staticmethod
    def derive_key(secret: str) -> bytes:
        """Derive the Fernet key from the server secret (SHA-256, url-safe base64)."""
        return base64.urlsafe_b64encode(hashlib.sha256(secret.encode("utf-8")).digest())

    @staticmethod
    def is_valid_format(pin: str) -> bool:
        return isinstance(pin, str) and PIN_PATTERN.fullmatch(pin) is not None

    def generate_pin(self) -> str:
        """Draw a uniformly random 4-digit PIN, redrawing deny-listed values."""
        while True:
            pin = f"{secrets.randbelow(10 ** PIN_LENGTH):0{PIN_LENGTH}d}"
            if pin not in WEAK_PINS:
                return pin

    def hash_pin(self, pin: str) -> str:
        return self._hasher.hash(pin)

    def verify_pin(self, pin: str, pin_hash: str) -> bool:
        """Compare a submitted PIN against the stored one-way hash."""
        return self._hasher.verify(pin, pin_hash)

    def encrypt_pin(self, pin: str) -> str:
        return self._fernet.encrypt(pin.encode("utf-8")).decode("ascii")

    def decrypt_pin(self, token: str) -> str:
        """
        Recover the PIN from its reversible form for display to the rider.

        Raises:
            cryptography.fernet.InvalidToken: If the token was not produced with this key
        """
        return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")

    def issue(self, now: datetime) -> IssuedCredential:
        """
        Generate a new PIN and return only its stored forms.

        Args:
            now: Issuance time; the credential expires ``ttl`` later

        Returns:
            Hash, encrypted form and expiry of the new PIN
        """
        pin = self.generate_pin()
        credential = IssuedCredential(
            pin_hash=self.hash_pin(pin),
            pin_encrypted=self.encrypt_pin(pin),
            expires_at=now + self.ttl,
        )
        del pin

        logger.debug(
            "Pickup PIN issued",
            extra={"expires_at": credential.expires_at.isoformat()}
        )
        return credential

    def is_expired(self, expires_at: Optional[datetime], now: datetime) -> bool:
        return expires_at is not None and expires_at <= now

    def is_locked(self, locked_until: Optional[datetime], now: datetime) -> bool:
        return locked_until is not None and locked_until > now

    def effective_attempts(self, attempts: int, locked_until: Optional[datetime], now: datetime) -> int:
        """Failed attempts that still count; an elapsed lockout starts the count over."""
        if locked_until is not None and locked_until <= now:
            return 0
        return attempts

    def attempts_remaining(self, attempts: int) -> int:
        return max(0, self.max_attempts - attempts)

    def lockout_until(self, now: datetime) -> datetime:
        return now + self.lockout
