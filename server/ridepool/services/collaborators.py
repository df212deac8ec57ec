"""Interfaces to the payment and notification collaborators."""

import logging
import secrets
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from ..core.observability import metrics_collector
from ..schemas.common import Money

logger = logging.getLogger(__name__)


class BookingEvent:
    """Notification event names."""
    REQUESTED = "booking.requested"
    ACCEPTED = "booking.accepted"
    REJECTED = "booking.rejected"
    CANCELLED = "booking.cancelled"
    UPDATED = "booking.updated"
    PICKED_UP = "booking.picked_up"
    RIDE_CANCELLED = "ride.cancelled"


@dataclass(frozen=True)
class PaymentAuthorization:
    """Outcome of a payment authorization request."""

    approved: bool
    reference: Optional[str] = None
    reason: Optional[str] = None


class PaymentAuthorizer(Protocol):
    """Authorizes (never captures) a payment."""

    async def authorize(self, amount: Money, payer_reference: str) -> PaymentAuthorization:
        ...


class Notifier(Protocol):
    """Best-effort delivery of a user-facing event."""

    async def notify(self, recipient_id: str, event: str, payload: dict[str, Any]) -> None:
        ...


class LocalPaymentAuthorizer:
    """Approves every authorization with a locally generated reference. Development only."""

    async def authorize(self, amount: Money, payer_reference: str) -> PaymentAuthorization:
        reference = f"auth_{secrets.token_hex(12)}"
        logger.info(
            "Payment authorized locally",
            extra={
                "payer_reference": payer_reference,
                "amount": amount.amount,
                "currency": amount.currency,
                "authorization_ref": reference
            }
        )
        return PaymentAuthorization(approved=True, reference=reference)


class LoggingNotifier:
    """Writes notifications to the application log."""

    async def notify(self, recipient_id: str, event: str, payload: dict[str, Any]) -> None:
        logger.info(
            "Notification emitted",
            extra={"recipient_id": recipient_id, "event": event, "payload": payload}
        )


async def emit_notification(
    notifier: Notifier,
    recipient_id: str,
    event: str,
    payload: dict[str, Any],
) -> bool:
    """
    Deliver a notification, logging and swallowing any failure.

    State transitions call this after their commit; the return value is only
    informational.
    """
    try:
        await notifier.notify(recipient_id, event, payload)
        return True
    except Exception as e:
        metrics_collector.record_notification_failure(event)
        logger.error(
            "Failed to deliver notification",
            extra={
                "recipient_id": recipient_id,
                "event": event,
                "error": str(e)
            },
            exc_info=True
        )
        return False
