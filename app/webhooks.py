"""Stripe webhook verification.

``verify_event`` works on the raw request bytes and the ``Stripe-Signature``
header only, so it can be exercised without an HTTP stack. It never touches
order state.
"""
import logging
from typing import Any, Optional

import stripe

from app.domain import EventKind, VerifiedEvent
from app.errors import VerificationFailed

logger = logging.getLogger(__name__)

EVENT_KINDS = {
    "payment_intent.succeeded": EventKind.INTENT_SUCCEEDED,
    "payment_intent.payment_failed": EventKind.INTENT_FAILED,
    "payment_intent.canceled": EventKind.INTENT_FAILED,
}


def _field(obj: Any, key: str) -> Any:
    try:
        return obj[key]
    except (KeyError, TypeError, IndexError):
        return None


def verify_event(payload: bytes, signature_header: Optional[str], secret: Optional[str]) -> VerifiedEvent:
    if not secret:
        logger.error("STRIPE_WEBHOOK_SECRET is not configured, rejecting webhook")
        raise VerificationFailed("Webhook secret not configured")
    if not signature_header:
        raise VerificationFailed("Missing signature")

    try:
        event = stripe.Webhook.construct_event(payload, signature_header, secret)
    except ValueError:
        logger.warning("Rejected webhook with unparseable payload")
        raise VerificationFailed("Invalid payload")
    except stripe.SignatureVerificationError:
        logger.warning("Rejected webhook with invalid signature")
        raise VerificationFailed("Invalid signature")

    event_type = _field(event, "type") or ""
    kind = EVENT_KINDS.get(event_type, EventKind.UNRECOGNIZED)
    obj = _field(_field(event, "data"), "object")

    reference_id = None
    amount = None
    currency = None
    if kind is not EventKind.UNRECOGNIZED:
        reference_id = _field(obj, "id")
        amount = _field(obj, "amount")
        currency = _field(obj, "currency")

    return VerifiedEvent(
        event_id=_field(event, "id") or f"{event_type}:{reference_id}",
        event_type=event_type,
        kind=kind,
        reference_id=reference_id,
        amount=amount,
        currency=currency,
    )
