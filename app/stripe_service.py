import json
import logging
from typing import Any, Dict, NamedTuple, Optional

import stripe

from app.config import (
    DEFAULT_CURRENCY,
    MIN_CHARGE_AMOUNT,
    STRIPE_SECRET_KEY,
    STRIPE_TIMEOUT_SECONDS,
)
from app.errors import GatewayError, InvalidAmount

logger = logging.getLogger(__name__)

stripe.api_key = STRIPE_SECRET_KEY
# creating a PaymentIntent is not idempotent without a key, never retry
stripe.max_network_retries = 0
stripe.default_http_client = stripe.RequestsClient(timeout=STRIPE_TIMEOUT_SECONDS)

METADATA_VALUE_LIMIT = 500


class PaymentIntentResult(NamedTuple):
    reference_id: str
    client_secret: str


def validate_amount(amount) -> int:
    if amount is None:
        raise InvalidAmount("Missing amount")
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount("Amount must be an integer number of minor currency units")
    if amount < MIN_CHARGE_AMOUNT:
        raise InvalidAmount(f"Amount must be at least {MIN_CHARGE_AMOUNT}")
    return amount


def _stripe_metadata(metadata: Optional[Dict[str, Any]]) -> Dict[str, str]:
    out = {}
    for key, value in (metadata or {}).items():
        if value is None:
            continue
        text = value if isinstance(value, str) else json.dumps(value, sort_keys=True)
        out[str(key)[:40]] = text[:METADATA_VALUE_LIMIT]
    return out


def create_intent(
    amount: Optional[int],
    currency: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    idempotency_key: Optional[str] = None,
) -> PaymentIntentResult:
    amount = validate_amount(amount)
    currency = (currency or DEFAULT_CURRENCY).lower()

    params: Dict[str, Any] = dict(
        amount=amount,
        currency=currency,
        automatic_payment_methods={"enabled": True},
        metadata=_stripe_metadata(metadata),
    )
    if idempotency_key:
        params["idempotency_key"] = idempotency_key

    try:
        intent = stripe.PaymentIntent.create(**params)
    except stripe.StripeError as err:
        # str(err) carries the Stripe request id, keep it in the log only
        logger.warning("Payment intent creation failed (%s %s): %s", amount, currency, err)
        message = err.user_message or "Payment provider error"
        raise GatewayError(message) from err

    if not intent.id or not intent.client_secret:
        raise GatewayError("Payment provider returned an incomplete payment intent")

    logger.info("Created payment intent %s for %s %s", intent.id, amount, currency)
    return PaymentIntentResult(reference_id=intent.id, client_secret=intent.client_secret)
