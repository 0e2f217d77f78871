"""Order state reconciliation.

Two writers touch an order's status: the client calling ``/save-order`` after
it confirmed the payment locally, and Stripe's signed webhook. They may arrive
in any order, concurrently, and the webhook may be redelivered. The rules:

* ``pending`` may move to ``completed`` or ``failed``. Nothing leaves a
  terminal status that a verified event set.
* A status reported by the client is provisional. A later verified event
  overrides it; another client save does not.
* Metadata from every save is merged into the order whatever its status.
"""
import logging
from typing import Any, Dict, Optional

from app.domain import (
    EventKind,
    Order,
    OrderStatus,
    StatusSource,
    VerifiedEvent,
)
from app.errors import InvalidInput
from app.store import OrderStore

logger = logging.getLogger(__name__)

EVENT_STATUS = {
    EventKind.INTENT_SUCCEEDED: OrderStatus.COMPLETED,
    EventKind.INTENT_FAILED: OrderStatus.FAILED,
}


class OrderReconciler:
    def __init__(self, store: OrderStore):
        self.store = store

    def open_order(
        self,
        reference_id: str,
        amount: int,
        currency: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Order:
        """Record the pending order for a freshly created payment intent."""
        patch = {"id": reference_id, "payment_reference_id": reference_id,
                 "amount": amount, "currency": currency}
        patch.update(metadata or {})
        return self.store.upsert(reference_id, patch)

    def record_order(
        self,
        reference_id: str,
        status: Optional[OrderStatus] = None,
        amount: Optional[int] = None,
        currency: Optional[str] = None,
        customer_info: Optional[Dict[str, Any]] = None,
        order_details: Optional[Dict[str, Any]] = None,
        shipping: Optional[Dict[str, Any]] = None,
    ) -> Order:
        if not reference_id:
            raise InvalidInput("Missing paymentReferenceId")
        if amount is not None and amount < 0:
            raise InvalidInput("Amount must not be negative")

        patch: Dict[str, Any] = {
            "payment_reference_id": reference_id,
            "amount": amount,
            "currency": currency.lower() if currency else None,
            "customer_info": customer_info,
            "order_details": order_details,
            "shipping": shipping,
        }

        with self.store.locked(reference_id):
            current = self.store.find(reference_id)
            if current is None:
                patch["status_source"] = StatusSource.CLIENT
            if status is not None:
                status = OrderStatus(status)
                if current is None or current.status == OrderStatus.PENDING:
                    patch["status"] = status
                    patch["status_source"] = StatusSource.CLIENT
                elif current.status != status:
                    logger.warning(
                        "Ignoring client status %s for order %s, already %s (%s)",
                        status.value, current.id, current.status.value,
                        current.status_source.value,
                    )
            if current is not None and current.amount is not None and amount is not None \
                    and current.amount != amount:
                logger.warning("Client amount %s differs from recorded %s for order %s",
                               amount, current.amount, current.id)
                patch["amount"] = None
            order = self.store.upsert(reference_id, patch)

        if "status" in patch:
            logger.info("Order %s marked %s by client (provisional)", order.id, order.status.value)
        return order

    def apply_event(self, event: VerifiedEvent) -> Optional[Order]:
        target = EVENT_STATUS.get(event.kind)
        if target is None:
            logger.info("Ignoring unhandled event %s (%s)", event.event_id, event.event_type)
            return None
        if not event.reference_id:
            logger.warning("Event %s (%s) carries no payment reference", event.event_id, event.event_type)
            return None

        ref = event.reference_id
        with self.store.locked(ref):
            current = self.store.find(ref)

            if self.store.has_seen_event(event.event_id):
                logger.info("Duplicate delivery of event %s for %s", event.event_id, ref)
                return current

            if current is not None and current.is_final:
                if current.status != target:
                    logger.warning(
                        "Event %s wants %s but order %s is already %s, ignoring",
                        event.event_id, target.value, current.id, current.status.value,
                    )
                else:
                    logger.info("Order %s already %s", current.id, current.status.value)
                self.store.mark_event_seen(event.event_id, event.event_type)
                return current

            if current is not None and current.status_source == StatusSource.CLIENT \
                    and current.status != target:
                logger.warning("Event %s overrides client-reported %s with %s for order %s",
                               event.event_id, current.status.value, target.value, current.id)

            patch: Dict[str, Any] = {
                "status": target,
                "status_source": StatusSource.EVENT,
                "amount": event.amount,
                "currency": event.currency.lower() if event.currency else None,
            }
            if current is None:
                patch.update(id=ref, payment_reference_id=ref)
            elif (event.amount is not None and current.amount != event.amount) or \
                    (patch["currency"] is not None and current.currency != patch["currency"]):
                logger.warning("Event %s reports %s %s for order %s, recorded %s %s",
                               event.event_id, event.amount, patch["currency"], current.id,
                               current.amount, current.currency)
            order = self.store.upsert(ref, patch)
            self.store.mark_event_seen(event.event_id, event.event_type)

        logger.info("Order %s is %s (event %s)", order.id, order.status.value, event.event_id)
        return order
