import threading

import pytest

from app.domain import EventKind, OrderStatus, StatusSource, VerifiedEvent
from app.errors import InvalidInput
from app.reconciler import OrderReconciler


@pytest.fixture
def reconciler(store):
    return OrderReconciler(store)


def succeeded(ref, event_id="evt_ok", amount=1500):
    return VerifiedEvent(event_id=event_id, event_type="payment_intent.succeeded",
                         kind=EventKind.INTENT_SUCCEEDED, reference_id=ref,
                         amount=amount, currency="usd")


def failed(ref, event_id="evt_fail"):
    return VerifiedEvent(event_id=event_id, event_type="payment_intent.payment_failed",
                         kind=EventKind.INTENT_FAILED, reference_id=ref)


def test_intent_then_success_event(reconciler, store):
    order = reconciler.open_order("R1", 1500, "usd")
    assert order.id == "R1"
    assert order.status == OrderStatus.PENDING
    assert order.amount == 1500

    order = reconciler.apply_event(succeeded("R1"))

    assert order.id == "R1"
    assert order.status == OrderStatus.COMPLETED
    assert order.status_source == StatusSource.EVENT
    assert order.completed_at is not None
    assert store.find("R1") == order


def test_open_order_merges_metadata(reconciler):
    order = reconciler.open_order("R1", 1500, "usd", metadata={
        "customer_info": {"email": "a@example.com"},
        "order_details": None,
        "shipping": {"city": "Oslo"},
    })

    assert order.customer_info == {"email": "a@example.com"}
    assert order.order_details is None
    assert order.shipping == {"city": "Oslo"}


def test_same_event_twice_is_idempotent(reconciler, store):
    reconciler.open_order("R1", 1500, "usd")
    first = reconciler.apply_event(succeeded("R1"))
    second = reconciler.apply_event(succeeded("R1"))

    assert second.status == OrderStatus.COMPLETED
    assert second.completed_at == first.completed_at
    assert len(store.list()) == 1


def test_redelivery_with_new_event_id_keeps_completed_at(reconciler, store):
    reconciler.open_order("R1", 1500, "usd")
    first = reconciler.apply_event(succeeded("R1", event_id="evt_a"))
    second = reconciler.apply_event(succeeded("R1", event_id="evt_b"))

    assert second.completed_at == first.completed_at
    assert store.has_seen_event("evt_a") and store.has_seen_event("evt_b")


def test_event_overrides_client_completed(reconciler, store):
    reconciler.record_order("R1", status=OrderStatus.COMPLETED)
    assert store.find("R1").status_source == StatusSource.CLIENT

    order = reconciler.apply_event(failed("R1"))

    assert order.status == OrderStatus.FAILED
    assert order.status_source == StatusSource.EVENT
    assert order.completed_at is None


def test_event_confirms_client_completed_without_restamping(reconciler):
    provisional = reconciler.record_order("R1", status=OrderStatus.COMPLETED)
    order = reconciler.apply_event(succeeded("R1"))

    assert order.status_source == StatusSource.EVENT
    assert order.completed_at == provisional.completed_at


def test_client_cannot_revert_event_outcome(reconciler):
    reconciler.open_order("R1", 1500, "usd")
    reconciler.apply_event(failed("R1"))

    order = reconciler.record_order("R1", status=OrderStatus.COMPLETED,
                                    customer_info={"email": "late@example.com"})

    assert order.status == OrderStatus.FAILED
    assert order.customer_info == {"email": "late@example.com"}


def test_client_cannot_move_terminal_back_to_pending(reconciler):
    reconciler.record_order("R1", status=OrderStatus.COMPLETED)
    order = reconciler.record_order("R1", status=OrderStatus.PENDING)

    assert order.status == OrderStatus.COMPLETED
    assert order.completed_at is not None


def test_late_conflicting_event_is_ignored(reconciler):
    reconciler.open_order("R1", 1500, "usd")
    reconciler.apply_event(succeeded("R1"))
    order = reconciler.apply_event(failed("R1"))

    assert order.status == OrderStatus.COMPLETED


def test_event_for_unknown_reference_creates_order(reconciler, store):
    order = reconciler.apply_event(succeeded("R_new", amount=4200))

    assert order.id == "R_new"
    assert order.amount == 4200
    assert order.currency == "usd"
    assert order.status == OrderStatus.COMPLETED
    assert len(store.list()) == 1


def test_open_order_after_event_keeps_outcome(reconciler):
    reconciler.apply_event(succeeded("R1"))
    order = reconciler.open_order("R1", 1500, "usd", metadata={"order_details": {"sku": "A"}})

    assert order.status == OrderStatus.COMPLETED
    assert order.order_details == {"sku": "A"}


def test_unrecognized_event_is_noop(reconciler, store):
    event = VerifiedEvent(event_id="evt_x", event_type="charge.refunded",
                          kind=EventKind.UNRECOGNIZED)

    assert reconciler.apply_event(event) is None
    assert store.list() == []
    assert not store.has_seen_event("evt_x")


def test_record_order_requires_reference(reconciler):
    with pytest.raises(InvalidInput):
        reconciler.record_order("")


def test_client_amount_does_not_override_intent_amount(reconciler):
    reconciler.open_order("R1", 1500, "usd")
    order = reconciler.record_order("R1", amount=1)

    assert order.amount == 1500


def test_concurrent_saves_merge_into_one_order(reconciler, store):
    barrier = threading.Barrier(2)

    def save_customer():
        barrier.wait()
        reconciler.record_order("R_race", customer_info={"email": "a@example.com"})

    def save_shipping():
        barrier.wait()
        reconciler.record_order("R_race", status=OrderStatus.COMPLETED,
                                shipping={"city": "Oslo"})

    threads = [threading.Thread(target=save_customer), threading.Thread(target=save_shipping)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    orders = store.list()
    assert len(orders) == 1
    assert orders[0].customer_info == {"email": "a@example.com"}
    assert orders[0].shipping == {"city": "Oslo"}
    assert orders[0].status == OrderStatus.COMPLETED


def test_event_amount_replaces_client_amount(reconciler):
    reconciler.record_order("R_c", amount=1)

    order = reconciler.apply_event(succeeded("R_c", amount=150000))

    assert order.status == OrderStatus.COMPLETED
    assert order.amount == 150000
    assert order.currency == "usd"


def test_save_creating_order_is_client_sourced(reconciler):
    order = reconciler.record_order("R_new", customer_info={"email": "a@example.com"})

    assert order.status == OrderStatus.PENDING
    assert order.status_source == StatusSource.CLIENT
