import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from copy import deepcopy
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from app.config import ORDER_STORE
from app.database import Base, SessionLocal, engine
from app.domain import Order, OrderStatus, StatusSource, utcnow
from app.models import OrderRecord, ProcessedEvent

logger = logging.getLogger(__name__)

METADATA_FIELDS = ("customer_info", "order_details", "shipping")
SCALAR_FIELDS = ("payment_reference_id", "status", "status_source", "amount", "currency")
PATCH_FIELDS = frozenset(("id", "completed_at") + METADATA_FIELDS + SCALAR_FIELDS)


class DuplicateOrder(Exception):
    """Another writer inserted the same order between lookup and insert."""


def generate_order_id() -> str:
    return f"order_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


def deep_merge(base: Optional[Dict[str, Any]], patch: Dict[str, Any]) -> Dict[str, Any]:
    """Merge ``patch`` into a copy of ``base``; nested dicts merge, ``None`` never overwrites."""
    merged = deepcopy(base) if base else {}
    for key, value in patch.items():
        if value is None:
            continue
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = deepcopy(value)
    return merged


def apply_patch(current: Optional[Order], patch: Dict[str, Any], now: datetime) -> Order:
    """Return the order that results from merging ``patch`` into ``current``.

    ``id`` and ``created_at`` are fixed at creation. ``completed_at`` follows
    the status: it is stamped once when the order becomes completed and is
    cleared for any other status.
    """
    unknown = set(patch) - PATCH_FIELDS
    if unknown:
        raise ValueError(f"Unknown order fields: {sorted(unknown)}")

    if current is None:
        data: Dict[str, Any] = {
            "id": patch.get("id") or patch.get("payment_reference_id") or generate_order_id(),
            "status": OrderStatus.PENDING,
            "status_source": StatusSource.INTENT,
            "created_at": now,
        }
    else:
        data = current.model_dump()

    for field in SCALAR_FIELDS:
        value = patch.get(field)
        if value is None:
            continue
        if field == "payment_reference_id" and data.get(field) not in (None, value):
            raise ValueError(f"Order {data['id']} is already linked to {data[field]}")
        data[field] = value

    for field in METADATA_FIELDS:
        if patch.get(field) is not None:
            data[field] = deep_merge(data.get(field), patch[field])

    if OrderStatus(data["status"]) == OrderStatus.COMPLETED:
        if data.get("completed_at") is None:
            data["completed_at"] = patch.get("completed_at") or now
    else:
        data["completed_at"] = None

    return Order(**data)


class OrderStore(ABC):
    """Orders addressable by payment reference id or order id.

    Every write for a key goes through :meth:`locked`, so callers that need a
    read-decide-write sequence can hold the same lock around it.
    """

    backend = "abstract"

    def __init__(self):
        self._locks_guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    @contextmanager
    def locked(self, key: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
        with lock:
            yield

    def upsert(self, key: Optional[str], patch: Dict[str, Any]) -> Order:
        if key is None:
            patch = dict(patch)
            key = patch.get("id") or patch.get("payment_reference_id") or generate_order_id()
            patch.setdefault("id", key)
        elif not patch.get("id") and not patch.get("payment_reference_id"):
            patch = dict(patch, payment_reference_id=key)

        with self.locked(key):
            current = self.find(key)
            order = apply_patch(current, patch, utcnow())
            if current is not None:
                self._update(order)
                return order
            try:
                self._insert(order)
            except DuplicateOrder:
                # lost a race against another process sharing the backend
                current = self.find(key)
                if current is None:
                    raise
                order = apply_patch(current, patch, utcnow())
                self._update(order)
                return order
            logger.info("Created order %s (reference=%s, status=%s)",
                        order.id, order.payment_reference_id, order.status.value)
            return order

    def find(self, key: Optional[str]) -> Optional[Order]:
        if not key:
            return None
        return self._find_by_reference(key) or self.find_by_id(key)

    @abstractmethod
    def find_by_id(self, order_id: str) -> Optional[Order]: ...

    @abstractmethod
    def _find_by_reference(self, reference_id: str) -> Optional[Order]: ...

    @abstractmethod
    def _insert(self, order: Order) -> None: ...

    @abstractmethod
    def _update(self, order: Order) -> None: ...

    @abstractmethod
    def list(self, status: Optional[OrderStatus] = None) -> List[Order]: ...

    @abstractmethod
    def counts(self) -> Dict[str, int]: ...

    @abstractmethod
    def has_seen_event(self, event_id: str) -> bool: ...

    @abstractmethod
    def mark_event_seen(self, event_id: str, event_type: Optional[str] = None) -> bool:
        """Record an applied event id. Returns False if it was already recorded."""


def _status_counts(pairs) -> Dict[str, int]:
    counts = {s.value: 0 for s in OrderStatus}
    for status, n in pairs:
        counts[status] = counts.get(status, 0) + n
    counts["total"] = sum(counts.values())
    return counts


# ----------------------------
# In-process backend
# ----------------------------
class MemoryOrderStore(OrderStore):
    backend = "memory"

    def __init__(self):
        super().__init__()
        self._guard = threading.Lock()
        self._orders: Dict[str, Order] = {}         # by id, insertion ordered
        self._by_reference: Dict[str, str] = {}     # reference id -> order id
        self._events: Dict[str, Optional[str]] = {}

    def find_by_id(self, order_id):
        with self._guard:
            order = self._orders.get(order_id)
            return order.model_copy(deep=True) if order else None

    def _find_by_reference(self, reference_id):
        with self._guard:
            order_id = self._by_reference.get(reference_id)
            order = self._orders.get(order_id) if order_id else None
            return order.model_copy(deep=True) if order else None

    def _insert(self, order):
        with self._guard:
            if order.id in self._orders or order.payment_reference_id in self._by_reference:
                raise DuplicateOrder(order.id)
            self._store(order)

    def _update(self, order):
        with self._guard:
            self._store(order)

    def _store(self, order):
        self._orders[order.id] = order.model_copy(deep=True)
        if order.payment_reference_id:
            self._by_reference[order.payment_reference_id] = order.id

    def list(self, status=None):
        with self._guard:
            orders = [o.model_copy(deep=True) for o in self._orders.values()
                      if status is None or o.status == status]
        # sorted() is stable with reverse=True, ties keep insertion order
        return sorted(orders, key=lambda o: o.completed_at or o.created_at, reverse=True)

    def counts(self):
        with self._guard:
            statuses = [o.status.value for o in self._orders.values()]
        return _status_counts((s, statuses.count(s)) for s in set(statuses))

    def has_seen_event(self, event_id):
        with self._guard:
            return event_id in self._events

    def mark_event_seen(self, event_id, event_type=None):
        with self._guard:
            if event_id in self._events:
                return False
            self._events[event_id] = event_type
            return True


# ----------------------------
# SQLAlchemy backend
# ----------------------------
def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _aware_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _to_order(record: OrderRecord) -> Order:
    return Order(
        id=record.id,
        payment_reference_id=record.payment_reference_id,
        status=record.status,
        status_source=record.status_source,
        amount=record.amount,
        currency=record.currency,
        customer_info=record.customer_info,
        order_details=record.order_details,
        shipping=record.shipping,
        created_at=_aware_utc(record.created_at),
        completed_at=_aware_utc(record.completed_at),
    )


def _copy_into(record: OrderRecord, order: Order) -> None:
    record.payment_reference_id = order.payment_reference_id
    record.status = order.status.value
    record.status_source = order.status_source.value
    record.amount = order.amount
    record.currency = order.currency
    record.customer_info = order.customer_info
    record.order_details = order.order_details
    record.shipping = order.shipping
    record.completed_at = _naive_utc(order.completed_at)


class SqlOrderStore(OrderStore):
    backend = "sql"

    def __init__(self, session_factory):
        super().__init__()
        self.session_factory = session_factory

    def find_by_id(self, order_id):
        with self.session_factory() as db:
            record = db.query(OrderRecord).filter_by(id=order_id).first()
            return _to_order(record) if record else None

    def _find_by_reference(self, reference_id):
        with self.session_factory() as db:
            record = db.query(OrderRecord).filter_by(payment_reference_id=reference_id).first()
            return _to_order(record) if record else None

    def _insert(self, order):
        record = OrderRecord(id=order.id, created_at=_naive_utc(order.created_at))
        _copy_into(record, order)
        with self.session_factory() as db:
            db.add(record)
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise DuplicateOrder(order.id) from exc

    def _update(self, order):
        with self.session_factory() as db:
            record = db.query(OrderRecord).filter_by(id=order.id).one()
            _copy_into(record, order)
            db.commit()

    def list(self, status=None):
        with self.session_factory() as db:
            query = db.query(OrderRecord)
            if status is not None:
                query = query.filter_by(status=OrderStatus(status).value)
            query = query.order_by(
                func.coalesce(OrderRecord.completed_at, OrderRecord.created_at).desc(),
                OrderRecord.seq.asc(),
            )
            return [_to_order(r) for r in query.all()]

    def counts(self):
        with self.session_factory() as db:
            rows = db.query(OrderRecord.status, func.count(OrderRecord.seq)) \
                .group_by(OrderRecord.status).all()
        return _status_counts(rows)

    def has_seen_event(self, event_id):
        with self.session_factory() as db:
            return db.get(ProcessedEvent, event_id) is not None

    def mark_event_seen(self, event_id, event_type=None):
        with self.session_factory() as db:
            db.add(ProcessedEvent(
                event_id=event_id,
                event_type=event_type,
                processed_at=_naive_utc(utcnow()),
            ))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False
            return True


def build_store(kind: str = ORDER_STORE) -> OrderStore:
    if kind == "memory":
        return MemoryOrderStore()
    if kind == "sql":
        Base.metadata.create_all(bind=engine)
        return SqlOrderStore(SessionLocal)
    raise RuntimeError(f"Unknown ORDER_STORE backend: {kind!r}")


_store: Optional[OrderStore] = None
_store_guard = threading.Lock()


def get_store() -> OrderStore:
    global _store
    with _store_guard:
        if _store is None:
            _store = build_store()
            logger.info("Order store backend: %s", _store.backend)
        return _store
