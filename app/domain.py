from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, model_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = {OrderStatus.COMPLETED, OrderStatus.FAILED}


class StatusSource(str, Enum):
    INTENT = "intent"    # order opened when the payment intent was created
    CLIENT = "client"    # reported by the client through /save-order, provisional
    EVENT = "event"      # verified webhook, authoritative


class Order(BaseModel):
    """Local record of a purchase attempt, linked to at most one payment intent."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    payment_reference_id: Optional[str] = None
    status: OrderStatus = OrderStatus.PENDING
    status_source: StatusSource = StatusSource.INTENT
    amount: Optional[int] = None
    currency: Optional[str] = None
    customer_info: Optional[Dict[str, Any]] = None
    order_details: Optional[Dict[str, Any]] = None
    shipping: Optional[Dict[str, Any]] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    @model_validator(mode="after")
    def check_completed_at(self):
        if (self.status == OrderStatus.COMPLETED) != (self.completed_at is not None):
            raise ValueError("completed_at must be set exactly when status is completed")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_final(self) -> bool:
        """Terminal and confirmed by a verified event."""
        return self.is_terminal and self.status_source == StatusSource.EVENT

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class EventKind(str, Enum):
    INTENT_SUCCEEDED = "intent_succeeded"
    INTENT_FAILED = "intent_failed"
    UNRECOGNIZED = "unrecognized"


class VerifiedEvent(BaseModel):
    event_id: str
    event_type: str
    kind: EventKind
    reference_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
