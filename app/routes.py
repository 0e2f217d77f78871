from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field, StrictInt
from pydantic.alias_generators import to_camel

from app.auth import verify_token
from app.config import DEFAULT_CURRENCY
from app.domain import OrderStatus
from app.errors import NotFound
from app.reconciler import OrderReconciler
from app.store import OrderStore, get_store
from app.stripe_service import create_intent

router = APIRouter()


class RequestBody(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class PaymentIntentRequest(RequestBody):
    amount: Optional[StrictInt] = None     # minor units, validated by the gateway
    currency: Optional[str] = None
    order_details: Optional[Dict[str, Any]] = None
    customer_info: Optional[Dict[str, Any]] = None
    shipping: Optional[Dict[str, Any]] = None


class SaveOrderRequest(RequestBody):
    payment_reference_id: str = Field(min_length=1)
    status: Optional[OrderStatus] = None
    amount: Optional[StrictInt] = Field(default=None, ge=0)
    currency: Optional[str] = None
    customer_info: Optional[Dict[str, Any]] = None
    order_details: Optional[Dict[str, Any]] = None
    shipping: Optional[Dict[str, Any]] = None


def get_reconciler(store: OrderStore = Depends(get_store)) -> OrderReconciler:
    return OrderReconciler(store)


@router.get("/", response_class=PlainTextResponse)
def index():
    return "Order payment API active"


@router.get("/health")
def health(store: OrderStore = Depends(get_store)):
    return {"status": "ok", "store": store.backend, "orders": store.counts()}


@router.post("/create-payment-intent")
def create_payment_intent(
    request: PaymentIntentRequest,
    idempotency_key: Optional[str] = Header(None),
    reconciler: OrderReconciler = Depends(get_reconciler),
):
    currency = (request.currency or DEFAULT_CURRENCY).lower()
    customer = request.customer_info or {}
    intent = create_intent(
        request.amount,
        currency,
        metadata={"customer_email": customer.get("email"), "customer_name": customer.get("name")},
        idempotency_key=idempotency_key,
    )

    order = reconciler.open_order(
        intent.reference_id,
        request.amount,
        currency,
        metadata={
            "customer_info": request.customer_info,
            "order_details": request.order_details,
            "shipping": request.shipping,
        },
    )

    return {
        "clientSecret": intent.client_secret,
        "paymentReferenceId": intent.reference_id,
        "orderId": order.id,
    }


@router.post("/save-order")
def save_order(
    request: SaveOrderRequest,
    reconciler: OrderReconciler = Depends(get_reconciler),
):
    order = reconciler.record_order(
        request.payment_reference_id,
        status=request.status,
        amount=request.amount,
        currency=request.currency,
        customer_info=request.customer_info,
        order_details=request.order_details,
        shipping=request.shipping,
    )
    return {"success": True, "orderId": order.id}


@router.get("/api/orders")
def list_orders(
    status: Optional[OrderStatus] = None,
    store: OrderStore = Depends(get_store),
    auth=Depends(verify_token),
):
    orders = store.list(status)
    return {"success": True, "count": len(orders), "orders": [o.to_json() for o in orders]}


@router.get("/api/orders/{key}")
def get_order(
    key: str,
    store: OrderStore = Depends(get_store),
    auth=Depends(verify_token),
):
    order = store.find(key)
    if order is None:
        raise NotFound("Order not found")
    return {"success": True, "order": order.to_json()}
