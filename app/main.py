import logging
import os

from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.concurrency import run_in_threadpool

from app.config import LOG_LEVEL, webhook_secret
from app.errors import install_error_handlers
from app.reconciler import OrderReconciler
from app.routes import get_reconciler, router
from app.webhooks import verify_event

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Order Payment Service")

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "Idempotency-Key"],
)

install_error_handlers(app)
app.include_router(router)


@app.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    reconciler: OrderReconciler = Depends(get_reconciler),
):
    payload = await request.body()

    # rejected before the payload is looked at for business data
    event = verify_event(payload, stripe_signature, webhook_secret())

    await run_in_threadpool(reconciler.apply_event, event)
    return {"received": True}
