import hashlib
import hmac
import json
import os
import time

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_app.db")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["JWT_SECRET"] = "test-jwt-secret"

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.orm import sessionmaker

from app.database import Base, make_engine
from app.main import app as fastapi_app
from app.store import MemoryOrderStore, SqlOrderStore, get_store

WEBHOOK_SECRET = "whsec_test"


@pytest.fixture
def sql_store(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'orders.db'}")
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield SqlOrderStore(TestingSessionLocal)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def memory_store():
    return MemoryOrderStore()


@pytest.fixture(params=["memory", "sql"])
def store(request):
    # run store and reconciler tests against both backends
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def client(sql_store):
    fastapi_app.dependency_overrides[get_store] = lambda: sql_store
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    token = jwt.encode({"sub": "admin"}, os.environ["JWT_SECRET"], algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def sign():
    """Build a Stripe-Signature header for a payload, the way Stripe signs webhooks."""
    def _sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
        timestamp = timestamp or int(time.time())
        signed = f"{timestamp}.{payload}".encode()
        signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={signature}"
    return _sign


@pytest.fixture
def intent_event():
    """JSON body of a payment_intent.* webhook event."""
    def _event(event_type: str, intent_id: str, event_id: str = "evt_1",
               amount: int = 1500, currency: str = "usd") -> str:
        return json.dumps({
            "id": event_id,
            "object": "event",
            "type": event_type,
            "data": {
                "object": {
                    "id": intent_id,
                    "object": "payment_intent",
                    "amount": amount,
                    "currency": currency,
                }
            },
        })
    return _event
