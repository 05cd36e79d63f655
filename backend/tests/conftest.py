from __future__ import annotations

import json
import os
from collections.abc import Callable, Generator
from typing import Any

# Must be set before seapay.core.config is imported.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "test-secret")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, delete

from seapay import crud
from seapay.api.deps import get_db, get_gateway_client, get_notifier
from seapay.core.security import create_access_token
from seapay.enums import LinkSource, MatchStrategy
from seapay.main import app
from seapay.models import (
    CheckoutToken,
    PaymentEvent,
    SubscriptionApplication,
    SubscriptionRecord,
    User,
    UserContact,
)
from seapay.services.events import parse_event
from seapay.services.gateway import RazorpayClient
from seapay.services.notifier import SubscriptionNotifier

WEBHOOK_SECRET = "test-secret"


class FakeRedis:
    def __init__(self) -> None:
        self.messages: list[tuple[str, dict[str, str]]] = []
        self.locks: dict[str, str] = {}

    def xadd(self, stream_key: str, fields: dict[str, str], maxlen: int | None = None) -> str:
        self.messages.append((stream_key, fields))
        return f"{len(self.messages)}-0"

    def acquire_lock(self, lock_key: str, lock_value: str, expire_seconds: int = 60) -> bool:
        if lock_key in self.locks:
            return False
        self.locks[lock_key] = lock_value
        return True

    def release_lock(self, lock_key: str, lock_value: str) -> bool:
        if self.locks.get(lock_key) != lock_value:
            return False
        del self.locks[lock_key]
        return True


@pytest.fixture(scope="session")
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture(scope="function")
def db(engine) -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session
        session.rollback()
        session.exec(delete(SubscriptionApplication))
        session.exec(delete(SubscriptionRecord))
        session.exec(delete(PaymentEvent))
        session.exec(delete(CheckoutToken))
        session.exec(delete(UserContact))
        session.exec(delete(User))
        session.commit()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def notifier(fake_redis) -> SubscriptionNotifier:
    return SubscriptionNotifier(fake_redis, "subscription_events")


@pytest.fixture
def gateway() -> RazorpayClient:
    return RazorpayClient(webhook_secret=WEBHOOK_SECRET)


@pytest.fixture(scope="function")
def client(engine, db, gateway, notifier) -> Generator[TestClient, None, None]:
    def _override_get_db() -> Generator[Session, None, None]:
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_gateway_client] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db) -> Callable[..., User]:
    def _make(
        *,
        emails: list[str] | None = None,
        phones: list[str] | None = None,
        is_admin: bool = False,
        full_name: str | None = None,
    ) -> User:
        return crud.create_user(
            session=db, full_name=full_name, emails=emails, phones=phones, is_admin=is_admin
        )

    return _make


@pytest.fixture
def auth_headers() -> Callable[[int], dict[str, str]]:
    def _headers(user_id: int) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user_id)}"}

    return _headers


def _event_body(
    event_id: str,
    *,
    event_type: str = "captured",
    amount: int = 45100,
    email: str | None = None,
    phone: str | None = None,
    token: str | None = None,
    plan_id: str | None = None,
) -> dict[str, Any]:
    return {
        "id": event_id,
        "type": event_type,
        "amount": amount,
        "currency": "INR",
        "status": "refunded" if event_type == "refund" else event_type,
        "method": "upi",
        "contact": {"email": email, "phone": phone},
        "metadata": {"correlationToken": token, "planId": plan_id},
    }


@pytest.fixture
def event_body() -> Callable[..., dict[str, Any]]:
    return _event_body


@pytest.fixture
def post_webhook(client, gateway) -> Callable[..., Any]:
    def _post(
        body: dict[str, Any] | bytes,
        *,
        signature: str | None = None,
        event_id: str | None = None,
    ):
        raw = body if isinstance(body, bytes) else json.dumps(body).encode()
        sig = gateway.compute_signature(raw) if signature is None else signature
        headers = {"X-Razorpay-Signature": sig, "Content-Type": "application/json"}
        if event_id is not None:
            headers["X-Razorpay-Event-Id"] = event_id
        return client.post("/api/v1/payments/webhook", content=raw, headers=headers)

    return _post


@pytest.fixture
def linked_event(db, event_body) -> Callable[..., PaymentEvent]:
    """Ledger event already linked to a user, ready for apply_payment_event."""

    def _linked(user_id: int, event_id: str, **kwargs: Any) -> PaymentEvent:
        raw = json.dumps(event_body(event_id, **kwargs)).encode()
        event, _ = crud.record_event(session=db, event=parse_event(raw), raw_body=raw)
        return crud.link_event(
            session=db,
            event=event,
            user_id=user_id,
            linked_by=LinkSource.matcher,
            strategy=MatchStrategy.email,
        )

    return _linked
