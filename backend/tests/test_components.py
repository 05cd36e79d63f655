from __future__ import annotations

import asyncio
import json

import httpx
import jwt
import pytest
from fastapi import HTTPException
from sqlmodel import select

from seapay import crud, issue_token, prestart
from seapay.api import deps
from seapay.core import snowflake
from seapay.core.config import Settings, parse_cors, settings
from seapay.core.security import ALGORITHM
from seapay.enums import ApplyOutcome, EventKind, PaymentStatus, Tier
from seapay.services.errors import GatewayError, UnparseableEvent
from seapay.services.events import (
    CapturedEvent,
    RefundedEvent,
    UnhandledEvent,
    kind_for_type,
    parse_event,
    unparseable_event_id,
)
from seapay.services.gateway import RazorpayClient
from seapay.services.notifier import SubscriptionNotifier
from seapay.services.plan_catalog import get_catalog, load_catalog
from seapay.services.state_machine import ApplyResult

# ---------------------------------------------------------------------------
# Gateway client
# ---------------------------------------------------------------------------


def test_signature_roundtrip_and_fail_closed():
    client = RazorpayClient(webhook_secret="s3cret")
    body = b'{"id":"pay_1"}'
    sig = client.compute_signature(body)
    assert client.verify_webhook_signature(body, sig)
    assert client.verify_webhook_signature(body, f"  {sig}\n")
    assert not client.verify_webhook_signature(body + b" ", sig)
    assert not client.verify_webhook_signature(body, None)
    assert not RazorpayClient(webhook_secret="").verify_webhook_signature(body, sig)


def test_fetch_payment_uses_basic_auth():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("authorization")
        if request.url.path.endswith("/pay_ok"):
            return httpx.Response(200, json={"id": "pay_ok", "status": "captured"})
        return httpx.Response(404, json={"error": {"code": "BAD_REQUEST_ERROR"}})

    client = RazorpayClient(
        webhook_secret="s",
        key_id="rzp_test",
        key_secret="k",
        base_url="https://api.razorpay.test/v1",
        transport=httpx.MockTransport(handler),
    )
    assert client.fetch_payment("pay_ok") == {"id": "pay_ok", "status": "captured"}
    assert seen["path"] == "/v1/payments/pay_ok"
    assert seen["auth"].startswith("Basic ")
    assert client.fetch_payment("pay_missing") is None


def test_fetch_payment_without_credentials_or_on_network_error():
    assert RazorpayClient(webhook_secret="s").fetch_payment("pay_1") is None

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("down", request=request)

    client = RazorpayClient(
        webhook_secret="s", key_id="a", key_secret="b", transport=httpx.MockTransport(handler)
    )
    assert client.fetch_payment("pay_1") is None


def test_create_order_posts_notes_and_raises_on_rejection():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        if seen["body"]["amount"] <= 0:
            return httpx.Response(400, json={"error": {"code": "BAD_REQUEST_ERROR"}})
        return httpx.Response(200, json={"id": "order_9A", "status": "created"})

    client = RazorpayClient(
        webhook_secret="s", key_id="rzp_test", key_secret="k", transport=httpx.MockTransport(handler)
    )
    order = client.create_order(
        amount=45100, receipt="ck_abc", notes={"correlation_token": "ck_abc", "plan_id": "plan_premium_monthly"}
    )
    assert order["id"] == "order_9A"
    assert seen["path"] == "/v1/orders"
    assert seen["body"]["notes"]["correlation_token"] == "ck_abc"
    assert seen["body"]["payment_capture"] == 1

    with pytest.raises(GatewayError) as exc:
        client.create_order(amount=0, receipt="ck_zero", notes={})
    assert exc.value.status_code == 400

    assert RazorpayClient(webhook_secret="s").create_order(amount=1, receipt="r", notes={}) is None


# ---------------------------------------------------------------------------
# Event parsing
# ---------------------------------------------------------------------------


def test_parse_event_variants():
    body = {
        "id": "pay_1",
        "type": "captured",
        "amount": 45100,
        "currency": "INR",
        "status": "captured",
        "method": "upi",
        "contact": {"email": "a@b.co", "phone": "+91 1"},
        "metadata": {"correlationToken": "ck_x", "planId": "plan_premium_monthly"},
    }
    event = parse_event(json.dumps(body).encode())
    assert isinstance(event, CapturedEvent)
    assert event.kind == EventKind.captured
    assert event.correlation_token == "ck_x"
    assert event.plan_id == "plan_premium_monthly"

    body.update(id="rfnd_1", type="refund", status="refunded")
    assert isinstance(parse_event(json.dumps(body).encode()), RefundedEvent)

    body.update(id="evt_2", type="subscription.charged", status="active")
    unhandled = parse_event(json.dumps(body).encode())
    assert isinstance(unhandled, UnhandledEvent)
    assert unhandled.status == PaymentStatus.unknown


@pytest.mark.parametrize(
    "raw",
    [
        b"",
        b"[]",
        b"\xff\xfe",
        b'{"type": "captured"}',
        b'{"id": "pay_1", "type": "captured", "amount": -5}',
        b'{"id": "pay_1", "type": "captured", "contact": "a@b.co"}',
    ],
)
def test_parse_event_rejects_malformed(raw):
    with pytest.raises(UnparseableEvent):
        parse_event(raw)


def test_unparseable_id_is_stable():
    assert unparseable_event_id(b"x") == unparseable_event_id(b"x")
    assert unparseable_event_id(b"x") != unparseable_event_id(b"y")
    assert kind_for_type(" Payment.Captured ") == EventKind.captured
    assert kind_for_type("refund.processed") == EventKind.refunded


# ---------------------------------------------------------------------------
# Plan catalog
# ---------------------------------------------------------------------------


def test_bundled_catalog_resolution():
    catalog = get_catalog()
    assert len(catalog) == 4
    assert catalog.resolve("plan_super_topup_451", 45100).tier == Tier.super_user
    # Bare 451 INR payments are premium monthly.
    assert catalog.resolve(None, 45100).plan_id == "plan_premium_monthly"
    assert catalog.resolve("unknown_plan", 261100).plan_id == "plan_premium_yearly"
    assert catalog.resolve(None, 451000).credit_grant == 1000
    assert catalog.resolve(None, 1) is None
    assert catalog.resolve(None, None) is None


def test_catalog_validation():
    with pytest.raises(ValueError):
        load_catalog(
            {"plans": [{"plan_id": "p", "tier": "premium", "billing_period": "monthly", "amount_minor_units": 1}]}
        )
    plan = {
        "plan_id": "t",
        "tier": "super_user",
        "billing_period": "topup",
        "amount_minor_units": 1,
        "credit_grant": 1,
    }
    with pytest.raises(ValueError):
        load_catalog({"plans": [plan, plan]})


# ---------------------------------------------------------------------------
# Notifier
# ---------------------------------------------------------------------------


def test_notifier_failure_is_logged_not_raised(caplog):
    class _Broken:
        def xadd(self, stream_key, fields, maxlen=None):
            raise ConnectionError("redis down")

    result = ApplyResult(event_id="pay_1", user_id=1, outcome=ApplyOutcome.applied, tier=Tier.premium)
    assert SubscriptionNotifier(_Broken(), "s").publish_activated(result) is None
    assert "Failed to publish" in caplog.text


# ---------------------------------------------------------------------------
# Config / ids / startup
# ---------------------------------------------------------------------------


def test_settings_validation_paths():
    assert parse_cors("http://a.com, http://b.com") == ["http://a.com", "http://b.com"]
    assert parse_cors(["a"]) == ["a"]
    with pytest.raises(ValueError):
        parse_cors(123)

    with pytest.raises(ValueError):
        Settings(ENVIRONMENT="production", SECRET_KEY="k", RAZORPAY_WEBHOOK_SECRET="changethis")

    s = Settings(DATABASE_URL=None, POSTGRES_USER="u", POSTGRES_PASSWORD="p", POSTGRES_DB="pay")
    assert s.SQLALCHEMY_DATABASE_URI.startswith("postgresql+psycopg://u:p@")


def test_snowflake_ids_are_unique_and_ordered():
    sf = snowflake.Snowflake(node_id=3)
    ids = [sf.next_id() for _ in range(1000)]
    assert len(set(ids)) == 1000
    assert ids == sorted(ids)
    with pytest.raises(ValueError):
        snowflake.Snowflake(node_id=1024)


def test_snowflake_refuses_large_clock_skew(monkeypatch):
    sf = snowflake.Snowflake(node_id=1)
    sf._last_ts = 10_000_000  # type: ignore[attr-defined]
    monkeypatch.setattr(snowflake.Snowflake, "_now_ms", staticmethod(lambda: 1_000))
    with pytest.raises(RuntimeError):
        sf.next_id()


def test_get_db_and_prestart_use_engine(engine, monkeypatch):
    monkeypatch.setattr(deps, "engine", engine)
    gen = deps.get_db()
    session = next(gen)
    session.exec(select(1))
    gen.close()

    monkeypatch.setattr(prestart, "engine", engine)
    prestart.main()


def test_http_exception_handler_dict_branch():
    from seapay import main as app_main

    exc = HTTPException(status_code=418, detail={"code": 418001, "message": "teapot"})
    resp = asyncio.run(app_main.http_error_handler(None, exc))  # type: ignore[arg-type]
    assert resp.status_code == 418
    assert json.loads(resp.body)["code"] == 418001


def test_issue_operator_token(engine, db, monkeypatch, capsys):
    operator = crud.create_user(session=db, is_admin=True)
    member = crud.create_user(session=db)

    token = issue_token.issue_operator_token(engine, operator.id, days=2)
    payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])
    assert payload["sub"] == str(operator.id)

    with pytest.raises(ValueError):
        issue_token.issue_operator_token(engine, member.id)
    with pytest.raises(ValueError):
        issue_token.issue_operator_token(engine, 999_999)

    monkeypatch.setattr(issue_token, "engine", engine)
    issue_token.main([str(operator.id)])
    printed = capsys.readouterr().out.strip()
    assert jwt.decode(printed, settings.SECRET_KEY, algorithms=[ALGORITHM])["sub"] == str(operator.id)
