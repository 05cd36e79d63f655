from __future__ import annotations

import json
import time

import httpx
import jwt

from seapay import crud
from seapay.api.deps import get_gateway_client
from seapay.core.config import settings
from seapay.enums import SubscriptionStatus, Tier
from seapay.main import app
from seapay.models import CheckoutToken
from seapay.services.gateway import RazorpayClient

WEBHOOK_SECRET = "test-secret"


def _order_gateway(handler) -> RazorpayClient:
    return RazorpayClient(
        webhook_secret=WEBHOOK_SECRET,
        key_id="rzp_test_key",
        key_secret="rzp_test_secret",
        transport=httpx.MockTransport(handler),
    )


def test_status_for_new_user_is_free(client, make_user, auth_headers):
    user = make_user()
    r = client.get("/api/v1/subscription/status", headers=auth_headers(user.id))
    assert r.status_code == 200
    body = r.json()
    assert body["code"] == 0
    assert body["data"] == {
        "user_id": user.id,
        "tier": "free",
        "period_end": None,
        "credits_remaining": 0,
        "premium_status": None,
    }


def test_checkout_token_links_payment_without_contact_data(
    client, db, make_user, auth_headers, post_webhook, event_body
):
    user = make_user()
    headers = auth_headers(user.id)

    r = client.post("/api/v1/subscription/checkout", headers=headers, json={"plan_id": "plan_premium_yearly"})
    assert r.status_code == 200
    checkout = r.json()["data"]
    assert checkout["correlation_token"].startswith("ck_")
    assert checkout["amount_minor_units"] == 261100

    db.expire_all()
    pending = crud.get_record(session=db, user_id=user.id, tier=Tier.premium)
    assert pending.status == SubscriptionStatus.pending

    r = post_webhook(
        event_body(
            "pay_token_1",
            amount=261100,
            email="someone-else@example.com",
            token=checkout["correlation_token"],
            plan_id="plan_premium_yearly",
        )
    )
    assert r.json()["data"]["outcome"] == "applied"

    r = client.get("/api/v1/subscription/status", headers=headers)
    data = r.json()["data"]
    assert data["tier"] == "premium"
    assert data["premium_status"] == "active"

    r = client.get("/api/v1/subscription/payments", headers=headers)
    payments = r.json()["data"]
    assert payments["count"] == 1
    assert payments["data"][0]["id"] == "pay_token_1"
    assert payments["data"][0]["match_strategy"] == "correlation_token"
    assert "raw_body" not in payments["data"][0]


def test_checkout_creates_gateway_order_carrying_the_token(client, db, make_user, auth_headers):
    orders = []

    def handler(request: httpx.Request) -> httpx.Response:
        orders.append(json.loads(request.content))
        return httpx.Response(200, json={"id": "order_Q1", "status": "created"})

    app.dependency_overrides[get_gateway_client] = lambda: _order_gateway(handler)
    user = make_user()

    r = client.post(
        "/api/v1/subscription/checkout", headers=auth_headers(user.id), json={"plan_id": "plan_premium_monthly"}
    )
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["order_id"] == "order_Q1"
    assert data["key_id"] == "rzp_test_key"

    assert len(orders) == 1
    assert orders[0]["amount"] == 45100
    assert orders[0]["notes"] == {
        "correlation_token": data["correlation_token"],
        "plan_id": "plan_premium_monthly",
    }

    db.expire_all()
    assert db.get(CheckoutToken, data["correlation_token"]).order_id == "order_Q1"


def test_checkout_reports_gateway_outage(client, db, make_user, auth_headers):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"error": {"code": "SERVER_ERROR"}})

    app.dependency_overrides[get_gateway_client] = lambda: _order_gateway(handler)
    user = make_user()

    r = client.post(
        "/api/v1/subscription/checkout", headers=auth_headers(user.id), json={"plan_id": "plan_premium_monthly"}
    )
    assert r.status_code == 502
    assert r.json()["code"] == 502401

    db.expire_all()
    assert crud.get_record(session=db, user_id=user.id, tier=Tier.premium) is None


def test_checkout_unknown_plan(client, make_user, auth_headers):
    user = make_user()
    r = client.post("/api/v1/subscription/checkout", headers=auth_headers(user.id), json={"plan_id": "gold"})
    assert r.status_code == 404
    assert r.json()["code"] == 404401


def test_checkout_validation_error_envelope(client, make_user, auth_headers):
    user = make_user()
    r = client.post("/api/v1/subscription/checkout", headers=auth_headers(user.id), json={"plan_id": ""})
    assert r.status_code == 422
    body = r.json()
    assert body["code"] == 422000
    assert body["data"]["errors"]


def test_consume_credits(client, make_user, auth_headers, post_webhook, event_body):
    user = make_user(emails=["asker@example.com"])
    headers = auth_headers(user.id)

    r = client.post("/api/v1/subscription/credits/consume", headers=headers)
    assert r.status_code == 400
    assert r.json()["code"] == 402001

    post_webhook(event_body("pay_credits", email="asker@example.com", plan_id="plan_super_topup_451"))

    r = client.post("/api/v1/subscription/credits/consume", headers=headers)
    assert r.status_code == 200
    assert r.json()["data"]["credits_remaining"] == 99

    r = client.post("/api/v1/subscription/credits/consume", headers=headers, json={"amount": 99})
    assert r.json()["data"]["credits_remaining"] == 0

    r = client.get("/api/v1/subscription/status", headers=headers)
    assert r.json()["data"]["tier"] == "free"


def test_invalid_tokens_are_rejected(client):
    r = client.get("/api/v1/subscription/status", headers={"Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401

    token = jwt.encode({"sub": "abc", "exp": int(time.time()) + 60}, settings.SECRET_KEY, algorithm="HS256")
    r = client.get("/api/v1/subscription/status", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 401

    token = jwt.encode({"exp": int(time.time()) + 60}, settings.SECRET_KEY, algorithm="HS256")
    r = client.get("/api/v1/subscription/status", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 401

    token = jwt.encode({"sub": "999999999", "exp": int(time.time()) + 60}, settings.SECRET_KEY, algorithm="HS256")
    r = client.get("/api/v1/subscription/status", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 401
    assert r.json()["code"] == 401000


def test_health_check(client):
    r = client.get("/api/v1/utils/health-check/")
    assert r.status_code == 200
    assert r.json() is True
