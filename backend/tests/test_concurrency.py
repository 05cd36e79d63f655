"""
Races on the same (user, tier) record.

The in-memory database serializes real threads, so the interleavings are
forced: a patched crud function runs the competing apply in a second session
at the worst possible moment.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlmodel import Session

from seapay import crud
from seapay.enums import ApplyOutcome, DispatchOutcome, PaymentEventState, Tier
from seapay.models import PaymentEvent
from seapay.services import reconciliation
from seapay.services.dispatcher import EventDispatcher
from seapay.services.errors import ConcurrentUpdateConflict
from seapay.services.plan_catalog import load_catalog
from seapay.services.state_machine import apply_payment_event

T0 = datetime(2026, 5, 1, tzinfo=timezone.utc)


@pytest.fixture
def small_catalog():
    return load_catalog(
        {
            "plans": [
                {
                    "plan_id": "monthly",
                    "tier": "premium",
                    "billing_period": "monthly",
                    "amount_minor_units": 45100,
                    "duration_days": 30,
                },
                {
                    "plan_id": "ten_credits",
                    "tier": "super_user",
                    "billing_period": "topup",
                    "amount_minor_units": 9900,
                    "credit_grant": 10,
                },
            ]
        }
    )


def test_competing_writer_on_existing_record_is_retried(
    db, engine, make_user, linked_event, small_catalog, monkeypatch
):
    user = make_user()
    crud.ensure_pending(session=db, user_id=user.id, now=T0)
    linked_event(user.id, "pay_r1", plan_id="monthly")
    linked_event(user.id, "pay_r2", plan_id="monthly")

    original = crud.cas_update
    raced = []

    def racing_cas_update(*, session, record, values, now):
        if not raced:
            raced.append(True)
            with Session(engine) as other:
                apply_payment_event(other, event_id="pay_r2", user_id=user.id, catalog=small_catalog, now=now)
        return original(session=session, record=record, values=values, now=now)

    monkeypatch.setattr("seapay.crud.cas_update", racing_cas_update)

    result = apply_payment_event(db, event_id="pay_r1", user_id=user.id, catalog=small_catalog, now=T0)
    assert result.outcome == ApplyOutcome.applied

    # Both extensions landed.
    status = crud.get_status(session=db, user_id=user.id, now=T0)
    assert status.period_end == T0 + timedelta(days=60)
    record = crud.get_record(session=db, user_id=user.id, tier=Tier.premium)
    assert record.version == 3


def test_competing_first_insert_is_retried(db, engine, make_user, linked_event, small_catalog, monkeypatch):
    user = make_user()
    linked_event(user.id, "pay_i1", plan_id="ten_credits")
    linked_event(user.id, "pay_i2", plan_id="ten_credits")

    original = crud.get_record
    raced = []

    def racing_get_record(*, session, user_id, tier):
        found = original(session=session, user_id=user_id, tier=tier)
        if not raced:
            raced.append(True)
            with Session(engine) as other:
                apply_payment_event(other, event_id="pay_i2", user_id=user_id, catalog=small_catalog, now=T0)
        return found

    monkeypatch.setattr("seapay.crud.get_record", racing_get_record)

    result = apply_payment_event(db, event_id="pay_i1", user_id=user.id, catalog=small_catalog, now=T0)
    assert result.outcome == ApplyOutcome.applied
    assert result.credits_remaining == 20


@pytest.mark.parametrize("order", [("pay_top", "pay_prem"), ("pay_prem", "pay_top")])
def test_topup_and_premium_both_take_effect_in_any_order(
    db, make_user, linked_event, small_catalog, order
):
    user = make_user()
    linked_event(user.id, "pay_top", plan_id="ten_credits", amount=9900)
    linked_event(user.id, "pay_prem", plan_id="monthly")

    for event_id in order:
        apply_payment_event(db, event_id=event_id, user_id=user.id, catalog=small_catalog, now=T0)

    status = crud.get_status(session=db, user_id=user.id, now=T0)
    assert status.tier == "premium"
    assert status.credits_remaining == 10
    assert status.period_end == T0 + timedelta(days=30)


def test_exhausted_retries_escalate_to_dead_letter(
    db, make_user, linked_event, small_catalog, monkeypatch
):
    user = make_user()
    crud.ensure_pending(session=db, user_id=user.id, now=T0)
    event = linked_event(user.id, "pay_stuck", plan_id="monthly")

    calls = []

    def always_conflicting(*, session, record, values, now):
        calls.append(1)
        return False

    monkeypatch.setattr("seapay.crud.cas_update", always_conflicting)

    with pytest.raises(ConcurrentUpdateConflict):
        apply_payment_event(
            db, event_id="pay_stuck", user_id=user.id, catalog=small_catalog, max_attempts=3
        )
    assert len(calls) == 3

    outcome = EventDispatcher(db, catalog=small_catalog).apply_linked(event, user.id)
    assert outcome == DispatchOutcome.dead_letter
    db.expire_all()
    stuck = db.get(PaymentEvent, "pay_stuck")
    assert stuck.state == PaymentEventState.dead_letter
    assert "concurrent update" in stuck.last_error
    assert stuck.processed_at is None

    monkeypatch.undo()
    outcome = reconciliation.retry_dead_letter(db, event_id="pay_stuck", catalog=small_catalog)
    assert outcome == DispatchOutcome.applied
    assert db.get(PaymentEvent, "pay_stuck").state == PaymentEventState.processed
