"""
Subscription state machine.

Premium (time-based) records move Free -> pending -> active ->
(expired | cancelled) -> Free, where "Free" means no effective record.
Credit balances live in a separate super_user record and are purely additive;
topups never touch a premium period and premium activation never touches
credits.

``apply_payment_event`` is the single apply path. The webhook dispatcher,
the background sweep and the operator reconciliation tool all call it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random,
)

from seapay import crud
from seapay.api.errors import AppError, event_not_found
from seapay.core.config import settings
from seapay.enums import (
    ApplyOutcome,
    EventKind,
    PaymentEventState,
    SubscriptionStatus,
    Tier,
)
from seapay.models import (
    PaymentEvent,
    SubscriptionApplication,
    SubscriptionRecord,
    ensure_utc,
    utc_now,
)
from seapay.services.errors import ConcurrentUpdateConflict, UnknownPlan
from seapay.services.notifier import SubscriptionNotifier
from seapay.services.plan_catalog import PlanCatalog, PlanDefinition, get_catalog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordSnapshot:
    status: SubscriptionStatus | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None
    grace_until: datetime | None = None
    credits_remaining: int = 0

    @classmethod
    def of(cls, record: SubscriptionRecord | None) -> RecordSnapshot:
        if record is None:
            return cls()
        return cls(
            status=record.status,
            period_start=ensure_utc(record.period_start),
            period_end=ensure_utc(record.period_end),
            grace_until=ensure_utc(record.grace_until),
            credits_remaining=record.credits_remaining,
        )

    def as_values(self) -> dict:
        return {
            "status": self.status,
            "period_start": self.period_start,
            "period_end": self.period_end,
            "grace_until": self.grace_until,
            "credits_remaining": self.credits_remaining,
        }


@dataclass(frozen=True)
class ApplyResult:
    event_id: str
    user_id: int
    outcome: ApplyOutcome
    tier: Tier | None = None
    period_end: datetime | None = None
    credits_remaining: int | None = None


# ---------------------------------------------------------------------------
# Pure transitions
# ---------------------------------------------------------------------------


def activate_or_extend(snap: RecordSnapshot, plan: PlanDefinition, now: datetime) -> RecordSnapshot:
    """new_period_end = max(current_period_end, now) + duration_days"""
    base = max(snap.period_end, now) if snap.period_end else now
    new_end = base + timedelta(days=plan.duration_days or 0)
    start = snap.period_start if snap.status == SubscriptionStatus.active else now
    return replace(
        snap,
        status=SubscriptionStatus.active,
        period_start=start or now,
        period_end=new_end,
        grace_until=None,
    )


def topup(snap: RecordSnapshot, plan: PlanDefinition) -> RecordSnapshot:
    return replace(
        snap,
        status=SubscriptionStatus.active,
        credits_remaining=snap.credits_remaining + plan.credit_grant,
    )


def reverse_topup(snap: RecordSnapshot, plan: PlanDefinition) -> RecordSnapshot | None:
    if snap.status is None:
        return None
    return replace(snap, credits_remaining=max(0, snap.credits_remaining - plan.credit_grant))


def deactivate_with_grace(
    snap: RecordSnapshot, now: datetime, grace_days: int
) -> RecordSnapshot | None:
    """
    Refunds cancel access at the end of a grace window, never immediately.

    A record that never had a paid period (no record, pending checkout) or has
    already expired is left alone. The period is only ever shortened.
    """
    if snap.status in (None, SubscriptionStatus.pending, SubscriptionStatus.expired):
        return None
    if snap.period_end is None:
        return None
    new_end = min(snap.period_end, now + timedelta(days=grace_days))
    return replace(snap, status=SubscriptionStatus.cancelled, period_end=new_end, grace_until=new_end)


def next_snapshot(
    kind: EventKind, snap: RecordSnapshot, plan: PlanDefinition, now: datetime
) -> RecordSnapshot | None:
    if kind == EventKind.captured:
        return topup(snap, plan) if plan.is_topup else activate_or_extend(snap, plan, now)
    if kind == EventKind.refunded:
        if plan.is_topup:
            return reverse_topup(snap, plan)
        return deactivate_with_grace(snap, now, settings.REFUND_GRACE_DAYS)
    raise ValueError(f"event kind {kind} does not change subscriptions")


# ---------------------------------------------------------------------------
# Idempotent apply
# ---------------------------------------------------------------------------


def apply_payment_event(
    session: Session,
    *,
    event_id: str,
    user_id: int,
    catalog: PlanCatalog | None = None,
    notifier: SubscriptionNotifier | None = None,
    now: datetime | None = None,
    max_attempts: int | None = None,
) -> ApplyResult:
    """
    Apply a linked payment event to the user's subscription.

    Safe to call any number of times for the same event: an event that
    already has an application row (or a processed_at) is a no-op. Writers
    for the same user race on the record's version column; a lost race rolls
    back and retries, and after ``max_attempts`` the
    ``ConcurrentUpdateConflict`` is re-raised for the caller to dead-letter.

    Raises:
        AppError: event missing, linked to another user or not applicable
        UnknownPlan: no plan matches the event's hint or amount
        ConcurrentUpdateConflict: retries exhausted
    """
    catalog = catalog or get_catalog()
    retrying = Retrying(
        stop=stop_after_attempt(max_attempts or settings.APPLY_MAX_ATTEMPTS),
        wait=wait_random(0, 0.05),
        retry=retry_if_exception_type(ConcurrentUpdateConflict),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    for attempt in retrying:
        with attempt:
            result = _apply_once(
                session, event_id=event_id, user_id=user_id, catalog=catalog, now=now or utc_now()
            )

    if result.outcome == ApplyOutcome.applied and notifier is not None:
        event = session.get(PaymentEvent, event_id)
        if event is not None and event.kind == EventKind.captured:
            notifier.publish_activated(result)
    return result


def _apply_once(
    session: Session,
    *,
    event_id: str,
    user_id: int,
    catalog: PlanCatalog,
    now: datetime,
) -> ApplyResult:
    # Other sessions may have written since our last read.
    session.expire_all()

    event = session.get(PaymentEvent, event_id)
    if event is None:
        raise event_not_found()
    if event.processed_at is not None or crud.get_application(
        session=session, payment_event_id=event.id
    ):
        return _duplicate(session, event, user_id)

    if event.linked_user_id != user_id:
        raise AppError(
            code=409301,
            message="Payment event is not linked to this user",
            status_code=409,
        )
    if event.kind not in (EventKind.captured, EventKind.refunded):
        raise AppError(code=400301, message="Payment event cannot be applied", status_code=400)

    plan = catalog.resolve(event.plan_hint, event.amount)
    if plan is None:
        raise UnknownPlan(event.id, event.plan_hint, event.amount)

    record = crud.get_record(session=session, user_id=user_id, tier=plan.tier)
    current = RecordSnapshot.of(record)
    new = next_snapshot(event.kind, current, plan, now)

    if new is None:
        outcome = ApplyOutcome.noop
        new = current
    else:
        outcome = ApplyOutcome.applied
        values = new.as_values()
        values["source_payment_event_id"] = event.id
        if record is None:
            session.add(SubscriptionRecord(user_id=user_id, tier=plan.tier, **values))
        elif not crud.cas_update(session=session, record=record, values=values, now=now):
            session.rollback()
            raise ConcurrentUpdateConflict(user_id, plan.tier.value)

    session.add(
        SubscriptionApplication(
            payment_event_id=event.id,
            user_id=user_id,
            tier=plan.tier,
            plan_id=plan.plan_id,
            period_end_after=new.period_end,
            credits_after=new.credits_remaining,
            applied_at=now,
        )
    )
    event.state = PaymentEventState.processed
    event.processed_at = now
    event.attempts = (event.attempts or 0) + 1
    event.last_error = None
    session.add(event)

    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        if crud.get_application(session=session, payment_event_id=event_id):
            return _duplicate(session, session.get(PaymentEvent, event_id), user_id)
        # Someone else created the (user, tier) record first.
        raise ConcurrentUpdateConflict(user_id, plan.tier.value)

    logger.info(
        "Applied payment event %s to user %s: %s tier=%s period_end=%s credits=%s",
        event_id,
        user_id,
        outcome.value,
        plan.tier.value,
        new.period_end,
        new.credits_remaining,
    )
    return ApplyResult(
        event_id=event_id,
        user_id=user_id,
        outcome=outcome,
        tier=plan.tier,
        period_end=new.period_end,
        credits_remaining=new.credits_remaining,
    )


def _duplicate(session: Session, event: PaymentEvent | None, user_id: int) -> ApplyResult:
    event_id = event.id if event is not None else ""
    application = crud.get_application(session=session, payment_event_id=event_id)
    if event is not None and event.processed_at is None:
        # Applied in a transaction that could not finish marking the event.
        event.state = PaymentEventState.processed
        event.processed_at = utc_now()
        session.add(event)
        session.commit()
    logger.info("Payment event %s already applied, skipping", event_id)
    return ApplyResult(
        event_id=event_id,
        user_id=application.user_id if application else user_id,
        outcome=ApplyOutcome.duplicate,
        tier=application.tier if application else None,
        period_end=ensure_utc(application.period_end_after) if application else None,
        credits_remaining=application.credits_after if application else None,
    )
