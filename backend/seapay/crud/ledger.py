"""支付事件台账 CRUD 操作（只追加，不删除）"""
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from seapay.enums import EventKind, LinkSource, MatchStrategy, PaymentEventState, PaymentStatus
from seapay.models import PaymentEvent, utc_now
from seapay.services.events import GatewayEvent


def record_event(
    *, session: Session, event: GatewayEvent, raw_body: bytes
) -> tuple[PaymentEvent, bool]:
    """持久化事件，返回 (台账记录, 是否新建)。同一 ID 的重复投递返回已有记录"""
    existing = session.get(PaymentEvent, event.id)
    if existing:
        return existing, False

    row = PaymentEvent(
        id=event.id,
        event_type=event.event_type,
        kind=event.kind,
        amount=event.amount,
        currency=event.currency,
        status=event.status,
        method=event.method,
        payment_id=event.payment_id,
        contact_email=event.contact_email,
        contact_phone=event.contact_phone,
        plan_hint=event.plan_id,
        correlation_token=event.correlation_token,
        raw_body=raw_body,
        state=PaymentEventState.received,
    )
    return _insert(session=session, row=row)


def record_unparseable(
    *, session: Session, event_id: str, raw_body: bytes, error: str
) -> tuple[PaymentEvent, bool]:
    """保存无法解析的原始请求体"""
    existing = session.get(PaymentEvent, event_id)
    if existing:
        return existing, False

    row = PaymentEvent(
        id=event_id,
        kind=EventKind.unparseable,
        status=PaymentStatus.unparseable,
        raw_body=raw_body,
        state=PaymentEventState.received,
        last_error=error[:1000],
    )
    return _insert(session=session, row=row)


def _insert(*, session: Session, row: PaymentEvent) -> tuple[PaymentEvent, bool]:
    session.add(row)
    try:
        session.commit()
    except IntegrityError:
        # Lost the race against a concurrent delivery of the same id.
        session.rollback()
        existing = session.get(PaymentEvent, row.id)
        if existing is None:
            raise
        return existing, False
    session.refresh(row)
    return row, True


def get_event(*, session: Session, event_id: str) -> PaymentEvent | None:
    return session.get(PaymentEvent, event_id)


def list_by_state(
    *, session: Session, state: PaymentEventState, limit: int = 100, offset: int = 0
) -> list[PaymentEvent]:
    stmt = (
        select(PaymentEvent)
        .where(PaymentEvent.state == state)
        .order_by(PaymentEvent.received_at)
        .offset(offset)
        .limit(limit)
    )
    return list(session.exec(stmt).all())


def list_orphaned_events(*, session: Session, limit: int = 100, offset: int = 0) -> list[PaymentEvent]:
    return list_by_state(
        session=session, state=PaymentEventState.orphaned, limit=limit, offset=offset
    )


def list_orphans_for_rescan(*, session: Session, limit: int) -> list[PaymentEvent]:
    """
    孤儿重扫的一批事件：最久没有尝试匹配的排在前面

    每次匹配都会刷新 last_scanned_at，永远匹配不上的事件会轮到队尾，
    不会挡住后来的孤儿。
    """
    stmt = (
        select(PaymentEvent)
        .where(PaymentEvent.state == PaymentEventState.orphaned)
        .order_by(
            PaymentEvent.last_scanned_at.asc().nulls_first(),  # type: ignore[union-attr]
            PaymentEvent.received_at,
        )
        .limit(limit)
    )
    return list(session.exec(stmt).all())


def list_unapplied_events(
    *, session: Session, min_age_seconds: int, limit: int, now: datetime | None = None
) -> list[PaymentEvent]:
    """已收到但尚未处理的事件（入口处理中途失败的那些），供后台扫描补偿"""
    cutoff = (now or utc_now()) - timedelta(seconds=min_age_seconds)
    stmt = (
        select(PaymentEvent)
        .where(PaymentEvent.state == PaymentEventState.received)
        .where(PaymentEvent.processed_at.is_(None))  # type: ignore[union-attr]
        .where(PaymentEvent.received_at <= cutoff)
        .order_by(PaymentEvent.received_at)
        .limit(limit)
    )
    return list(session.exec(stmt).all())


def list_events_for_user(*, session: Session, user_id: int) -> list[PaymentEvent]:
    stmt = (
        select(PaymentEvent)
        .where(PaymentEvent.linked_user_id == user_id)
        .order_by(PaymentEvent.received_at.desc())  # type: ignore[attr-defined]
    )
    return list(session.exec(stmt).all())


def link_event(
    *,
    session: Session,
    event: PaymentEvent,
    user_id: int,
    linked_by: LinkSource,
    strategy: MatchStrategy | None = None,
) -> PaymentEvent:
    event.linked_user_id = user_id
    event.linked_by = linked_by
    event.match_strategy = strategy
    session.add(event)
    session.commit()
    session.refresh(event)
    return event


def mark_orphaned(*, session: Session, event: PaymentEvent, reason: str) -> PaymentEvent:
    event.state = PaymentEventState.orphaned
    event.last_scanned_at = utc_now()
    event.linked_user_id = None
    event.linked_by = None
    event.match_strategy = None
    event.last_error = reason
    session.add(event)
    session.commit()
    session.refresh(event)
    return event


def mark_processed(*, session: Session, event: PaymentEvent, note: str | None = None) -> PaymentEvent:
    """标记为已处理（不产生订阅变更的事件：失败、未知类型、无法解析）"""
    event.state = PaymentEventState.processed
    event.processed_at = utc_now()
    if note:
        event.last_error = note
    session.add(event)
    session.commit()
    session.refresh(event)
    return event


def mark_dead_letter(*, session: Session, event: PaymentEvent, error: str) -> PaymentEvent:
    event.state = PaymentEventState.dead_letter
    event.last_error = error[:1000]
    session.add(event)
    session.commit()
    session.refresh(event)
    return event


def record_attempt(*, session: Session, event: PaymentEvent, error: str | None = None) -> PaymentEvent:
    event.attempts = (event.attempts or 0) + 1
    event.last_scanned_at = utc_now()
    if error:
        event.last_error = error[:1000]
    session.add(event)
    session.commit()
    session.refresh(event)
    return event


def reopen_event(*, session: Session, event: PaymentEvent) -> PaymentEvent:
    """运营显式解除关联：事件回到 orphaned，等待重新关联"""
    event.state = PaymentEventState.orphaned
    event.linked_user_id = None
    event.linked_by = None
    event.match_strategy = None
    event.last_error = "unlinked by operator"
    session.add(event)
    session.commit()
    session.refresh(event)
    return event


def requeue_event(*, session: Session, event: PaymentEvent) -> PaymentEvent:
    """死信事件重新入队"""
    event.state = PaymentEventState.received
    event.attempts = 0
    event.last_error = None
    session.add(event)
    session.commit()
    session.refresh(event)
    return event
