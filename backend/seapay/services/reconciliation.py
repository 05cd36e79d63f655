"""
运营对账工具

孤儿事件（无法自动匹配用户）和死信事件由运营人员在后台处理：
1. link_preview: 关联前预览候选用户的当前订阅与已关联的支付
2. link: 人工指定用户并应用事件（与自动流程走同一个应用函数）
3. unlink: 解除尚未处理的关联
4. retry: 死信事件重新入队并重新分派
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlmodel import Session

from seapay import crud
from seapay.api.errors import AppError, event_not_found, user_not_found
from seapay.core.config import settings
from seapay.enums import DispatchOutcome, EventKind, LinkSource, PaymentEventState
from seapay.models import PaymentEvent, SubscriptionApplication, User
from seapay.services.dispatcher import EventDispatcher
from seapay.services.gateway import RazorpayClient
from seapay.services.notifier import SubscriptionNotifier
from seapay.services.plan_catalog import PlanCatalog

logger = logging.getLogger(__name__)

_APPLICABLE_KINDS = (EventKind.captured, EventKind.refunded)


@dataclass
class LinkPreview:
    event: PaymentEvent
    user_id: int
    status: crud.SubscriptionStatusView
    linked_events: list[PaymentEvent] = field(default_factory=list)
    applications: list[SubscriptionApplication] = field(default_factory=list)
    gateway_payment: dict[str, Any] | None = None


@dataclass(frozen=True)
class RescanSummary:
    scanned: int = 0
    linked: int = 0
    still_orphaned: int = 0
    dead_lettered: int = 0
    errors: int = 0


def _load_event(session: Session, event_id: str) -> PaymentEvent:
    event = crud.get_event(session=session, event_id=event_id)
    if event is None:
        raise event_not_found()
    return event


def _require_user(session: Session, user_id: int) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise user_not_found()
    return user


def _already_processed() -> AppError:
    return AppError(
        code=409302,
        message="Payment event already processed, linkage is final",
        status_code=409,
    )


def preview_link(
    session: Session,
    *,
    event_id: str,
    user_id: int,
    gateway: RazorpayClient | None = None,
) -> LinkPreview:
    """
    关联前预览

    Args:
        event_id: 孤儿事件 ID
        user_id: 候选用户 ID
        gateway: 配置了 API 凭证时，附带网关侧的支付详情

    Returns:
        LinkPreview
    """
    event = _load_event(session, event_id)
    _require_user(session, user_id)

    gateway_payment = None
    if gateway is not None and event.kind != EventKind.unparseable:
        gateway_payment = gateway.fetch_payment(event.payment_id or event.id)

    return LinkPreview(
        event=event,
        user_id=user_id,
        status=crud.get_status(session=session, user_id=user_id),
        linked_events=crud.list_events_for_user(session=session, user_id=user_id),
        applications=crud.list_applications(session=session, user_id=user_id),
        gateway_payment=gateway_payment,
    )


def link_orphaned_event(
    session: Session,
    *,
    event_id: str,
    user_id: int,
    confirm: bool = True,
    catalog: PlanCatalog | None = None,
    notifier: SubscriptionNotifier | None = None,
) -> DispatchOutcome:
    """
    人工关联事件并应用

    只处理 orphaned 状态（含 unlink 后重新打开）的 captured/refunded 事件。
    已处理的事件拒绝重新关联（409）；已关联到其他用户的事件也拒绝，
    需要先 unlink。所有检查都在写入关联之前完成。

    Raises:
        AppError: 事件/用户不存在、未确认、已处理、状态或类型不符、已关联其他用户
    """
    if not confirm:
        raise AppError(code=400302, message="Link must be confirmed", status_code=400)

    event = _load_event(session, event_id)
    _require_user(session, user_id)

    if event.processed_at is not None:
        raise _already_processed()
    if event.linked_user_id is not None and event.linked_user_id != user_id:
        raise AppError(
            code=409303,
            message="Payment event is linked to another user, unlink it first",
            status_code=409,
        )
    if event.state != PaymentEventState.orphaned:
        raise AppError(
            code=409304,
            message="Only orphaned payment events can be linked",
            status_code=409,
        )
    if event.kind not in _APPLICABLE_KINDS:
        raise AppError(
            code=400305,
            message="Payment event does not change subscriptions",
            status_code=400,
        )

    crud.link_event(session=session, event=event, user_id=user_id, linked_by=LinkSource.operator)
    logger.info("Operator linked payment event %s to user %s", event.id, user_id)

    dispatcher = EventDispatcher(session, catalog=catalog, notifier=notifier)
    return dispatcher.apply_linked(event, user_id)


def unlink_event(session: Session, *, event_id: str) -> PaymentEvent:
    """解除关联（只允许尚未处理的事件），事件回到 orphaned"""
    event = _load_event(session, event_id)
    if event.processed_at is not None:
        raise _already_processed()
    if event.linked_user_id is None:
        raise AppError(code=400303, message="Payment event is not linked", status_code=400)
    logger.info("Operator unlinked payment event %s from user %s", event.id, event.linked_user_id)
    return crud.reopen_event(session=session, event=event)


def retry_dead_letter(
    session: Session,
    *,
    event_id: str,
    catalog: PlanCatalog | None = None,
    notifier: SubscriptionNotifier | None = None,
) -> DispatchOutcome:
    """死信事件重新入队并立即重新分派"""
    event = _load_event(session, event_id)
    if event.state != PaymentEventState.dead_letter:
        raise AppError(code=400304, message="Payment event is not dead-lettered", status_code=400)
    crud.requeue_event(session=session, event=event)
    logger.info("Retrying dead-lettered payment event %s", event.id)
    return EventDispatcher(session, catalog=catalog, notifier=notifier).dispatch(event)


def rescan_orphaned_events(
    session: Session,
    *,
    limit: int | None = None,
    catalog: PlanCatalog | None = None,
    notifier: SubscriptionNotifier | None = None,
) -> RescanSummary:
    """
    批量重新匹配孤儿事件

    匹配本身是纯函数，对未变化的事件重复执行结果相同，可以周期性运行。
    """
    events = crud.list_orphans_for_rescan(session=session, limit=limit or settings.SWEEP_BATCH_SIZE)
    dispatcher = EventDispatcher(session, catalog=catalog, notifier=notifier)

    linked = still_orphaned = dead_lettered = errors = 0
    for event in events:
        try:
            outcome = dispatcher.dispatch(event)
        except Exception as exc:
            logger.exception("Orphan rescan failed for payment event %s", event.id)
            outcome = dispatcher.record_failure(event, exc)
        if outcome == DispatchOutcome.pending:
            errors += 1
        elif outcome == DispatchOutcome.orphaned:
            still_orphaned += 1
        elif outcome == DispatchOutcome.dead_letter:
            dead_lettered += 1
        else:
            linked += 1

    summary = RescanSummary(
        scanned=len(events),
        linked=linked,
        still_orphaned=still_orphaned,
        dead_lettered=dead_lettered,
        errors=errors,
    )
    if events:
        logger.info("Orphan rescan: %s", summary)
    return summary
