"""
Webhook 接收

处理顺序：验签 → 解析 → 落台账 → （可选）同步分派。
事件一旦落库就对网关返回 200；之后的任何失败都由后台扫描兜底，
不依赖网关重投。唯一的拒绝是签名错误，此时不写任何数据。
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlmodel import Session

from seapay import crud
from seapay.core.config import settings
from seapay.enums import DispatchOutcome
from seapay.services.dispatcher import EventDispatcher
from seapay.services.errors import SignatureInvalid, UnparseableEvent
from seapay.services.events import parse_event, unparseable_event_id
from seapay.services.gateway import RazorpayClient
from seapay.services.notifier import SubscriptionNotifier
from seapay.services.plan_catalog import PlanCatalog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReceiveResult:
    event_id: str
    outcome: DispatchOutcome
    created: bool


def receive_webhook(
    session: Session,
    *,
    raw_body: bytes,
    signature: str | None,
    gateway: RazorpayClient,
    delivery_id: str | None = None,
    catalog: PlanCatalog | None = None,
    notifier: SubscriptionNotifier | None = None,
    inline_apply: bool | None = None,
) -> ReceiveResult:
    """
    接收一次网关投递

    Args:
        raw_body: 原始请求体（验签必须基于原始字节）
        signature: 签名头部值
        gateway: 网关客户端（持有 webhook 密钥）
        delivery_id: 网关投递头中的事件 ID（原生格式的台账主键）
        inline_apply: 是否在请求内同步分派，默认读取配置

    Returns:
        ReceiveResult

    Raises:
        SignatureInvalid: 签名校验失败
    """
    if not gateway.verify_webhook_signature(raw_body, signature):
        logger.warning("Rejected webhook with invalid signature (%d bytes)", len(raw_body))
        raise SignatureInvalid("invalid webhook signature")

    try:
        event = parse_event(raw_body, delivery_id)
    except UnparseableEvent as e:
        event_id = unparseable_event_id(raw_body)
        logger.warning("Unparseable webhook body %s: %s", event_id, e)
        row, created = crud.record_unparseable(
            session=session, event_id=event_id, raw_body=raw_body, error=str(e)
        )
    else:
        row, created = crud.record_event(session=session, event=event, raw_body=raw_body)

    if not created:
        logger.info("Duplicate delivery of payment event %s", row.id)
    if row.processed_at is not None:
        return ReceiveResult(event_id=row.id, outcome=DispatchOutcome.duplicate, created=created)

    if inline_apply is None:
        inline_apply = settings.WEBHOOK_INLINE_APPLY
    if not inline_apply:
        return ReceiveResult(event_id=row.id, outcome=DispatchOutcome.pending, created=created)

    dispatcher = EventDispatcher(session, catalog=catalog, notifier=notifier)
    try:
        outcome = dispatcher.dispatch(row)
    except Exception as e:
        # The event is stored; the sweep picks it up again.
        logger.exception("Dispatch failed for payment event %s", row.id)
        outcome = dispatcher.record_failure(row, e)
    return ReceiveResult(event_id=row.id, outcome=outcome, created=created)
