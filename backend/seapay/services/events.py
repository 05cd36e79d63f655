"""
Webhook 事件解析

在入口处把网关的 JSON 解析成封闭的事件变体集合：
CapturedEvent / FailedEvent / RefundedEvent / UnhandledEvent。
下游只按 kind 分派，不再做字符串比较。

支持两种请求体：
1. 平台约定格式:
   {"id", "type", "amount", "currency", "status", "method",
    "contact": {"email", "phone"}, "metadata": {"correlationToken", "planId"}}
2. Razorpay 原生格式:
   {"event": "payment.captured", "payload": {"payment": {"entity": {...}}}}
   order.paid 与 payment.captured 描述同一笔支付，只按后者入账（前者作为 Unhandled 记录）。
"""
from __future__ import annotations

import hashlib
import json
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from seapay.enums import EventKind, PaymentStatus
from seapay.services.errors import UnparseableEvent

_TYPE_TO_KIND: dict[str, EventKind] = {
    "captured": EventKind.captured,
    "payment.captured": EventKind.captured,
    "failed": EventKind.failed,
    "payment.failed": EventKind.failed,
    "refund": EventKind.refunded,
    "refunded": EventKind.refunded,
    "payment.refunded": EventKind.refunded,
    "refund.created": EventKind.refunded,
    "refund.processed": EventKind.refunded,
}

_KIND_TO_STATUS: dict[EventKind, PaymentStatus] = {
    EventKind.captured: PaymentStatus.captured,
    EventKind.failed: PaymentStatus.failed,
    EventKind.refunded: PaymentStatus.refunded,
    EventKind.unhandled: PaymentStatus.unknown,
}


class _EventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1, max_length=128)
    event_type: str
    amount: int = Field(default=0, ge=0)
    currency: str = "INR"
    status: PaymentStatus
    method: str | None = None
    payment_id: str | None = None
    contact_email: str | None = None
    contact_phone: str | None = None
    correlation_token: str | None = None
    plan_id: str | None = None


class CapturedEvent(_EventBase):
    kind: Literal[EventKind.captured] = EventKind.captured


class FailedEvent(_EventBase):
    kind: Literal[EventKind.failed] = EventKind.failed


class RefundedEvent(_EventBase):
    kind: Literal[EventKind.refunded] = EventKind.refunded


class UnhandledEvent(_EventBase):
    kind: Literal[EventKind.unhandled] = EventKind.unhandled


GatewayEvent = Annotated[
    CapturedEvent | FailedEvent | RefundedEvent | UnhandledEvent,
    Field(discriminator="kind"),
]

_VARIANTS: dict[EventKind, type[_EventBase]] = {
    EventKind.captured: CapturedEvent,
    EventKind.failed: FailedEvent,
    EventKind.refunded: RefundedEvent,
    EventKind.unhandled: UnhandledEvent,
}


def unparseable_event_id(raw_body: bytes) -> str:
    """无法解析的请求体没有可信的事件 ID，用内容哈希代替（重投会命中同一行）"""
    return f"unparseable_{hashlib.sha256(raw_body).hexdigest()[:40]}"


def kind_for_type(event_type: str) -> EventKind:
    return _TYPE_TO_KIND.get(event_type.strip().lower(), EventKind.unhandled)


def _str_or_none(v: Any) -> str | None:
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _native_entities(payload: dict[str, Any]) -> dict[str, dict[str, Any]]:
    entities: dict[str, dict[str, Any]] = {}
    for key in ("payment", "refund", "order"):
        wrapper = payload.get(key)
        if isinstance(wrapper, dict) and isinstance(wrapper.get("entity"), dict):
            entities[key] = wrapper["entity"]
    return entities


def _notes(entity: dict[str, Any]) -> dict[str, Any]:
    # Razorpay 在没有 notes 时发送空列表
    notes = entity.get("notes")
    return notes if isinstance(notes, dict) else {}


def _flatten_native(body: dict[str, Any], delivery_id: str | None) -> dict[str, Any]:
    """
    把原生格式展开成平台约定格式

    同一笔支付会先后产生 authorized / captured / refund.* 等多个事件，
    因此台账 ID 不能直接用实体 ID：优先使用投递头里的事件 ID，
    否则用 "事件类型:实体 ID"。refund.* 事件以退款实体为主体，
    联系方式和 notes 仍取自支付实体。
    """
    payload = body.get("payload") or {}
    if not isinstance(payload, dict):
        raise UnparseableEvent("payload is not an object")
    event_name = _str_or_none(body.get("event")) or ""
    entities = _native_entities(payload)
    payment = entities.get("payment", {})
    if event_name.startswith("refund."):
        primary = entities.get("refund") or payment
    else:
        primary = payment or entities.get("order", {})

    entity_id = _str_or_none(primary.get("id"))
    event_id = delivery_id or (f"{event_name}:{entity_id}" if event_name and entity_id else None)
    notes = {**_notes(payment), **_notes(primary)}
    return {
        "id": event_id,
        "type": event_name,
        "payment_id": payment.get("id") or primary.get("payment_id"),
        "amount": primary.get("amount"),
        "currency": primary.get("currency"),
        "status": primary.get("status"),
        "method": payment.get("method"),
        "contact": {
            "email": payment.get("email") or primary.get("email"),
            "phone": payment.get("contact") or primary.get("contact"),
        },
        "metadata": {
            "correlationToken": notes.get("correlation_token") or notes.get("correlationToken"),
            "planId": notes.get("plan_id") or notes.get("planId"),
        },
    }


def parse_event(raw_body: bytes, delivery_id: str | None = None) -> GatewayEvent:
    """
    解析原始请求体

    Args:
        raw_body: 原始请求体
        delivery_id: 网关投递头中的事件 ID（只用于原生格式）

    Raises:
        UnparseableEvent: 非 JSON、不是对象、缺少 id/type 或字段类型错误
    """
    try:
        body = json.loads(raw_body)
    except (UnicodeDecodeError, ValueError) as e:
        raise UnparseableEvent(f"invalid json: {e}") from e
    if not isinstance(body, dict):
        raise UnparseableEvent("body is not an object")

    if "event" in body and "payload" in body and "type" not in body:
        body = _flatten_native(body, _str_or_none(delivery_id))

    event_id = _str_or_none(body.get("id"))
    event_type = _str_or_none(body.get("type"))
    if not event_id or not event_type:
        raise UnparseableEvent("missing event id/type")

    contact = body.get("contact") or {}
    metadata = body.get("metadata") or {}
    if not isinstance(contact, dict) or not isinstance(metadata, dict):
        raise UnparseableEvent("contact/metadata must be objects")

    kind = kind_for_type(event_type)
    try:
        status = PaymentStatus(str(body.get("status") or "").lower())
    except ValueError:
        status = _KIND_TO_STATUS[kind]

    try:
        return _VARIANTS[kind](
            id=event_id,
            event_type=event_type,
            amount=body.get("amount") or 0,
            currency=_str_or_none(body.get("currency")) or "INR",
            status=status,
            method=_str_or_none(body.get("method")),
            payment_id=_str_or_none(body.get("payment_id") or body.get("paymentId")),
            contact_email=_str_or_none(contact.get("email")),
            contact_phone=_str_or_none(contact.get("phone")),
            correlation_token=_str_or_none(
                metadata.get("correlationToken") or metadata.get("correlation_token")
            ),
            plan_id=_str_or_none(metadata.get("planId") or metadata.get("plan_id")),
        )
    except ValidationError as e:
        raise UnparseableEvent(f"invalid field: {e.errors()[0].get('msg')}") from e
