"""
API 请求/响应数据模型（Schema）

这些模型不是数据库表，只用于 API 数据交换。
所有接口都把业务数据包在 ApiEnvelope 的 data 字段里返回。
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from seapay.enums import (
    DispatchOutcome,
    EventKind,
    LinkSource,
    MatchStrategy,
    PaymentEventState,
    PaymentStatus,
    SubscriptionStatus,
    Tier,
)

# ============================================================
# 通用响应模型
# ============================================================


class Message(BaseModel):
    message: str


class TokenPayload(BaseModel):
    """JWT 载荷，sub 为用户 ID"""
    sub: str | None = None


class ApiEnvelope(BaseModel):
    """
    API 统一响应格式

    - code: 0 表示成功，非 0 为业务错误码
    - message: 成功时为 "success"
    - data: 业务数据，错误时为 None

    示例响应：
        {"code": 0, "message": "success", "data": {...}}
        {"code": 401001, "message": "Invalid webhook signature", "data": None}
    """
    code: int = 0
    message: str = "success"
    data: Any | None = None


# ============================================================
# Webhook
# ============================================================


class WebhookAckData(BaseModel):
    """
    对网关的确认

    只要事件已落台账就返回 200；outcome 仅用于排查，网关不依赖它。
    """
    received: bool = True
    duplicate: bool = False
    event_id: str
    outcome: DispatchOutcome


# ============================================================
# 订阅
# ============================================================


class SubscriptionStatusData(BaseModel):
    """
    订阅状态

    tier 为 premium / super_user / free；高级会员有效时优先显示 premium。
    """
    user_id: int
    tier: str
    period_end: datetime | None = None
    credits_remaining: int = 0
    premium_status: SubscriptionStatus | None = None


class CheckoutRequest(BaseModel):
    plan_id: str = Field(min_length=1, max_length=64)


class CheckoutData(BaseModel):
    """
    结账信息

    order_id 非空时，客户端直接用它打开网关支付页（notes 已带关联令牌）；
    为空时客户端需自行把 correlation_token 写进订单 notes。
    """
    correlation_token: str
    plan_id: str
    amount_minor_units: int
    currency: str = "INR"
    order_id: str | None = None
    key_id: str | None = None


class ConsumeCreditsRequest(BaseModel):
    amount: int = Field(default=1, ge=1, le=100)


class CreditsData(BaseModel):
    credits_remaining: int


# ============================================================
# 支付台账
# ============================================================


class PaymentEventPublic(BaseModel):
    """台账事件（不含原始请求体）"""
    id: str
    event_type: str | None = None
    kind: EventKind
    amount: int
    currency: str
    status: PaymentStatus
    method: str | None = None
    contact_email: str | None = None
    contact_phone: str | None = None
    plan_hint: str | None = None
    state: PaymentEventState
    match_strategy: MatchStrategy | None = None
    linked_user_id: int | None = None
    linked_by: LinkSource | None = None
    attempts: int = 0
    last_error: str | None = None
    received_at: datetime
    processed_at: datetime | None = None


class PaymentEventsData(BaseModel):
    data: list[PaymentEventPublic]
    count: int


class SubscriptionApplicationPublic(BaseModel):
    payment_event_id: str
    tier: Tier
    plan_id: str
    period_end_after: datetime | None = None
    credits_after: int
    applied_at: datetime


# ============================================================
# 运营对账
# ============================================================


class LinkPreviewData(BaseModel):
    """关联前预览：候选用户当前状态 + 已关联到该用户的支付"""
    event: PaymentEventPublic
    user_id: int
    status: SubscriptionStatusData
    linked_events: list[PaymentEventPublic] = []
    applications: list[SubscriptionApplicationPublic] = []
    gateway_payment: dict[str, Any] | None = None


class LinkRequest(BaseModel):
    user_id: int
    confirm: bool = False


class ReconcileResultData(BaseModel):
    event_id: str
    outcome: DispatchOutcome | None = None
    state: PaymentEventState
    linked_user_id: int | None = None
