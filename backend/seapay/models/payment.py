"""
支付事件台账模型模块

存储从支付网关收到的每一个 webhook 事件（只追加，不删除）。
"""
from datetime import datetime

from sqlalchemy import BigInteger, Column, DateTime, Integer, LargeBinary, String, Text
from sqlmodel import Field, SQLModel

from seapay.enums import EventKind, LinkSource, MatchStrategy, PaymentEventState, PaymentStatus

from .base import utc_now


class PaymentEvent(SQLModel, table=True):
    """
    支付事件台账模型

    以网关事件 ID 作为主键，同一事件的重复投递只会命中同一行。
    收到请求后先落库再解析，保证任何事件都不会因为下游异常而丢失；
    无法匹配用户的事件以 orphaned 状态永久保留。

    字段说明：
    - id: 网关事件 ID（主键，全局唯一）
    - event_type: 网关原始事件类型（如 "payment.captured"）
    - kind: 解析后的事件变体（captured/failed/refunded/unhandled/unparseable）
    - amount: 金额（最小货币单位，如 paise）
    - currency / method: 货币、支付方式
    - payment_id: 网关支付 ID（退款事件指向原支付），用于查询网关侧详情
    - status: 网关支付状态
    - contact_email / contact_phone: 付款人联系方式（原始值）
    - plan_hint: 元数据中的计划 ID
    - correlation_token: 结账时签发的关联令牌
    - raw_body: 原始请求体
    - state: 处理状态（received/orphaned/processed/dead_letter）
    - match_strategy: 命中的匹配策略
    - attempts / last_error: 应用尝试次数和最近一次错误
    - received_at / processed_at: 接收时间、处理完成时间
    - last_scanned_at: 最近一次尝试匹配用户的时间（孤儿重扫按它轮转）
    - linked_user_id / linked_by: 关联用户及关联来源（自动匹配/运营）
    """
    __tablename__ = "payment_events"

    id: str = Field(sa_column=Column(String(128), primary_key=True))
    event_type: str = Field(default="", max_length=64)
    kind: EventKind = Field(sa_column=Column(String(16), nullable=False))

    amount: int = Field(default=0)
    currency: str = Field(default="INR", max_length=8)
    status: PaymentStatus = Field(sa_column=Column(String(16), nullable=False))
    method: str | None = Field(default=None, max_length=32)
    payment_id: str | None = Field(default=None, max_length=128, index=True)

    contact_email: str | None = Field(default=None, max_length=255)
    contact_phone: str | None = Field(default=None, max_length=32)
    plan_hint: str | None = Field(default=None, max_length=64)
    correlation_token: str | None = Field(default=None, max_length=128)

    raw_body: bytes = Field(sa_column=Column(LargeBinary, nullable=False))

    state: PaymentEventState = Field(
        sa_column=Column(String(16), index=True, nullable=False)
    )
    match_strategy: MatchStrategy | None = Field(
        default=None, sa_column=Column(String(32), nullable=True)
    )
    attempts: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    last_error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))

    received_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), index=True, nullable=False),
    )
    last_scanned_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    processed_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    linked_user_id: int | None = Field(
        default=None, sa_column=Column(BigInteger, index=True, nullable=True)
    )
    linked_by: LinkSource | None = Field(
        default=None, sa_column=Column(String(16), nullable=True)
    )
