"""
订阅模型模块

定义订阅记录和订阅应用审计记录。
"""
from datetime import datetime

from sqlalchemy import BigInteger, Column, DateTime, Integer, String, UniqueConstraint
from sqlmodel import Field, SQLModel

from seapay.core.snowflake import generate_id
from seapay.enums import SubscriptionStatus, Tier

from .base import utc_now


class SubscriptionRecord(SQLModel, table=True):
    """
    订阅记录模型

    每个用户每个等级最多一条记录（user_id + tier 唯一）：
    - premium: 按时间计费，period_end 单调不减
    - super_user: 积分账户，只维护 credits_remaining，period_end 始终为空

    并发控制使用乐观锁：每次更新都要求 version 与读取时一致，
    不一致说明有其他写入者，调用方重试。

    字段说明：
    - id: 主键
    - user_id: 用户 ID
    - tier: 订阅等级
    - status: 订阅状态（pending/active/expired/cancelled）
    - period_start / period_end: 当前订阅周期
    - grace_until: 退款后的访问截止时间
    - credits_remaining: 剩余积分（问题额度）
    - source_payment_event_id: 最近一次应用的支付事件 ID
    - version: 乐观锁版本号
    """
    __tablename__ = "subscription_records"
    __table_args__ = (UniqueConstraint("user_id", "tier", name="uq_subscription_user_tier"),)

    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    user_id: int = Field(sa_column=Column(BigInteger, index=True, nullable=False))
    tier: Tier = Field(sa_column=Column(String(16), nullable=False))
    status: SubscriptionStatus = Field(sa_column=Column(String(16), nullable=False))

    period_start: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    period_end: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    grace_until: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    credits_remaining: int = Field(default=0)
    source_payment_event_id: str | None = Field(default=None, max_length=128)

    version: int = Field(default=1, sa_column=Column(Integer, nullable=False, default=1))

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class SubscriptionApplication(SQLModel, table=True):
    """
    订阅应用记录模型

    每个支付事件被应用到订阅上时写入一条记录，payment_event_id 唯一。
    这是状态机自己的幂等保护：即使绕过 webhook 入口（如人工对账）直接调用，
    同一事件也只会生效一次。同时作为对账时展示的审计轨迹。
    """
    __tablename__ = "subscription_applications"

    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    payment_event_id: str = Field(
        sa_column=Column(String(128), unique=True, index=True, nullable=False)
    )
    user_id: int = Field(sa_column=Column(BigInteger, index=True, nullable=False))
    tier: Tier = Field(sa_column=Column(String(16), nullable=False))
    plan_id: str = Field(max_length=64)
    period_end_after: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    credits_after: int = Field(default=0)
    applied_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
