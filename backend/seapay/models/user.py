"""
用户目录模型模块

用户资料由平台其他模块维护，这里只保存对账需要的部分：
联系邮箱、E.164 手机号和结账时签发的关联令牌。
"""
from datetime import datetime

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, String, UniqueConstraint
from sqlmodel import Field, SQLModel

from seapay.core.snowflake import generate_id
from seapay.enums import ContactKind

from .base import utc_now


class User(SQLModel, table=True):
    """
    用户模型

    字段说明：
    - id: 主键
    - full_name: 姓名（仅用于运营对账界面展示）
    - is_admin: 是否为运营人员（可调用对账接口）
    """
    __tablename__ = "users"
    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    full_name: str | None = Field(default=None, max_length=255)
    is_admin: bool = Field(default=False)

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class UserContact(SQLModel, table=True):
    """
    用户联系方式

    一个用户可以有多个邮箱和手机号，value 保存规范化后的值
    （邮箱小写，手机号 E.164）。同一个号码可以属于多个用户（如家庭共用），
    所以 value 本身不唯一。
    """
    __tablename__ = "user_contacts"
    __table_args__ = (
        UniqueConstraint("user_id", "kind", "value", name="uq_user_contact"),
    )

    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    user_id: int = Field(
        sa_column=Column(
            BigInteger, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
        )
    )
    kind: ContactKind = Field(sa_column=Column(String(8), nullable=False))
    value: str = Field(sa_column=Column(String(255), index=True, nullable=False))


class CheckoutToken(SQLModel, table=True):
    """
    结账关联令牌

    用户发起支付时签发，写入网关订单元数据；
    webhook 回来时作为最强的用户匹配依据。
    order_id 是用它创建的网关订单（未配置网关凭证时为空）。
    """
    __tablename__ = "checkout_tokens"

    token: str = Field(sa_column=Column(String(128), primary_key=True))
    user_id: int = Field(
        sa_column=Column(
            BigInteger, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
        )
    )
    plan_id: str = Field(max_length=64)
    order_id: str | None = Field(default=None, max_length=64, index=True)
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
