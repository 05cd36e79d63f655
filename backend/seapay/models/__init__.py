"""
数据库模型定义模块

模型按功能拆分：
- user.py: 用户目录（用户、联系方式、结账令牌）
- payment.py: 支付事件台账
- subscription.py: 订阅记录、订阅应用审计
"""
from sqlmodel import SQLModel

from .base import ensure_utc, utc_now
from .payment import PaymentEvent
from .subscription import SubscriptionApplication, SubscriptionRecord
from .user import CheckoutToken, User, UserContact

__all__ = [
    "SQLModel",
    "utc_now",
    "ensure_utc",
    "User",
    "UserContact",
    "CheckoutToken",
    "PaymentEvent",
    "SubscriptionRecord",
    "SubscriptionApplication",
]
