"""
枚举类型定义模块

所有枚举都继承自 str 和 Enum，既可以直接存入字符串列，又具有枚举的类型安全。
"""
from enum import Enum


class Tier(str, Enum):
    """
    订阅等级

    - premium: 按时间计费的高级会员
    - super_user: 按次计费的积分（问题额度）账户
    """
    premium = "premium"
    super_user = "super_user"


class BillingPeriod(str, Enum):
    monthly = "monthly"
    yearly = "yearly"
    topup = "topup"


class SubscriptionStatus(str, Enum):
    """
    订阅状态

    Free → pending → active → (expired | cancelled) → Free。
    “Free” 不落库：没有有效记录即视为免费用户。
    """
    pending = "pending"
    active = "active"
    expired = "expired"
    cancelled = "cancelled"


class PaymentStatus(str, Enum):
    """网关上报的支付状态"""
    captured = "captured"
    failed = "failed"
    refunded = "refunded"
    unparseable = "unparseable"
    unknown = "unknown"


class EventKind(str, Enum):
    """
    入口解析后的事件变体（封闭集合）

    未知类型统一归为 unhandled，而不是散落在字符串比较里。
    """
    captured = "captured"
    failed = "failed"
    refunded = "refunded"
    unhandled = "unhandled"
    unparseable = "unparseable"


class PaymentEventState(str, Enum):
    """
    台账中事件的处理状态

    - received: 已持久化，尚未应用（后台扫描会继续处理）
    - orphaned: 无法自动匹配用户，等待运营人工处理
    - processed: 已处理（processed_at 已设置）
    - dead_letter: 并发冲突重试耗尽或计划未知，等待运营复核
    """
    received = "received"
    orphaned = "orphaned"
    processed = "processed"
    dead_letter = "dead_letter"


class MatchStrategy(str, Enum):
    correlation_token = "correlation_token"
    phone = "phone"
    email = "email"


class LinkSource(str, Enum):
    matcher = "matcher"
    operator = "operator"


class ContactKind(str, Enum):
    email = "email"
    phone = "phone"


class ApplyOutcome(str, Enum):
    """
    状态机应用结果

    - applied: 产生了状态变更
    - duplicate: 该事件已应用过，本次无操作
    - noop: 已记录但无需变更（如退款时没有可停用的订阅）
    """
    applied = "applied"
    duplicate = "duplicate"
    noop = "noop"


class DispatchOutcome(str, Enum):
    """webhook 处理结果（都返回 200 给网关）"""
    applied = "applied"
    duplicate = "duplicate"
    noop = "noop"
    orphaned = "orphaned"
    failure_recorded = "failure_recorded"
    unhandled = "unhandled"
    unparseable = "unparseable"
    dead_letter = "dead_letter"
    pending = "pending"
