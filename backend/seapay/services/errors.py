"""
对账流水线内部异常

只有 SignatureInvalid 会变成对网关的非 200 响应；
其余异常都在内部消化（死信、后台重试），不会促使网关重投。
"""
from __future__ import annotations


class ReconciliationError(Exception):
    """对账流水线异常基类"""


class SignatureInvalid(ReconciliationError):
    """Webhook 签名校验失败（唯一会拒绝网关请求的情况）"""


class UnparseableEvent(ReconciliationError):
    """请求体无法解析为网关事件"""


class ConcurrentUpdateConflict(ReconciliationError):
    """同一用户的订阅记录被并发修改（乐观锁版本不一致）"""

    def __init__(self, user_id: int, tier: str) -> None:
        super().__init__(f"concurrent update on user={user_id} tier={tier}")
        self.user_id = user_id
        self.tier = tier


class UnknownPlan(ReconciliationError):
    """事件既没有可识别的计划 ID，金额也对不上任何计划"""

    def __init__(self, event_id: str, plan_hint: str | None, amount: int) -> None:
        super().__init__(f"no plan for event={event_id} hint={plan_hint!r} amount={amount}")
        self.event_id = event_id
        self.plan_hint = plan_hint
        self.amount = amount


class GatewayError(Exception):
    """调用网关 REST API 失败（网络错误或非 2xx 响应）"""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
