"""
订阅通知

订阅激活成功后，向 Redis Stream 追加一条 "SubscriptionActivated" 消息，
由下游（WhatsApp 机器人、邮件等）消费。发布失败只记录日志，不回滚已应用的订阅。
"""
from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from seapay.services.state_machine import ApplyResult

logger = logging.getLogger(__name__)

SUBSCRIPTION_ACTIVATED = "SubscriptionActivated"


class StreamWriter(Protocol):
    def xadd(self, stream_key: str, fields: dict[str, str], maxlen: int | None = None) -> str | None: ...


class SubscriptionNotifier:
    def __init__(self, redis_client: StreamWriter, stream: str, maxlen: int | None = 100_000) -> None:
        self.redis_client = redis_client
        self.stream = stream
        self.maxlen = maxlen

    def publish_activated(self, result: ApplyResult) -> str | None:
        fields = {
            "type": SUBSCRIPTION_ACTIVATED,
            "user_id": str(result.user_id),
            "payment_event_id": result.event_id,
            "tier": result.tier.value if result.tier else "",
            "period_end": result.period_end.isoformat() if result.period_end else "",
            "credits_remaining": json.dumps(result.credits_remaining),
        }
        try:
            message_id = self.redis_client.xadd(self.stream, fields, maxlen=self.maxlen)
        except Exception:
            logger.exception("Failed to publish %s for event %s", SUBSCRIPTION_ACTIVATED, result.event_id)
            return None
        if message_id is None:
            logger.warning("%s for event %s was not published", SUBSCRIPTION_ACTIVATED, result.event_id)
        return message_id
