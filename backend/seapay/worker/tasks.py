"""
定时任务逻辑

- sweep_unapplied_events: 补偿入口处理中途失败、仍停留在 received 的事件
- rescan_orphaned_events_job: 用户补充了联系方式后，孤儿事件可能可以自动匹配
- expire_subscriptions: 把过期/宽限期结束的高级会员标记为 expired

每个任务都用 Redis 分布式锁保证多实例下只有一个在跑。
"""

import logging
from collections.abc import Callable
from typing import TypeVar
from uuid import uuid4

from sqlmodel import Session

from seapay import crud
from seapay.core.config import settings
from seapay.core.db import engine
from seapay.core.redis_client import get_redis_client
from seapay.services.dispatcher import EventDispatcher
from seapay.services.notifier import SubscriptionNotifier
from seapay.services.reconciliation import RescanSummary, rescan_orphaned_events

logger = logging.getLogger(__name__)

SWEEP_LOCK_KEY = "payments:sweep:lock"
RESCAN_LOCK_KEY = "payments:orphan_rescan:lock"
EXPIRE_LOCK_KEY = "subscriptions:expire:lock"
LOCK_TTL_SECONDS = 60 * 10

T = TypeVar("T")


def _with_lock(lock_key: str, job: Callable[[], T]) -> T | None:
    redis_client = get_redis_client()
    lock_value = str(uuid4())
    acquired = redis_client.acquire_lock(lock_key, lock_value, expire_seconds=LOCK_TTL_SECONDS)
    if not acquired:
        logger.info("%s is held by another worker, skip this run.", lock_key)
        return None
    try:
        return job()
    finally:
        redis_client.release_lock(lock_key, lock_value)


def _notifier() -> SubscriptionNotifier:
    return SubscriptionNotifier(get_redis_client(), settings.NOTIFY_STREAM)


def sweep_unapplied_events() -> dict[str, int] | None:
    """
    重新分派收到超过 SWEEP_MIN_AGE_SECONDS 仍未处理的事件

    单个事件失败只记录尝试次数，不影响同批次其他事件；
    连续失败 SWEEP_MAX_ATTEMPTS 次的事件转入死信。

    Returns:
        各分派结果的计数；未拿到锁时返回 None
    """

    def _run() -> dict[str, int]:
        counts: dict[str, int] = {}
        with Session(engine) as session:
            events = crud.list_unapplied_events(
                session=session,
                min_age_seconds=settings.SWEEP_MIN_AGE_SECONDS,
                limit=settings.SWEEP_BATCH_SIZE,
            )
            if not events:
                return counts

            dispatcher = EventDispatcher(session, notifier=_notifier())
            for event in events:
                try:
                    outcome = dispatcher.dispatch(event)
                except Exception as exc:
                    logger.exception("Sweep failed for payment event %s", event.id)
                    outcome = dispatcher.record_failure(event, exc)
                counts[outcome.value] = counts.get(outcome.value, 0) + 1

        logger.info("Sweep finished: %s", counts)
        return counts

    return _with_lock(SWEEP_LOCK_KEY, _run)


def rescan_orphaned_events_job() -> RescanSummary | None:
    def _run() -> RescanSummary:
        with Session(engine) as session:
            return rescan_orphaned_events(session, notifier=_notifier())

    return _with_lock(RESCAN_LOCK_KEY, _run)


def expire_subscriptions() -> int | None:
    def _run() -> int:
        with Session(engine) as session:
            expired = crud.expire_lapsed(session=session)
        if expired:
            logger.info("Expired %d premium subscriptions", expired)
        return expired

    return _with_lock(EXPIRE_LOCK_KEY, _run)
