"""
Redis 访问层

两个用途：
1. 后台任务的分布式锁（同一时刻只有一个 worker 执行 sweep/rescan/expire）
2. 订阅激活通知的 Redis Stream（由下游消费）
"""

import logging

import redis

from seapay.core.config import settings

logger = logging.getLogger(__name__)

# 只有锁的持有者才能删除锁
_COMPARE_AND_DELETE = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class RedisClient:
    """
    对 redis.Redis 的薄封装

    锁操作失败（连接异常等）视为未获得锁，任务本轮跳过；
    Stream 写入失败直接抛出，由 SubscriptionNotifier 记录日志。
    """

    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_settings(cls) -> "RedisClient":
        client = redis.Redis(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            db=settings.REDIS_DB,
            password=settings.REDIS_PASSWORD,
            decode_responses=True,
        )
        logger.info(f"Redis client created: {settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}")
        return cls(client)

    def acquire_lock(self, lock_key: str, lock_value: str, expire_seconds: int = 60) -> bool:
        """
        SET NX EX 抢锁

        Args:
            lock_key: 锁键，如 payments:sweep:lock
            lock_value: 持有者标识，释放时校验
            expire_seconds: 锁自动过期时间，防止 worker 崩溃后死锁
        """
        try:
            return bool(self.client.set(lock_key, lock_value, nx=True, ex=expire_seconds))
        except redis.RedisError as e:
            logger.error(f"Lock {lock_key} not acquired, redis error: {e}")
            return False

    def release_lock(self, lock_key: str, lock_value: str) -> bool:
        try:
            return self.client.eval(_COMPARE_AND_DELETE, 1, lock_key, lock_value) == 1
        except redis.RedisError as e:
            # 锁会在 TTL 到期后自动释放
            logger.error(f"Lock {lock_key} not released, redis error: {e}")
            return False

    def xadd(self, stream_key: str, fields: dict[str, str], maxlen: int | None = None) -> str | None:
        """追加一条 Stream 消息，maxlen 为近似裁剪长度"""
        return self.client.xadd(stream_key, fields, maxlen=maxlen, approximate=True)


_redis_client: RedisClient | None = None


def get_redis_client() -> RedisClient:
    """进程内共享的 RedisClient，首次调用时按配置创建"""
    global _redis_client
    if _redis_client is None:
        _redis_client = RedisClient.from_settings()
    return _redis_client
