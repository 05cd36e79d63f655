"""
Snowflake ID 生成器

订阅记录、应用记录、用户等内部表的主键都使用 Snowflake ID。
支付事件例外：它直接以网关事件 ID 作为主键。

ID 结构（64 位）：
- 41 位：时间戳（毫秒，从 2024-01-01 起）
- 10 位：节点 ID（0-1023）
- 12 位：同一毫秒内的序列号
"""
from __future__ import annotations

import threading
import time

from seapay.core.config import settings

_EPOCH_MS = 1704067200000


class Snowflake:
    """线程安全的 64 位 ID 生成器"""

    def __init__(self, *, node_id: int) -> None:
        if not (0 <= node_id <= 1023):
            raise ValueError("SNOWFLAKE_NODE_ID must be in [0, 1023]")
        self._node_id = node_id
        self._lock = threading.Lock()
        self._last_ts = -1
        self._seq = 0

    @staticmethod
    def _now_ms() -> int:
        return int(time.time() * 1000)

    def next_id(self) -> int:
        """
        生成下一个 ID

        时钟回拨超过 5 秒直接报错；小幅回拨则等待时钟追上。

        Raises:
            RuntimeError: 时钟回拨超过 5 秒
        """
        with self._lock:
            ts = self._now_ms()
            if ts < self._last_ts:
                diff = self._last_ts - ts
                if diff > 5000:
                    raise RuntimeError(
                        f"Clock moved backwards by {diff}ms. "
                        "Refusing to generate IDs to prevent duplicates."
                    )
                ts = self._wait_until(self._last_ts)

            if ts == self._last_ts:
                self._seq = (self._seq + 1) & 0xFFF
                if self._seq == 0:
                    ts = self._wait_until(self._last_ts + 1)
            else:
                self._seq = 0

            self._last_ts = ts
            return ((ts - _EPOCH_MS) << 22) | (self._node_id << 12) | self._seq

    @classmethod
    def _wait_until(cls, target_ms: int) -> int:
        ts = cls._now_ms()
        while ts < target_ms:
            time.sleep(0.001)
            ts = cls._now_ms()
        return ts


_GENERATOR: Snowflake | None = None


def generate_id() -> int:
    """生成唯一 ID（进程内单例生成器）"""
    global _GENERATOR
    if _GENERATOR is None:
        _GENERATOR = Snowflake(node_id=settings.SNOWFLAKE_NODE_ID)
    return _GENERATOR.next_id()
