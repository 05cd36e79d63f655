"""
基础模型模块

定义所有模型共用的时间工具函数。
"""
from datetime import datetime, timezone

from sqlmodel import SQLModel


def utc_now() -> datetime:
    """获取当前 UTC 时间"""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """
    统一为带时区的 UTC 时间

    SQLite 不保存时区信息，读出来的是 naive datetime；
    比较 period_end 之前必须先补上 UTC。
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


__all__ = ["SQLModel", "utc_now", "ensure_utc"]
