from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from seapay.core.config import settings

ALGORITHM = "HS256"


def create_access_token(subject: str | Any, expires_delta: timedelta | None = None) -> str:
    """
    签发访问令牌（用户与运营人员共用，sub 为用户 ID）

    Args:
        subject: 用户 ID
        expires_delta: 有效期，默认 ACCESS_TOKEN_EXPIRE_DAYS 天
    """
    if expires_delta is None:
        expires_delta = timedelta(days=settings.ACCESS_TOKEN_EXPIRE_DAYS)
    expire = datetime.now(timezone.utc) + expires_delta
    to_encode = {"exp": expire, "sub": str(subject)}
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=ALGORITHM)
