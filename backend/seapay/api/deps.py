"""
FastAPI 依赖注入模块

提供可复用的依赖项：数据库会话、当前用户/运营人员、
网关客户端、计划目录和订阅通知器。
网关客户端由这里显式构造，测试中通过 app.dependency_overrides 替换。
"""
from collections.abc import Generator
from typing import Annotated

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt.exceptions import InvalidTokenError
from pydantic import ValidationError
from sqlmodel import Session

from seapay.api.schemas import TokenPayload
from seapay.core import security
from seapay.core.config import settings
from seapay.core.db import engine
from seapay.core.redis_client import get_redis_client
from seapay.models import User
from seapay.services.gateway import RazorpayClient
from seapay.services.notifier import SubscriptionNotifier
from seapay.services.plan_catalog import PlanCatalog, get_catalog

# 从 Authorization: Bearer <token> 中提取 token
reusable_oauth2 = HTTPBearer()


def get_db() -> Generator[Session, None, None]:
    """
    获取数据库会话（依赖注入）

    Yields:
        Session: 请求结束后自动关闭
    """
    with Session(engine) as session:
        yield session


def get_gateway_client() -> RazorpayClient:
    """按当前配置构造网关客户端"""
    return RazorpayClient(
        webhook_secret=settings.RAZORPAY_WEBHOOK_SECRET,
        key_id=settings.RAZORPAY_KEY_ID,
        key_secret=settings.RAZORPAY_KEY_SECRET,
        base_url=settings.RAZORPAY_BASE_URL,
    )


def get_plan_catalog() -> PlanCatalog:
    return get_catalog()


def get_notifier() -> SubscriptionNotifier:
    return SubscriptionNotifier(get_redis_client(), settings.NOTIFY_STREAM)


SessionDep = Annotated[Session, Depends(get_db)]
TokenDep = Annotated[HTTPAuthorizationCredentials, Depends(reusable_oauth2)]
GatewayDep = Annotated[RazorpayClient, Depends(get_gateway_client)]
CatalogDep = Annotated[PlanCatalog, Depends(get_plan_catalog)]
NotifierDep = Annotated[SubscriptionNotifier, Depends(get_notifier)]


def get_current_user(session: SessionDep, token: TokenDep) -> User:
    """
    获取当前登录用户

    Raises:
        HTTPException: token 无效或用户不存在时返回 401
    """
    try:
        payload = jwt.decode(
            token.credentials, settings.SECRET_KEY, algorithms=[security.ALGORITHM]
        )
        token_data = TokenPayload(**payload)
    except (InvalidTokenError, ValidationError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )
    if not token_data.sub:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )
    try:
        user_id = int(token_data.sub)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )
    user = session.get(User, user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


CurrentUser = Annotated[User, Depends(get_current_user)]


def get_current_operator(current_user: CurrentUser) -> User:
    """对账接口只对运营人员开放"""
    if not current_user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Operator access required")
    return current_user


OperatorUser = Annotated[User, Depends(get_current_operator)]
