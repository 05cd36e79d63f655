"""
工具路由模块

健康检查：数据库可用即视为服务正常（Redis 只影响通知和后台任务）。
"""
from fastapi import APIRouter
from sqlmodel import select

from seapay.api.deps import SessionDep

router = APIRouter(prefix="/utils", tags=["utils"])


@router.get("/health-check/")
def health_check(session: SessionDep) -> bool:
    """
    请求路径: GET /api/v1/utils/health-check/

    Returns:
        bool: 数据库可访问时返回 True
    """
    session.exec(select(1))
    return True
