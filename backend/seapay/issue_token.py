"""
签发访问令牌脚本

用户登录由社区主站负责，本服务只校验 JWT。运营人员调用对账接口前，
用这个脚本为 is_admin 用户签发令牌（同一个 SECRET_KEY）。

运行方式：
    python -m seapay.issue_token <user_id> [--days 1]
"""
import argparse
import logging
from datetime import timedelta

from sqlalchemy import Engine
from sqlmodel import Session

from seapay.core.db import engine
from seapay.core.security import create_access_token
from seapay.models import User

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def issue_operator_token(db_engine: Engine, user_id: int, days: int = 1) -> str:
    """
    为运营人员签发令牌

    Raises:
        ValueError: 用户不存在或不是运营人员
    """
    with Session(db_engine) as session:
        user = session.get(User, user_id)
        if user is None:
            raise ValueError(f"user {user_id} not found")
        if not user.is_admin:
            raise ValueError(f"user {user_id} is not an operator")
    return create_access_token(user_id, expires_delta=timedelta(days=days))


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Issue an operator access token")
    parser.add_argument("user_id", type=int)
    parser.add_argument("--days", type=int, default=1)
    args = parser.parse_args(argv)

    token = issue_operator_token(engine, args.user_id, args.days)
    logger.info("Issued operator token for user %s, valid %d day(s)", args.user_id, args.days)
    print(token)


if __name__ == "__main__":  # pragma: no cover
    main()
