"""
应用启动前脚本

1. 等待数据库就绪（Docker Compose 下数据库容器可能还在初始化）
2. 创建尚不存在的表

运行方式：
    python -m seapay.prestart
"""
import logging

from sqlalchemy import Engine
from sqlmodel import Session, select
from tenacity import after_log, before_log, retry, stop_after_attempt, wait_fixed

from seapay.core.db import engine, init_db

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

max_tries = 60 * 5  # 5 分钟，每秒一次
wait_seconds = 1


@retry(
    stop=stop_after_attempt(max_tries),
    wait=wait_fixed(wait_seconds),
    before=before_log(logger, logging.INFO),
    after=after_log(logger, logging.WARN),
)
def wait_for_db(db_engine: Engine) -> None:
    """执行 select(1)，失败时由 tenacity 重试"""
    try:
        with Session(db_engine) as session:
            session.exec(select(1))
    except Exception as e:
        logger.error(e)
        raise e


def main() -> None:
    logger.info("Waiting for database")
    wait_for_db(engine)
    with Session(engine) as session:
        init_db(session)
    logger.info("Database ready, tables created")


if __name__ == "__main__":  # pragma: no cover
    main()
