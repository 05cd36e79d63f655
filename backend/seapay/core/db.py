"""
数据库连接模块

管理数据库引擎和会话的创建。
生产环境使用 PostgreSQL（psycopg），测试环境使用内存 SQLite。

重要提示：
- 使用前确保所有模型都已导入（seapay.models），否则 metadata 中缺少表
"""
from sqlmodel import Session, SQLModel, create_engine

from seapay import models  # noqa: F401  注册所有表
from seapay.core.config import settings

engine = create_engine(str(settings.SQLALCHEMY_DATABASE_URI), pool_pre_ping=True)


def init_db(session: Session) -> None:
    """
    初始化数据库

    创建所有尚不存在的表。支付台账只追加，不在这里做任何清理。

    Args:
        session: 数据库会话
    """
    SQLModel.metadata.create_all(session.get_bind())
