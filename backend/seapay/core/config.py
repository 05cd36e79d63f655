"""
应用配置模块

使用 Pydantic Settings 管理所有环境变量和配置。
配置从 .env 文件和环境变量读取，支持类型验证和默认值。

关键概念：
- BaseSettings: Pydantic 的配置基类，自动从环境变量读取
- computed_field: 计算字段，根据其他字段动态生成
- model_validator: 模型验证器，用于自定义验证逻辑
"""
import secrets
import warnings
from typing import Annotated, Any, Literal

from pydantic import (
    AnyUrl,
    BeforeValidator,
    HttpUrl,
    PostgresDsn,
    computed_field,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing_extensions import Self


def parse_cors(v: Any) -> list[str] | str:
    """
    解析 CORS 配置值

    支持逗号分隔的字符串或列表两种格式。

    Raises:
        ValueError: 当输入格式不正确时
    """
    if isinstance(v, str) and not v.startswith("["):
        return [i.strip() for i in v.split(",") if i.strip()]
    elif isinstance(v, list | str):
        return v
    raise ValueError(v)


class Settings(BaseSettings):
    """
    应用配置类

    配置来源优先级：
    1. 环境变量（最高优先级）
    2. .env 文件
    3. 代码中的默认值（最低优先级）
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )
    API_V1_STR: str = "/api/v1"
    SECRET_KEY: str = secrets.token_urlsafe(32)  # JWT 签名密钥
    ACCESS_TOKEN_EXPIRE_DAYS: int = 7
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"

    BACKEND_CORS_ORIGINS: Annotated[
        list[AnyUrl] | str, BeforeValidator(parse_cors)
    ] = []

    @computed_field  # type: ignore[prop-decorator]
    @property
    def all_cors_origins(self) -> list[str]:
        return [str(origin).rstrip("/") for origin in self.BACKEND_CORS_ORIGINS]

    PROJECT_NAME: str = "seapay"
    SENTRY_DSN: HttpUrl | None = None

    # Snowflake
    SNOWFLAKE_NODE_ID: int = 0

    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = ""
    # 显式数据库连接串（测试/本地 SQLite 使用），优先于 POSTGRES_*
    DATABASE_URL: str | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def SQLALCHEMY_DATABASE_URI(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return str(
            PostgresDsn.build(
                scheme="postgresql+psycopg",
                username=self.POSTGRES_USER,
                password=self.POSTGRES_PASSWORD,
                host=self.POSTGRES_SERVER,
                port=self.POSTGRES_PORT,
                path=self.POSTGRES_DB,
            )
        )

    # Redis（分布式锁、通知消息流）
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str | None = None

    # Razorpay 支付网关
    RAZORPAY_BASE_URL: str = "https://api.razorpay.com/v1"
    RAZORPAY_KEY_ID: str | None = None
    RAZORPAY_KEY_SECRET: str | None = None
    RAZORPAY_WEBHOOK_SECRET: str = "changethis"  # Webhook HMAC 共享密钥
    WEBHOOK_SIGNATURE_HEADER: str = "X-Razorpay-Signature"
    WEBHOOK_EVENT_ID_HEADER: str = "X-Razorpay-Event-Id"

    # Webhook 处理
    WEBHOOK_INLINE_APPLY: bool = True  # 收到后立即尝试应用（失败由后台扫描补偿）
    APPLY_MAX_ATTEMPTS: int = 5  # 并发冲突最大重试次数，超过进入死信
    REFUND_GRACE_DAYS: int = 3  # 退款后的宽限期（天）
    DEFAULT_PHONE_COUNTRY_CODE: str = "91"  # 10 位本地号码默认国家码

    # 后台任务
    SWEEP_MIN_AGE_SECONDS: int = 60  # 只扫描收到超过该时间的未应用事件
    SWEEP_BATCH_SIZE: int = 200
    SWEEP_MAX_ATTEMPTS: int = 5  # 分派连续异常达到该次数后转入死信，等待人工处理
    SWEEP_INTERVAL_SECONDS: int = 120
    ORPHAN_RESCAN_INTERVAL_SECONDS: int = 60 * 30
    NOTIFY_STREAM: str = "subscription_events"

    def _check_default_secret(self, var_name: str, value: str | None) -> None:
        """
        检查敏感配置是否使用了默认值 "changethis"

        本地环境只警告，其他环境直接报错。

        Raises:
            ValueError: 在非本地环境使用默认值时
        """
        if value == "changethis":
            message = (
                f'The value of {var_name} is "changethis", '
                "for security, please change it, at least for deployments."
            )
            if self.ENVIRONMENT == "local":
                warnings.warn(message, stacklevel=1)
            else:
                raise ValueError(message)

    @model_validator(mode="after")
    def _enforce_non_default_secrets(self) -> Self:
        self._check_default_secret("SECRET_KEY", self.SECRET_KEY)
        self._check_default_secret("POSTGRES_PASSWORD", self.POSTGRES_PASSWORD)
        self._check_default_secret("RAZORPAY_WEBHOOK_SECRET", self.RAZORPAY_WEBHOOK_SECRET)

        return self


settings = Settings()  # type: ignore
