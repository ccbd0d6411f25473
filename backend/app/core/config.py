"""
应用配置：从环境变量读取配置
"""
from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    """应用配置类"""

    # 项目根目录
    PROJECT_ROOT: Path = Path(__file__).parent.parent.parent

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT.parent / ".env"),  # 从项目根目录读取 .env
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # API配置
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "订单创建与支付结算服务"
    CORS_ORIGINS: List[str] = ["*"]  # CORS允许的源

    # 数据库配置
    DATABASE_URL: str = ""
    DB_COMMAND_TIMEOUT: float = 10.0  # 单条 SQL 超时（秒），仅 asyncpg 生效
    DB_POOL_TIMEOUT: float = 10.0  # 从连接池取连接的超时（秒）

    # Redis配置（限流计数、Celery broker 共用）
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_SOCKET_TIMEOUT: float = 2.0

    # Celery配置（不填则与 REDIS_URL 一致，只维护一份 Redis 地址即可）
    CELERY_BROKER_URL: str = ""
    CELERY_RESULT_BACKEND: str = ""

    # 安全配置
    JWT_SECRET_KEY: str = "your-jwt-secret-key-change-in-production"
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 10080

    # 支付网关配置（Razorpay 兼容接口）
    GATEWAY_BASE_URL: str = "https://api.razorpay.com/v1"
    GATEWAY_KEY_ID: str = ""
    GATEWAY_KEY_SECRET: str = ""  # 同时作为回调签名的共享密钥
    GATEWAY_TIMEOUT_SECONDS: float = 10.0
    DEFAULT_CURRENCY: str = "INR"

    # 订单配置（金额单位：最小货币单位，即分/paise）
    ORDER_NUMBER_PREFIX: str = "NW"
    RENEWAL_ORDER_NUMBER_PREFIX: str = "SUB"
    ORDER_AMOUNT_MIN_MINOR: int = 100
    ORDER_AMOUNT_MAX_MINOR: int = 10000000

    # 订阅续费配置
    SUBSCRIPTION_DISCOUNT_RATE: float = 0.10  # 续费订单固定优惠 10%
    SUBSCRIPTION_RENEWAL_CRON_HOUR: int = 2  # 每日续费任务执行时刻（UTC）

    # 邮件配置（未配置 SMTP 时跳过发送）
    EMAIL_ENABLED: bool = True
    SMTP_HOST: str = ""
    SMTP_PORT: int = 587
    SMTP_USERNAME: str = ""
    SMTP_PASSWORD: str = ""
    SENDER_EMAIL: str = ""
    SMTP_TIMEOUT: float = 10.0

    # 操作审计：是否记录关键操作到 audit_logs 表
    AUDIT_LOG_ENABLED: bool = True

    # 日志配置
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Path = PROJECT_ROOT / "logs" / "app.log"

    # 限流（按用户 + 接口，失败时放行）
    RATE_LIMIT_ENABLED: bool = True  # 是否启用限流

    @property
    def gateway_configured(self) -> bool:
        """网关凭据是否已配置"""
        return bool(self.GATEWAY_KEY_ID.strip() and self.GATEWAY_KEY_SECRET.strip())

    @property
    def smtp_configured(self) -> bool:
        """SMTP 是否已配置"""
        return bool(self.SMTP_HOST.strip() and self.SMTP_USERNAME.strip() and self.SMTP_PASSWORD.strip())


# 创建全局配置实例
settings = Settings()
