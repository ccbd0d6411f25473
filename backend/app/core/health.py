"""
健康检查：数据库、Redis 连通性与支付网关配置
"""
import logging
from typing import Tuple

from sqlalchemy import text

from app.core.config import settings

logger = logging.getLogger(__name__)


async def check_db() -> Tuple[bool, str]:
    """检查数据库连通性"""
    try:
        from app.core.database import engine
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True, "ok"
    except Exception as e:
        logger.warning("健康检查 DB 失败: %s", e)
        return False, str(e)


def check_redis() -> Tuple[bool, str]:
    """检查 Redis 连通性（限流计数与 Celery 队列）"""
    if not settings.REDIS_URL.strip():
        return False, "REDIS_URL 未配置"
    try:
        from app.services.rate_limit_service import _get_redis
        r = _get_redis()
        if not r:
            return False, "Redis 客户端未初始化"
        r.ping()
        return True, "ok"
    except Exception as e:
        logger.warning("健康检查 Redis 失败: %s", e)
        return False, str(e)


def check_gateway() -> Tuple[bool, str]:
    """只检查凭据是否配置，不对网关发请求"""
    if not settings.gateway_configured:
        return False, "GATEWAY_KEY_ID / GATEWAY_KEY_SECRET 未配置"
    return True, "ok"
