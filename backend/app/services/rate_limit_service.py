"""
限流：按 (用户, 接口, 时间窗口) 在 Redis 中计数

采用固定窗口：窗口边界按 时间戳 // 窗口秒数 对齐，跨窗口后计数重新开始，
边界两侧短时间内最多可放行 2 倍上限。

计数采用 MULTI/EXEC 事务内 INCR + EXPIRE，递增与比较基于 INCR 的返回值，
并发请求不会同时越过上限。Redis 不可用时放行（结账可用性优先于严格限流）。
"""
import time
import logging
from typing import Dict, NamedTuple, Optional

from app.core.config import settings

logger = logging.getLogger(__name__)

_redis_client = None


class RateLimitRule(NamedTuple):
    max_requests: int
    window_seconds: int


# 各接口的请求上限
RATE_LIMITS: Dict[str, RateLimitRule] = {
    "create-order": RateLimitRule(10, 60),
    "verify-payment": RateLimitRule(20, 60),
    "cod-order": RateLimitRule(10, 60),
    "manage-subscription": RateLimitRule(30, 60),
    "default": RateLimitRule(100, 3600),
}


def _get_redis():
    """获取 Redis 客户端（懒加载）"""
    global _redis_client
    if _redis_client is None:
        try:
            import redis
            _redis_client = redis.Redis.from_url(
                settings.REDIS_URL,
                decode_responses=True,
                socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
                socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT,
            )
        except Exception as e:
            logger.warning("Redis 连接失败，限流将不生效: %s", e)
    return _redis_client


class RateLimiter:
    """按接口配置的固定窗口限流器"""

    def __init__(self, client=None, rules: Optional[Dict[str, RateLimitRule]] = None, enabled: Optional[bool] = None):
        self._client = client
        self.rules = rules or RATE_LIMITS
        self.enabled = settings.RATE_LIMIT_ENABLED if enabled is None else enabled

    @property
    def client(self):
        return self._client if self._client is not None else _get_redis()

    def rule_for(self, endpoint: str) -> RateLimitRule:
        return self.rules.get(endpoint) or self.rules["default"]

    @staticmethod
    def window_key(identity: str, endpoint: str, window_seconds: int, now: Optional[float] = None) -> str:
        window = int(now if now is not None else time.time()) // window_seconds
        return f"rate:{endpoint}:user:{identity}:win:{window_seconds}:{window}"

    def allow(self, identity: str, endpoint: str) -> bool:
        """计数 +1 并判断是否超限；计数存储异常时放行"""
        if not self.enabled:
            return True
        rule = self.rule_for(endpoint)
        r = self.client
        if not r:
            return True
        key = self.window_key(identity, endpoint, rule.window_seconds)
        try:
            pipe = r.pipeline(transaction=True)
            pipe.incr(key)
            pipe.expire(key, rule.window_seconds * 2)
            n, _ = pipe.execute()
        except Exception as e:
            logger.warning("限流 Redis 操作失败，放行请求 endpoint=%s user=%s: %s", endpoint, identity, e)
            return True
        allowed = int(n) <= rule.max_requests
        if not allowed:
            logger.info("触发限流 endpoint=%s user=%s count=%s limit=%s", endpoint, identity, n, rule.max_requests)
        return allowed


_default_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """FastAPI 依赖：进程内共享的限流器"""
    global _default_limiter
    if _default_limiter is None:
        _default_limiter = RateLimiter()
    return _default_limiter
