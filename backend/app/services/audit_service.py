"""
操作审计服务：记录资金相关操作到 audit_logs 表

写入使用独立会话，与业务会话的提交/回滚互不影响；写入失败只记录日志，不向调用方抛出。
"""
import json
import logging
from typing import Any, NamedTuple, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core.config import settings
from app.models.audit_log import AuditLog

logger = logging.getLogger(__name__)

# 审计动作
ORDER_CREATED = "ORDER_CREATED"
COD_ORDER_CREATED = "COD_ORDER_CREATED"
PAYMENT_VERIFIED = "PAYMENT_VERIFIED"
PAYMENT_VERIFICATION_FAILED = "PAYMENT_VERIFICATION_FAILED"
PAYMENT_VERIFICATION_REPLAYED = "PAYMENT_VERIFICATION_REPLAYED"
ORDER_LINK_FAILED = "ORDER_LINK_FAILED"
ORDER_ROLLBACK_FAILED = "ORDER_ROLLBACK_FAILED"
SUBSCRIPTION_RENEWED = "SUBSCRIPTION_RENEWED"
SUBSCRIPTION_UPDATED = "SUBSCRIPTION_UPDATED"


class ClientInfo(NamedTuple):
    """请求来源：IP、User-Agent、X-Request-ID"""
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    request_id: Optional[str] = None


SYSTEM_CLIENT = ClientInfo(ip=None, user_agent="system", request_id=None)


class AuditLogger:
    """审计日志记录器"""

    def __init__(self, session_factory: async_sessionmaker, enabled: Optional[bool] = None):
        self.session_factory = session_factory
        self.enabled = settings.AUDIT_LOG_ENABLED if enabled is None else enabled

    async def record(
        self,
        action: str,
        user_id: Optional[int] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        old_values: Optional[dict[str, Any]] = None,
        new_values: Optional[dict[str, Any]] = None,
        detail: Optional[dict[str, Any]] = None,
        client: Optional[ClientInfo] = None,
    ) -> None:
        """写入一条审计日志。若未启用 AUDIT_LOG_ENABLED 则跳过。"""
        if not self.enabled:
            return
        client = client or ClientInfo()
        try:
            detail_str = json.dumps(detail, ensure_ascii=False, default=str) if detail else None
            entry = AuditLog(
                user_id=user_id,
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
                old_values=_jsonable(old_values),
                new_values=_jsonable(new_values),
                detail=detail_str,
                ip=_clip(client.ip, 64),
                user_agent=_clip(client.user_agent, 255),
                request_id=_clip(client.request_id, 64),
            )
            async with self.session_factory() as db:
                db.add(entry)
                await db.commit()
        except Exception as e:
            logger.warning("审计日志写入失败 action=%s resource=%s: %s", action, resource_id, e)


def _clip(value: Optional[str], limit: int) -> Optional[str]:
    # 请求头内容不可信，按列宽截断
    return value[:limit] if value else None


def _jsonable(values: Optional[dict]) -> Optional[dict]:
    # Decimal / date 等转成字符串，保证 JSON 列可写
    if values is None:
        return None
    return json.loads(json.dumps(values, ensure_ascii=False, default=str))
