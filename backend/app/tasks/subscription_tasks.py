"""
订阅续费任务：由 Celery beat 每日触发，或管理员手动提交
注意：必须使用任务内创建的 engine/session（create_async_engine_and_session_for_celery），
不能使用全局 AsyncSessionLocal，否则会报 "Future attached to a different loop"。
"""
import asyncio
import logging
from datetime import date
from typing import Any, Dict, Optional

from app.celery_app import celery_app
from app.core.database import create_async_engine_and_session_for_celery
from app.services.audit_service import AuditLogger
from app.services.subscription_service import SubscriptionRenewalService

logger = logging.getLogger(__name__)


def _run_async(coro):
    """在同步上下文中运行异步协程（Celery 任务内使用）"""
    loop = asyncio.new_event_loop()
    try:
        asyncio.set_event_loop(loop)
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def run_renewals(today: Optional[date] = None) -> Dict[str, Any]:
    """在当前 loop 内新建 engine，处理到期订阅，用完后 dispose engine"""
    engine, session_factory = create_async_engine_and_session_for_celery()
    try:
        service = SubscriptionRenewalService(session_factory, AuditLogger(session_factory))
        summary = await service.process_due(today)
        return summary.model_dump()
    finally:
        await engine.dispose()


@celery_app.task(bind=True, name="subscriptions.process_renewals")
def process_subscription_renewals_task(self, today: Optional[str] = None) -> Dict[str, Any]:
    """处理所有到期订阅；today 为 ISO 日期，缺省为当天"""
    run_date = date.fromisoformat(today) if today else None
    logger.info("续费任务开始 task_id=%s date=%s", self.request.id, run_date or date.today())
    try:
        return _run_async(run_renewals(run_date))
    except Exception as e:
        logger.exception("process_subscription_renewals_task failed: %s", e)
        raise
