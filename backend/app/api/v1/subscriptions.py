"""
订阅 API：用户管理自己的订阅；管理员手动触发续费
"""
import asyncio
import logging
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.api.deps import get_audit_logger, get_client_info, get_subscription_service
from app.api.v1.auth import get_current_active_user, require_admin
from app.core.database import get_session_factory
from app.schemas.auth import UserResponse
from app.schemas.subscription import (
    RenewalTaskResponse,
    SubscriptionActionRequest,
    SubscriptionActionResponse,
    SubscriptionResponse,
)
from app.services.audit_service import AuditLogger, ClientInfo
from app.services.subscription_service import SubscriptionRenewalService, SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter()

_ACTION_MESSAGES = {
    "pause": "订阅已暂停",
    "resume": "订阅已恢复",
    "cancel": "订阅已取消",
    "skip": "已跳过下一期配送",
    "change_plan": "配送周期已修改",
}


@router.get("", response_model=List[SubscriptionResponse])
async def list_subscriptions(
    current_user: UserResponse = Depends(get_current_active_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """当前用户的订阅列表"""
    subscriptions = await service.list_subscriptions(current_user.id)
    return [SubscriptionResponse.model_validate(s) for s in subscriptions]


@router.post("/renewals", response_model=RenewalTaskResponse)
async def trigger_renewals(
    current_user: UserResponse = Depends(require_admin),
    audit: AuditLogger = Depends(get_audit_logger),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """
    手动触发订阅续费（管理员）。
    提交到 Celery 后返回 task_id；Redis/Celery 不可用时改为同步执行并直接返回结果。
    """
    from app.tasks.subscription_tasks import process_subscription_renewals_task

    try:
        task = await asyncio.to_thread(process_subscription_renewals_task.delay)
        logger.info("续费任务已提交 task_id=%s operator=%s", task.id, current_user.id)
        return RenewalTaskResponse(task_id=task.id)
    except Exception as e:
        logger.warning("Celery 不可用，改为同步执行续费: %s", e)
    service = SubscriptionRenewalService(session_factory, audit)
    summary = await service.process_due()
    return RenewalTaskResponse(message="续费已同步执行完成", sync=True, result=summary)


@router.post("/{subscription_id}/actions", response_model=SubscriptionActionResponse)
async def apply_subscription_action(
    subscription_id: str,
    body: SubscriptionActionRequest,
    current_user: UserResponse = Depends(get_current_active_user),
    client: ClientInfo = Depends(get_client_info),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """暂停 / 恢复 / 取消 / 跳过一期 / 修改配送周期"""
    subscription = await service.apply_action(current_user.id, subscription_id, body, client)
    return SubscriptionActionResponse(
        message=_ACTION_MESSAGES[body.action],
        subscription=SubscriptionResponse.model_validate(subscription),
    )
