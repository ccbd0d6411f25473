"""审计日志查询 API（当前用户自己的下单、支付、订阅记录）"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.models.audit_log import AuditLog
from app.schemas.audit import AuditLogItem, AuditLogListResponse
from app.api.v1.auth import get_current_active_user
from app.schemas.auth import UserResponse

router = APIRouter()


@router.get("", response_model=AuditLogListResponse)
async def list_audit_logs(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    action: Optional[str] = Query(None, description="按动作筛选，如 PAYMENT_VERIFIED"),
    resource_type: Optional[str] = Query(None, description="按实体类型筛选：order / subscription"),
    resource_id: Optional[str] = Query(None, description="按实体 ID 筛选"),
    current_user: UserResponse = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
):
    """查询当前用户的审计日志（最新在前）"""
    filters = [AuditLog.user_id == current_user.id]
    if action:
        filters.append(AuditLog.action == action)
    if resource_type:
        filters.append(AuditLog.resource_type == resource_type)
    if resource_id:
        filters.append(AuditLog.resource_id == resource_id)

    total = (await db.execute(select(func.count()).select_from(AuditLog).where(*filters))).scalar() or 0
    result = await db.execute(
        select(AuditLog)
        .where(*filters)
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return AuditLogListResponse(
        items=[AuditLogItem.model_validate(x) for x in result.scalars().all()],
        total=total,
        page=page,
        page_size=page_size,
    )
