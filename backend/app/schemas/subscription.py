"""
订阅相关Schema
"""
from pydantic import BaseModel
from datetime import date
from typing import Optional, List, Literal, Any


class SubscriptionActionRequest(BaseModel):
    """订阅操作：暂停 / 恢复 / 取消 / 跳过一期 / 修改周期"""
    action: Literal["pause", "resume", "cancel", "skip", "change_plan"]
    plan_type: Optional[Literal["weekly", "bi-weekly", "monthly"]] = None


class SubscriptionResponse(BaseModel):
    """订阅响应"""
    id: str
    product_id: Optional[str] = None
    quantity: int
    plan_type: str
    status: str
    last_delivery_date: Optional[date] = None
    next_delivery_date: date
    shipping_address_id: Optional[str] = None

    class Config:
        from_attributes = True


class SubscriptionActionResponse(BaseModel):
    success: bool = True
    message: str
    subscription: SubscriptionResponse


class RenewalDetail(BaseModel):
    """单个订阅的续费结果"""
    subscription_id: str
    success: bool
    order_number: Optional[str] = None
    error: Optional[str] = None


class RenewalSummary(BaseModel):
    """续费批处理汇总"""
    processed: int = 0
    failed: int = 0
    details: List[RenewalDetail] = []


class RenewalTaskResponse(BaseModel):
    """手动触发续费任务的响应"""
    task_id: Optional[str] = None  # 为空表示未提交到队列（已同步执行）
    message: str = "续费任务已提交，请轮询 GET /api/v1/tasks/{task_id} 查看结果"
    sync: bool = False  # True 表示因 Redis/Celery 不可用已改为同步执行
    result: Optional[RenewalSummary] = None


class TaskStatusResponse(BaseModel):
    """任务状态响应（轮询用）"""
    task_id: str
    status: str  # PENDING, STARTED, SUCCESS, FAILURE, RETRY
    result: Optional[Any] = None
    error: Optional[str] = None
