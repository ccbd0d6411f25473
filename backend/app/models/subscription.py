"""
订阅模型
"""
import enum
import uuid

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Date
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.core.database import Base


class SubscriptionStatus(str, enum.Enum):
    """订阅状态"""
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class PlanType(str, enum.Enum):
    """配送周期"""
    WEEKLY = "weekly"
    BI_WEEKLY = "bi-weekly"
    MONTHLY = "monthly"


# 周期对应天数
PLAN_INTERVAL_DAYS = {
    PlanType.WEEKLY.value: 7,
    PlanType.BI_WEEKLY.value: 14,
    PlanType.MONTHLY.value: 30,
}


def plan_interval_days(plan_type: str) -> int:
    """未知周期按月处理"""
    return PLAN_INTERVAL_DAYS.get(plan_type, 30)


class Subscription(Base):
    """订阅表"""
    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("products.id", ondelete="SET NULL"), nullable=True)  # 商品下架删除后置空
    quantity = Column(Integer, nullable=False, default=1)
    plan_type = Column(String(20), nullable=False, default=PlanType.MONTHLY.value)
    status = Column(String(20), nullable=False, default=SubscriptionStatus.ACTIVE.value)
    last_delivery_date = Column(Date, nullable=True)
    next_delivery_date = Column(Date, nullable=False, index=True)
    shipping_address_id = Column(String(36), ForeignKey("addresses.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # 关系
    user = relationship("User", back_populates="subscriptions")
