"""
操作审计日志：下单、支付校验成功/失败、货到付款下单等资金相关操作
"""
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, JSON, event
from sqlalchemy.sql import func
from app.core.database import Base


class AuditLog(Base):
    """审计日志表（只追加，不更新不删除）"""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)  # 系统任务触发时为空
    action = Column(String(64), nullable=False, index=True)  # ORDER_CREATED, PAYMENT_VERIFIED, PAYMENT_VERIFICATION_FAILED 等
    resource_type = Column(String(32), nullable=True, index=True)  # order, subscription
    resource_id = Column(String(64), nullable=True)
    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)
    detail = Column(Text, nullable=True)  # JSON 元数据
    ip = Column(String(64), nullable=True)
    user_agent = Column(String(255), nullable=True)
    request_id = Column(String(64), nullable=True, index=True)  # 链路追踪，与 X-Request-ID 一致
    created_at = Column(DateTime(timezone=True), server_default=func.now())


@event.listens_for(AuditLog, "before_update")
def _reject_update(mapper, connection, target):
    raise RuntimeError("审计日志不允许修改")


@event.listens_for(AuditLog, "before_delete")
def _reject_delete(mapper, connection, target):
    raise RuntimeError("审计日志不允许删除")
