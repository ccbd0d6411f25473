"""
商品模型（商品目录由后台维护，续费任务只读取当前价格）
"""
import uuid

from sqlalchemy import Column, String, Numeric, Boolean, DateTime, JSON
from sqlalchemy.sql import func
from app.core.database import Base


class Product(Base):
    """商品表"""
    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(200), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)  # 单位：元
    images = Column(JSON, nullable=True)  # ["https://...", ...]，第一张为主图
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
