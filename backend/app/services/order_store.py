"""
订单存储：订单与明细的增删改查

每个写操作单独提交，供下单流程按步骤执行与补偿；写失败时回滚会话并抛出 PersistenceError。
面向用户的读取与更新都同时按 订单ID + 用户ID 过滤。
"""
import logging
import secrets
import string
import time
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel
from sqlalchemy import select, update, delete, exists, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import PersistenceError
from app.models.order import Order, OrderItem, OrderStatus, PaymentStatus

logger = logging.getLogger(__name__)

_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


def to_money(value: Any) -> Decimal:
    """金额统一保留两位小数"""
    return Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def generate_order_number(prefix: str = "NW") -> str:
    """订单号：前缀 + 时间戳 + 6 位随机后缀；数据库唯一约束兜底"""
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(6))
    return f"{prefix}{datetime.now().strftime('%Y%m%d%H%M%S')}{suffix}"


def generate_renewal_order_number(prefix: str = "SUB") -> str:
    """续费订单号：前缀-毫秒时间戳-5 位随机后缀"""
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(5))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


class OrderDraft(BaseModel):
    """待写入的订单"""
    user_id: int
    order_number: str
    status: str = OrderStatus.PENDING.value
    payment_status: str = PaymentStatus.PENDING.value
    payment_method: str
    currency: str = "INR"
    subtotal: Decimal
    discount_amount: Decimal = Decimal("0")
    shipping_amount: Decimal = Decimal("0")
    coupon_code: Optional[str] = None
    shipping_address: Dict[str, Any]
    notes: Optional[str] = None

    @property
    def total(self) -> Decimal:
        return to_money(self.subtotal - self.discount_amount + self.shipping_amount)


class OrderItemDraft(BaseModel):
    """待写入的订单明细（值快照）"""
    product_id: str
    product_name: str
    product_image: Optional[str] = None
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    is_subscription: bool = False


class OrderStore:
    """订单存储"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _commit(self, action: str) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("订单存储写入失败 action=%s: %s", action, e)
            raise PersistenceError(f"订单存储写入失败：{action}") from e

    async def create_order(self, draft: OrderDraft) -> Order:
        """写入订单"""
        order = Order(
            user_id=draft.user_id,
            order_number=draft.order_number,
            status=draft.status,
            payment_status=draft.payment_status,
            payment_method=draft.payment_method,
            currency=draft.currency,
            subtotal=to_money(draft.subtotal),
            discount_amount=to_money(draft.discount_amount),
            shipping_amount=to_money(draft.shipping_amount),
            total=draft.total,
            coupon_code=draft.coupon_code or None,
            shipping_address=draft.shipping_address,
            notes=draft.notes,
        )
        self.db.add(order)
        await self._commit("create_order")
        return order

    async def create_order_items(self, order_id: str, items: Iterable[OrderItemDraft]) -> List[OrderItem]:
        """写入订单明细"""
        rows = [
            OrderItem(
                order_id=order_id,
                product_id=item.product_id,
                product_name=item.product_name,
                product_image=item.product_image,
                quantity=item.quantity,
                unit_price=to_money(item.unit_price),
                total_price=to_money(item.total_price),
                is_subscription=item.is_subscription,
            )
            for item in items
        ]
        if not rows:
            raise PersistenceError("订单明细不能为空")
        self.db.add_all(rows)
        await self._commit("create_order_items")
        return rows

    async def update_order(
        self,
        order_id: str,
        user_id: int,
        values: Dict[str, Any],
        exclude_payment_status: Optional[str] = None,
        gateway_order_reference: Optional[str] = None,
    ) -> Optional[Order]:
        """
        条件更新订单，过滤条件为 订单ID + 用户ID（以及可选的附加条件）。
        无匹配行时返回 None。单条 UPDATE 语句保证并发下只有一个调用方生效。
        """
        stmt = update(Order).where(Order.id == order_id, Order.user_id == user_id)
        if exclude_payment_status is not None:
            stmt = stmt.where(Order.payment_status != exclude_payment_status)
        if gateway_order_reference is not None:
            stmt = stmt.where(Order.gateway_order_reference == gateway_order_reference)
        stmt = stmt.values(**values).execution_options(synchronize_session=False)
        try:
            result = await self.db.execute(stmt)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("订单更新失败 order_id=%s: %s", order_id, e)
            raise PersistenceError("订单更新失败") from e
        await self._commit("update_order")
        if result.rowcount == 0:
            return None
        return await self.get_order(order_id, user_id)

    async def set_gateway_reference(self, order_id: str, reference: str) -> bool:
        """关联网关订单号，仅在尚未关联时写入（只写一次）"""
        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.gateway_order_reference.is_(None))
            .values(gateway_order_reference=reference)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.db.execute(stmt)
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError("关联网关订单号失败") from e
        await self._commit("set_gateway_reference")
        return result.rowcount == 1

    async def delete_order(self, order_id: str) -> None:
        """删除订单及其明细（仅用于下单失败时的回滚）"""
        try:
            await self.db.execute(delete(OrderItem).where(OrderItem.order_id == order_id))
            await self.db.execute(delete(Order).where(Order.id == order_id))
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError("删除订单失败") from e
        await self._commit("delete_order")

    async def get_order(self, order_id: str, user_id: Optional[int] = None) -> Optional[Order]:
        stmt = select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        if user_id is not None:
            stmt = stmt.where(Order.user_id == user_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_order_by_number(self, order_number: str, user_id: Optional[int] = None) -> Optional[Order]:
        """按订单号读取；指定 user_id 时只返回该用户且含明细的订单"""
        stmt = select(Order).where(Order.order_number == order_number).execution_options(populate_existing=True)
        if user_id is not None:
            stmt = stmt.where(Order.user_id == user_id, self._has_items())
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_order_items(self, order_id: str) -> List[OrderItem]:
        result = await self.db.execute(
            select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id)
        )
        return list(result.scalars().all())

    async def list_user_orders(self, user_id: int, limit: int = 50, offset: int = 0) -> List[Order]:
        """用户订单列表（最新在前），不含没有明细的订单"""
        result = await self.db.execute(
            select(Order)
            .where(Order.user_id == user_id, self._has_items())
            .order_by(Order.created_at.desc(), Order.order_number.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    def _has_items():
        return exists().where(OrderItem.order_id == Order.id)

    async def count_user_orders(self, user_id: int) -> int:
        result = await self.db.execute(
            select(func.count()).select_from(Order).where(Order.user_id == user_id, self._has_items())
        )
        return result.scalar() or 0
