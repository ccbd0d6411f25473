"""
订阅服务：续费批处理与用户侧订阅管理
"""
import asyncio
import logging
from datetime import date, timedelta
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.exceptions import (
    InvalidSubscriptionActionError,
    ProductUnavailableError,
    RateLimitExceededError,
    SubscriptionNotFoundError,
)
from app.models.address import Address
from app.models.order import OrderStatus, PaymentMethod, PaymentStatus
from app.models.product import Product
from app.models.subscription import Subscription, SubscriptionStatus, plan_interval_days
from app.models.user import User
from app.schemas.subscription import RenewalDetail, RenewalSummary, SubscriptionActionRequest
from app.services import audit_service
from app.services.audit_service import AuditLogger, ClientInfo, SYSTEM_CLIENT
from app.services.order_store import (
    OrderDraft,
    OrderItemDraft,
    OrderStore,
    generate_renewal_order_number,
    to_money,
)

logger = logging.getLogger(__name__)

# 找不到任何地址时使用的占位地址，不因缺地址放弃续费
PLACEHOLDER_ADDRESS = {
    "full_name": "订阅用户",
    "address_line1": "账户预留地址",
    "city": "",
    "state": "",
    "postal_code": "",
    "phone": "",
}


class SubscriptionRenewalService:
    """
    订阅续费批处理

    每个到期订阅使用独立会话处理，单个订阅失败只记入结果列表，不影响其余订阅。
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        audit: AuditLogger,
        discount_rate: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.audit = audit
        rate = settings.SUBSCRIPTION_DISCOUNT_RATE if discount_rate is None else discount_rate
        self.discount_rate = Decimal(str(rate))

    async def _due_subscription_ids(self, today: date) -> List[str]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Subscription.id)
                .where(
                    Subscription.status == SubscriptionStatus.ACTIVE.value,
                    Subscription.next_delivery_date <= today,
                )
                .order_by(Subscription.next_delivery_date, Subscription.id)
            )
            return list(result.scalars().all())

    async def process_due(self, today: Optional[date] = None) -> RenewalSummary:
        """处理所有 next_delivery_date <= today 的进行中订阅"""
        today = today or date.today()
        ids = await self._due_subscription_ids(today)
        logger.info("开始处理订阅续费 date=%s due=%s", today, len(ids))

        summary = RenewalSummary()
        for subscription_id in ids:
            try:
                order_number = await self.renew(subscription_id, today)
            except Exception as e:
                logger.error("订阅续费失败 subscription=%s: %s", subscription_id, e)
                summary.failed += 1
                summary.details.append(
                    RenewalDetail(subscription_id=subscription_id, success=False, error=str(e))
                )
                continue
            summary.processed += 1
            summary.details.append(
                RenewalDetail(subscription_id=subscription_id, success=True, order_number=order_number)
            )

        logger.info("订阅续费完成 processed=%s failed=%s", summary.processed, summary.failed)
        return summary

    async def renew(self, subscription_id: str, today: date) -> str:
        """为单个订阅生成续费订单并推进配送日期，返回订单号"""
        async with self.session_factory() as db:
            subscription = await db.get(Subscription, subscription_id)
            if subscription is None:
                raise SubscriptionNotFoundError()
            user_id = subscription.user_id
            quantity = subscription.quantity
            interval = plan_interval_days(subscription.plan_type)

            # 续费按当前目录价格计价
            product = await db.get(Product, subscription.product_id) if subscription.product_id else None
            if product is None or not product.is_active:
                raise ProductUnavailableError(f"订阅商品不存在或已下架: {subscription.product_id}")

            address = await self._resolve_address(db, subscription)
            price = to_money(product.price)
            subtotal = to_money(price * quantity)
            discount = to_money(price * quantity * self.discount_rate)
            unit_price = to_money(price * (1 - self.discount_rate))
            images = product.images or []

            store = OrderStore(db)
            draft = OrderDraft(
                user_id=user_id,
                order_number=generate_renewal_order_number(settings.RENEWAL_ORDER_NUMBER_PREFIX),
                status=OrderStatus.PENDING.value,
                payment_status=PaymentStatus.PENDING.value,
                payment_method=PaymentMethod.SUBSCRIPTION.value,
                currency=settings.DEFAULT_CURRENCY.upper(),
                subtotal=subtotal,
                discount_amount=discount,
                shipping_address=address,
                notes=f"订阅续费 {subscription_id}",
            )
            item = OrderItemDraft(
                product_id=product.id,
                product_name=product.name,
                product_image=images[0] if images else None,
                quantity=quantity,
                unit_price=unit_price,
                total_price=draft.total,
                is_subscription=True,
            )

            order = await store.create_order(draft)
            order_id = order.id
            next_delivery = today + timedelta(days=interval)
            try:
                await store.create_order_items(order_id, [item])
                await db.execute(
                    update(Subscription)
                    .where(Subscription.id == subscription_id)
                    .values(last_delivery_date=today, next_delivery_date=next_delivery)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
            except Exception:
                await db.rollback()
                try:
                    await store.delete_order(order_id)
                except Exception as e:
                    logger.critical("续费订单回滚失败，需人工处理 order=%s: %s", draft.order_number, e)
                raise

        await self.audit.record(
            audit_service.SUBSCRIPTION_RENEWED,
            user_id=user_id,
            resource_type="subscription",
            resource_id=subscription_id,
            new_values={
                "order_number": draft.order_number,
                "amount": str(draft.total),
                "last_delivery_date": today.isoformat(),
                "next_delivery_date": next_delivery.isoformat(),
            },
            client=SYSTEM_CLIENT,
        )
        logger.info("订阅续费订单已创建 subscription=%s order=%s", subscription_id, draft.order_number)
        return draft.order_number

    @staticmethod
    async def _resolve_address(db: AsyncSession, subscription: Subscription) -> dict:
        """订阅绑定地址 → 用户默认地址 → 占位地址"""
        if subscription.shipping_address_id:
            address = await db.get(Address, subscription.shipping_address_id)
            if address is not None and address.user_id == subscription.user_id:
                return address.to_snapshot()
        result = await db.execute(
            select(Address)
            .where(Address.user_id == subscription.user_id, Address.is_default.is_(True))
            .limit(1)
        )
        address = result.scalars().first()
        if address is not None:
            return address.to_snapshot()

        logger.warning("订阅未找到收货地址，使用占位地址 subscription=%s", subscription.id)
        placeholder = dict(PLACEHOLDER_ADDRESS)
        user = await db.get(User, subscription.user_id)
        if user is not None:
            placeholder["email"] = user.email
            placeholder["phone"] = user.phone or ""
        return placeholder


class SubscriptionService:
    """用户侧订阅管理"""

    def __init__(self, db: AsyncSession, rate_limiter, audit: AuditLogger):
        self.db = db
        self.rate_limiter = rate_limiter
        self.audit = audit

    async def list_subscriptions(self, user_id: int) -> List[Subscription]:
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.next_delivery_date)
        )
        return list(result.scalars().all())

    async def get_subscription(self, subscription_id: str, user_id: int) -> Subscription:
        result = await self.db.execute(
            select(Subscription).where(Subscription.id == subscription_id, Subscription.user_id == user_id)
        )
        subscription = result.scalar_one_or_none()
        if subscription is None:
            raise SubscriptionNotFoundError()
        return subscription

    async def apply_action(
        self,
        user_id: int,
        subscription_id: str,
        request: SubscriptionActionRequest,
        client: Optional[ClientInfo] = None,
        today: Optional[date] = None,
    ) -> Subscription:
        """暂停 / 恢复 / 取消 / 跳过一期 / 修改配送周期"""
        allowed = await asyncio.to_thread(self.rate_limiter.allow, str(user_id), "manage-subscription")
        if not allowed:
            raise RateLimitExceededError()

        today = today or date.today()
        subscription = await self.get_subscription(subscription_id, user_id)
        old_values = {
            "status": subscription.status,
            "plan_type": subscription.plan_type,
            "next_delivery_date": subscription.next_delivery_date,
        }
        cancelled = subscription.status == SubscriptionStatus.CANCELLED.value

        if request.action == "pause":
            if cancelled:
                raise InvalidSubscriptionActionError("已取消的订阅不能暂停")
            subscription.status = SubscriptionStatus.PAUSED.value
        elif request.action == "resume":
            if cancelled:
                raise InvalidSubscriptionActionError("已取消的订阅不能恢复")
            subscription.status = SubscriptionStatus.ACTIVE.value
            subscription.next_delivery_date = today + timedelta(days=plan_interval_days(subscription.plan_type))
        elif request.action == "cancel":
            subscription.status = SubscriptionStatus.CANCELLED.value
        elif request.action == "skip":
            if subscription.status != SubscriptionStatus.ACTIVE.value:
                raise InvalidSubscriptionActionError("只有进行中的订阅可以跳过下一期")
            subscription.next_delivery_date = subscription.next_delivery_date + timedelta(
                days=plan_interval_days(subscription.plan_type)
            )
        elif request.action == "change_plan":
            if cancelled:
                raise InvalidSubscriptionActionError("已取消的订阅不能修改周期")
            if not request.plan_type:
                raise InvalidSubscriptionActionError("修改周期需要指定 plan_type")
            subscription.plan_type = request.plan_type

        await self.db.commit()
        await self.db.refresh(subscription)
        logger.info("订阅已更新 subscription=%s action=%s", subscription_id, request.action)

        await self.audit.record(
            audit_service.SUBSCRIPTION_UPDATED,
            user_id=user_id,
            resource_type="subscription",
            resource_id=subscription_id,
            old_values=old_values,
            new_values={
                "action": request.action,
                "status": subscription.status,
                "plan_type": subscription.plan_type,
                "next_delivery_date": subscription.next_delivery_date,
            },
            client=client,
        )
        return subscription
