"""
下单编排：在线支付下单（本地订单 + 网关订单）与货到付款下单

在线支付下单是一个跨两个系统的 saga，没有统一事务，按步骤推进：
    validating → persisting_order → persisting_items → creating_remote_order → linking → done
persisting_order 之后任一步失败都会删除本次刚写入的订单及明细（rolled_back），
保证不存在没有明细的订单，也不存在没有网关订单、用户无法支付的本地订单。
linking 失败时网关侧订单无法撤销（它本身不会扣款），记为 ORDER_LINK_FAILED 审计事件供人工对账。
"""
import asyncio
import enum
import logging
from decimal import Decimal
from typing import List, Optional, Tuple

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    CheckoutError,
    ConfigurationError,
    GatewayUnavailableError,
    PersistenceError,
    RateLimitExceededError,
    ValidationFailedError,
)
from app.models.order import OrderStatus, PaymentMethod, PaymentStatus
from app.schemas.checkout import CheckoutRequestBase, CreateOrderRequest, CodOrderRequest
from app.services import audit_service
from app.services.audit_service import AuditLogger, ClientInfo
from app.services.notification_service import ConfirmationLine, EmailNotifier, OrderConfirmation
from app.services.order_store import OrderDraft, OrderItemDraft, OrderStore, generate_order_number, to_money
from app.services.payment_gateway import GatewayClient
from app.services.rate_limit_service import RateLimiter
from app.services.validation_service import validate_checkout_request

logger = logging.getLogger(__name__)


class SagaStep(str, enum.Enum):
    """在线支付下单的步骤"""
    VALIDATING = "validating"
    PERSISTING_ORDER = "persisting_order"
    PERSISTING_ITEMS = "persisting_items"
    CREATING_REMOTE_ORDER = "creating_remote_order"
    LINKING = "linking"
    DONE = "done"
    ROLLED_BACK = "rolled_back"


class CheckoutResult(BaseModel):
    """下单结果"""
    order_id: str
    order_number: str
    amount_minor_units: int
    currency: str
    gateway_order_reference: Optional[str] = None


async def send_order_confirmation(
    store: OrderStore,
    notifier: Optional[EmailNotifier],
    order_id: str,
    payment_method_label: str,
) -> bool:
    """读取完整订单并发送确认邮件；任何失败都只记日志"""
    if notifier is None:
        return False
    try:
        order = await store.get_order(order_id)
        if order is None:
            logger.warning("发送确认邮件时订单不存在 order_id=%s", order_id)
            return False
        items = await store.get_order_items(order_id)
        address = order.shipping_address or {}
        confirmation = OrderConfirmation(
            order_number=order.order_number,
            customer_name=address.get("full_name") or "",
            customer_email=address.get("email") or "",
            shipping_address=address,
            items=[
                ConfirmationLine(
                    product_name=i.product_name,
                    quantity=i.quantity,
                    unit_price=float(i.unit_price),
                    total_price=float(i.total_price),
                    is_subscription=bool(i.is_subscription),
                )
                for i in items
            ],
            total_amount=float(order.total),
            discount_amount=float(order.discount_amount or 0),
            payment_method=payment_method_label,
        )
        return await notifier.send_order_confirmation(confirmation)
    except Exception as e:
        logger.warning("发送订单确认邮件失败 order_id=%s: %s", order_id, e)
        return False


class CheckoutService:
    """下单服务类"""

    def __init__(
        self,
        db: AsyncSession,
        rate_limiter: RateLimiter,
        audit: AuditLogger,
        gateway: Optional[GatewayClient] = None,
        notifier: Optional[EmailNotifier] = None,
        store: Optional[OrderStore] = None,
    ):
        self.db = db
        self.rate_limiter = rate_limiter
        self.audit = audit
        self.gateway = gateway
        self.notifier = notifier
        self.store = store or OrderStore(db)
        self.step = SagaStep.VALIDATING

    def _enter(self, step: SagaStep, order_number: str = "") -> None:
        self.step = step
        logger.debug("下单步骤 %s order=%s", step.value, order_number)

    async def _check_rate_limit(self, user_id: int, endpoint: str) -> None:
        allowed = await asyncio.to_thread(self.rate_limiter.allow, str(user_id), endpoint)
        if not allowed:
            logger.info("下单触发限流 user=%s endpoint=%s", user_id, endpoint)
            raise RateLimitExceededError()

    @staticmethod
    def _validate(request: CheckoutRequestBase) -> None:
        result = validate_checkout_request(
            request, settings.ORDER_AMOUNT_MIN_MINOR, settings.ORDER_AMOUNT_MAX_MINOR
        )
        if not result.valid:
            raise ValidationFailedError(result.errors)

    @staticmethod
    def _build_drafts(
        user_id: int,
        request: CheckoutRequestBase,
        payment_method: PaymentMethod,
        status: OrderStatus,
        payment_status: PaymentStatus,
        currency: str,
    ) -> Tuple[OrderDraft, List[OrderItemDraft]]:
        # 小计只取明细小计之和，不信任客户端传入的合计
        subtotal = sum((to_money(item.total_price) for item in request.cart_items), Decimal("0"))
        draft = OrderDraft(
            user_id=user_id,
            order_number=generate_order_number(settings.ORDER_NUMBER_PREFIX),
            status=status.value,
            payment_status=payment_status.value,
            payment_method=payment_method.value,
            currency=currency,
            subtotal=subtotal,
            discount_amount=to_money(request.discount_amount or 0),
            coupon_code=request.coupon_code or None,
            shipping_address=request.shipping_address.model_dump(exclude_none=True),
        )
        items = [
            OrderItemDraft(
                product_id=item.product_id,
                product_name=item.product_name.strip(),
                product_image=item.product_image,
                quantity=item.quantity,
                unit_price=to_money(item.unit_price),
                total_price=to_money(item.total_price),
                is_subscription=item.is_subscription,
            )
            for item in request.cart_items
        ]
        return draft, items

    async def _compensate(self, order_id: str, order_number: str, user_id: int, reason: str, client: ClientInfo) -> None:
        """回滚本次写入的订单及明细；回滚失败记 CRITICAL 并审计，不再向上抛出"""
        try:
            await self.store.delete_order(order_id)
            self.step = SagaStep.ROLLED_BACK
            logger.warning("下单失败，已回滚订单 order=%s reason=%s", order_number, reason)
        except Exception as e:
            logger.critical("下单回滚失败，需人工处理 order=%s reason=%s: %s", order_number, reason, e)
            await self.audit.record(
                audit_service.ORDER_ROLLBACK_FAILED,
                user_id=user_id,
                resource_type="order",
                resource_id=order_id,
                detail={"order_number": order_number, "reason": reason, "error": str(e)},
                client=client,
            )

    async def _persist_order_with_items(
        self,
        draft: OrderDraft,
        items: List[OrderItemDraft],
        client: ClientInfo,
    ) -> str:
        """写入订单与明细；明细写入失败时删除订单。返回订单 ID"""
        self._enter(SagaStep.PERSISTING_ORDER, draft.order_number)
        try:
            order = await self.store.create_order(draft)
        except CheckoutError:
            raise
        except Exception as e:
            raise PersistenceError("创建订单失败") from e
        order_id = order.id

        self._enter(SagaStep.PERSISTING_ITEMS, draft.order_number)
        try:
            await self.store.create_order_items(order_id, items)
        except Exception as e:
            logger.error("订单明细写入失败 order=%s: %s", draft.order_number, e)
            await self._compensate(order_id, draft.order_number, draft.user_id, "order_items_failed", client)
            raise PersistenceError("创建订单明细失败") from e
        return order_id

    async def create_online_order(
        self,
        user_id: int,
        request: CreateOrderRequest,
        client: Optional[ClientInfo] = None,
    ) -> CheckoutResult:
        """在线支付下单：本地待支付订单 + 网关待支付订单"""
        client = client or ClientInfo()
        if self.gateway is None or not self.gateway.configured:
            logger.error("支付网关凭据未配置")
            raise ConfigurationError("支付配置错误")

        self._enter(SagaStep.VALIDATING)
        self._validate(request)
        await self._check_rate_limit(user_id, "create-order")

        currency = (request.currency or settings.DEFAULT_CURRENCY).upper()
        draft, items = self._build_drafts(
            user_id, request, PaymentMethod.ONLINE, OrderStatus.PENDING, PaymentStatus.PENDING, currency
        )
        amount_minor = int(draft.total * 100)
        logger.info("创建在线支付订单 user=%s order=%s amount=%s", user_id, draft.order_number, amount_minor)
        order_id = await self._persist_order_with_items(draft, items, client)

        self._enter(SagaStep.CREATING_REMOTE_ORDER, draft.order_number)
        try:
            remote = await self.gateway.create_remote_order(
                amount_minor,
                currency,
                order_id,
                receipt=draft.order_number,
                notes={"user_id": str(user_id)},
            )
        except Exception as e:
            await self._compensate(order_id, draft.order_number, user_id, f"gateway_failed:{type(e).__name__}", client)
            if isinstance(e, CheckoutError):
                raise
            raise GatewayUnavailableError("支付网关暂不可用") from e

        self._enter(SagaStep.LINKING, draft.order_number)
        try:
            linked = await self.store.set_gateway_reference(order_id, remote.reference)
            if not linked:
                raise PersistenceError("订单已关联其他网关订单号")
        except Exception as e:
            logger.critical(
                "关联网关订单号失败，网关订单 %s 成为孤儿订单 order=%s: %s", remote.reference, draft.order_number, e
            )
            await self.audit.record(
                audit_service.ORDER_LINK_FAILED,
                user_id=user_id,
                resource_type="order",
                resource_id=order_id,
                detail={
                    "order_number": draft.order_number,
                    "gateway_order_reference": remote.reference,
                    "amount_minor_units": amount_minor,
                    "error": str(e),
                },
                client=client,
            )
            await self._compensate(order_id, draft.order_number, user_id, "link_failed", client)
            raise PersistenceError("订单关联支付失败，请重新下单") from e

        self._enter(SagaStep.DONE, draft.order_number)
        await self.audit.record(
            audit_service.ORDER_CREATED,
            user_id=user_id,
            resource_type="order",
            resource_id=order_id,
            new_values={
                "order_number": draft.order_number,
                "amount": str(draft.total),
                "payment_method": PaymentMethod.ONLINE.value,
                "item_count": len(items),
                "gateway_order_reference": remote.reference,
            },
            client=client,
        )
        return CheckoutResult(
            order_id=order_id,
            order_number=draft.order_number,
            amount_minor_units=amount_minor,
            currency=currency,
            gateway_order_reference=remote.reference,
        )

    async def create_cod_order(
        self,
        user_id: int,
        request: CodOrderRequest,
        client: Optional[ClientInfo] = None,
    ) -> CheckoutResult:
        """货到付款下单：不经过网关，直接确认"""
        client = client or ClientInfo()
        self._enter(SagaStep.VALIDATING)
        self._validate(request)
        await self._check_rate_limit(user_id, "cod-order")

        currency = settings.DEFAULT_CURRENCY.upper()
        draft, items = self._build_drafts(
            user_id, request, PaymentMethod.COD, OrderStatus.CONFIRMED, PaymentStatus.COD_PENDING, currency
        )
        logger.info("创建货到付款订单 user=%s order=%s total=%s", user_id, draft.order_number, draft.total)
        order_id = await self._persist_order_with_items(draft, items, client)
        self._enter(SagaStep.DONE, draft.order_number)

        await self.audit.record(
            audit_service.COD_ORDER_CREATED,
            user_id=user_id,
            resource_type="order",
            resource_id=order_id,
            new_values={
                "order_number": draft.order_number,
                "amount": str(draft.total),
                "payment_method": PaymentMethod.COD.value,
                "item_count": len(items),
            },
            client=client,
        )
        await send_order_confirmation(self.store, self.notifier, order_id, "货到付款")
        return CheckoutResult(
            order_id=order_id,
            order_number=draft.order_number,
            amount_minor_units=int(draft.total * 100),
            currency=currency,
        )
