"""
支付回调校验：验证网关签名并把待支付订单确认为已支付（只生效一次）

签名不通过、网关订单号与本地订单不一致时只记审计，不修改订单。
确认使用单条条件 UPDATE（订单ID + 用户ID + 未支付 + 网关订单号一致），
并发的重复回调只有一个能更新成功，其余按“已确认”幂等返回，不会重复发邮件。
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    ConfigurationError,
    OrderNotFoundError,
    OrderReferenceMismatchError,
    RateLimitExceededError,
    SignatureMismatchError,
)
from app.models.order import OrderStatus, PaymentStatus
from app.schemas.checkout import VerifyPaymentRequest
from app.services import audit_service
from app.services.audit_service import AuditLogger, ClientInfo
from app.services.checkout_service import send_order_confirmation
from app.services.notification_service import EmailNotifier
from app.services.order_store import OrderStore
from app.services.payment_gateway import verify_payment_signature

logger = logging.getLogger(__name__)


class VerificationResult(BaseModel):
    order_id: str
    order_number: str
    already_verified: bool = False


class PaymentVerificationService:
    """支付校验服务类"""

    def __init__(
        self,
        db: AsyncSession,
        rate_limiter,
        audit: AuditLogger,
        notifier: Optional[EmailNotifier] = None,
        secret: Optional[str] = None,
        store: Optional[OrderStore] = None,
    ):
        self.db = db
        self.rate_limiter = rate_limiter
        self.audit = audit
        self.notifier = notifier
        self.secret = secret if secret is not None else settings.GATEWAY_KEY_SECRET
        self.store = store or OrderStore(db)

    async def _audit_failure(self, user_id: int, request: VerifyPaymentRequest, reason: str, client: ClientInfo):
        await self.audit.record(
            audit_service.PAYMENT_VERIFICATION_FAILED,
            user_id=user_id,
            resource_type="order",
            resource_id=request.local_order_id,
            detail={
                "remote_order_reference": request.remote_order_reference,
                "remote_payment_reference": request.remote_payment_reference,
                "reason": reason,
            },
            client=client,
        )

    async def verify(
        self,
        user_id: int,
        request: VerifyPaymentRequest,
        client: Optional[ClientInfo] = None,
    ) -> VerificationResult:
        """
        校验网关回调并确认订单

        Raises:
            RateLimitExceededError: 触发限流
            SignatureMismatchError: 签名不匹配（已审计，订单不变）
            OrderNotFoundError: 订单不存在或不属于当前用户
            OrderReferenceMismatchError: 签名对应的网关订单不是该订单的（已审计，订单不变）
        """
        client = client or ClientInfo()
        if not self.secret:
            logger.error("支付网关密钥未配置，无法校验签名")
            raise ConfigurationError("支付配置错误")

        allowed = await asyncio.to_thread(self.rate_limiter.allow, str(user_id), "verify-payment")
        if not allowed:
            raise RateLimitExceededError()

        if not verify_payment_signature(
            request.remote_order_reference,
            request.remote_payment_reference,
            request.signature,
            self.secret,
        ):
            logger.warning(
                "支付签名校验失败 user=%s order_id=%s remote_order=%s",
                user_id, request.local_order_id, request.remote_order_reference,
            )
            await self._audit_failure(user_id, request, "signature_mismatch", client)
            raise SignatureMismatchError()

        order = await self.store.update_order(
            request.local_order_id,
            user_id,
            {
                "payment_status": PaymentStatus.PAID.value,
                "status": OrderStatus.CONFIRMED.value,
                "gateway_payment_reference": request.remote_payment_reference,
                "paid_at": datetime.now(timezone.utc),
            },
            exclude_payment_status=PaymentStatus.PAID.value,
            gateway_order_reference=request.remote_order_reference,
        )
        if order is None:
            return await self._resolve_unmatched(user_id, request, client)

        order_id, order_number = order.id, order.order_number
        logger.info("支付已确认 order=%s payment=%s", order_number, request.remote_payment_reference)
        await self.audit.record(
            audit_service.PAYMENT_VERIFIED,
            user_id=user_id,
            resource_type="order",
            resource_id=order_id,
            new_values={
                "payment_status": PaymentStatus.PAID.value,
                "status": OrderStatus.CONFIRMED.value,
                "remote_order_reference": request.remote_order_reference,
                "remote_payment_reference": request.remote_payment_reference,
            },
            client=client,
        )
        await send_order_confirmation(self.store, self.notifier, order_id, "在线支付")
        return VerificationResult(order_id=order_id, order_number=order_number)

    async def _resolve_unmatched(
        self,
        user_id: int,
        request: VerifyPaymentRequest,
        client: ClientInfo,
    ) -> VerificationResult:
        """条件更新未命中：区分 订单不存在 / 网关订单号不一致 / 已支付（重复回调）"""
        order = await self.store.get_order(request.local_order_id, user_id)
        if order is None:
            logger.warning("支付校验的订单不存在 user=%s order_id=%s", user_id, request.local_order_id)
            await self._audit_failure(user_id, request, "order_not_found", client)
            raise OrderNotFoundError()

        if order.gateway_order_reference != request.remote_order_reference:
            logger.warning(
                "网关订单号与本地订单不一致 order=%s stored=%s got=%s",
                order.order_number, order.gateway_order_reference, request.remote_order_reference,
            )
            await self._audit_failure(user_id, request, "order_reference_mismatch", client)
            raise OrderReferenceMismatchError()

        # 已支付：重复回调，幂等返回，不再发邮件
        logger.info("订单已支付，重复回调 order=%s", order.order_number)
        await self.audit.record(
            audit_service.PAYMENT_VERIFICATION_REPLAYED,
            user_id=user_id,
            resource_type="order",
            resource_id=order.id,
            detail={
                "remote_payment_reference": request.remote_payment_reference,
                "stored_payment_reference": order.gateway_payment_reference,
            },
            client=client,
        )
        return VerificationResult(order_id=order.id, order_number=order.order_number, already_verified=True)
