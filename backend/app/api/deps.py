"""
通用依赖：请求来源信息、各服务的组装
"""
from typing import Optional

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.database import get_db, get_session_factory
from app.services.audit_service import AuditLogger, ClientInfo
from app.services.checkout_service import CheckoutService
from app.services.notification_service import EmailNotifier, get_notifier
from app.services.payment_gateway import GatewayClient, get_gateway_client
from app.services.payment_verification_service import PaymentVerificationService
from app.services.rate_limit_service import RateLimiter, get_rate_limiter
from app.services.subscription_service import SubscriptionService


def get_client_ip(request: Request) -> Optional[str]:
    """客户端 IP：优先取反向代理头"""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    for header in ("x-real-ip", "cf-connecting-ip"):
        value = request.headers.get(header)
        if value:
            return value.strip()
    return request.client.host if request.client else None


def get_client_info(request: Request) -> ClientInfo:
    return ClientInfo(
        ip=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        request_id=getattr(request.state, "request_id", None),
    )


def get_audit_logger(
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> AuditLogger:
    return AuditLogger(session_factory)


def get_checkout_service(
    db: AsyncSession = Depends(get_db),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    audit: AuditLogger = Depends(get_audit_logger),
    gateway: GatewayClient = Depends(get_gateway_client),
    notifier: EmailNotifier = Depends(get_notifier),
) -> CheckoutService:
    return CheckoutService(db, rate_limiter, audit, gateway=gateway, notifier=notifier)


def get_payment_verification_service(
    db: AsyncSession = Depends(get_db),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    audit: AuditLogger = Depends(get_audit_logger),
    notifier: EmailNotifier = Depends(get_notifier),
) -> PaymentVerificationService:
    return PaymentVerificationService(db, rate_limiter, audit, notifier=notifier)


def get_subscription_service(
    db: AsyncSession = Depends(get_db),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    audit: AuditLogger = Depends(get_audit_logger),
) -> SubscriptionService:
    return SubscriptionService(db, rate_limiter, audit)
