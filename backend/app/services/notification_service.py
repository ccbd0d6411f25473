"""
订单确认邮件：SMTP 发送，阻塞调用放到线程池执行

发送失败只返回 False 并记录日志，调用方不应因通知失败影响下单或支付结果。
"""
import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import List, Optional

from pydantic import BaseModel

from app.core.config import settings

logger = logging.getLogger(__name__)


class ConfirmationLine(BaseModel):
    product_name: str
    quantity: int
    unit_price: float
    total_price: float
    is_subscription: bool = False


class OrderConfirmation(BaseModel):
    """确认邮件内容"""
    order_number: str
    customer_name: str
    customer_email: str
    shipping_address: dict
    items: List[ConfirmationLine]
    total_amount: float
    discount_amount: float = 0
    payment_method: str


def render_confirmation_text(order: OrderConfirmation) -> str:
    """纯文本邮件正文"""
    lines = [
        f"{order.customer_name}，您好：",
        "",
        f"您的订单 {order.order_number} 已确认。",
        "",
    ]
    for item in order.items:
        tag = "（订阅）" if item.is_subscription else ""
        lines.append(f"- {item.product_name}{tag} × {item.quantity}  ₹{item.total_price:.2f}")
    if order.discount_amount:
        lines.append(f"优惠：-₹{order.discount_amount:.2f}")
    lines.append(f"合计：₹{order.total_amount:.2f}")
    lines.append(f"支付方式：{order.payment_method}")
    addr = order.shipping_address or {}
    lines += [
        "",
        "收货地址：",
        f"{addr.get('address_line1', '')} {addr.get('address_line2') or ''}".strip(),
        f"{addr.get('city', '')}, {addr.get('state', '')} {addr.get('postal_code', '')}".strip(", "),
    ]
    return "\n".join(lines)


class EmailNotifier:
    """订单确认邮件发送"""

    def __init__(self, enabled: Optional[bool] = None):
        self.enabled = settings.EMAIL_ENABLED if enabled is None else enabled

    async def send_order_confirmation(self, order: OrderConfirmation) -> bool:
        if not self.enabled:
            return False
        if not settings.smtp_configured:
            logger.warning("SMTP 未配置，跳过发送订单确认邮件 order=%s", order.order_number)
            return False
        if not order.customer_email:
            logger.warning("订单缺少收件邮箱，跳过发送 order=%s", order.order_number)
            return False
        try:
            await asyncio.to_thread(self._send, order)
            logger.info("订单确认邮件已发送 order=%s", order.order_number)
            return True
        except Exception as e:
            logger.warning("订单确认邮件发送失败 order=%s: %s", order.order_number, e)
            return False

    @staticmethod
    def _send(order: OrderConfirmation) -> None:
        msg = EmailMessage()
        msg["Subject"] = f"订单确认 #{order.order_number}"
        msg["From"] = settings.SENDER_EMAIL or settings.SMTP_USERNAME
        msg["To"] = order.customer_email
        msg.set_content(render_confirmation_text(order))
        if settings.SMTP_PORT == 465:
            with smtplib.SMTP_SSL(settings.SMTP_HOST, settings.SMTP_PORT, timeout=settings.SMTP_TIMEOUT) as smtp:
                smtp.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
                smtp.send_message(msg)
        else:
            with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=settings.SMTP_TIMEOUT) as smtp:
                smtp.starttls()
                smtp.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
                smtp.send_message(msg)


_default_notifier: Optional[EmailNotifier] = None


def get_notifier() -> EmailNotifier:
    """FastAPI 依赖：进程内共享的邮件发送器"""
    global _default_notifier
    if _default_notifier is None:
        _default_notifier = EmailNotifier()
    return _default_notifier
