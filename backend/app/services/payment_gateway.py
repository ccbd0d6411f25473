"""
支付网关客户端（Razorpay 兼容接口）与回调签名校验

本服务不直接扣款：只在网关创建待支付订单，实际支付由用户在网关收银台完成，
网关回调携带 HMAC-SHA256 签名，由支付校验服务验证后才会把订单标记为已支付。
"""
import hashlib
import hmac
import logging
from typing import Any, Dict, NamedTuple, Optional

import httpx

from app.core.config import settings
from app.core.exceptions import ConfigurationError, GatewayRejectedError, GatewayUnavailableError

logger = logging.getLogger(__name__)


class RemoteOrder(NamedTuple):
    """网关侧订单"""
    reference: str
    raw: Dict[str, Any]


def compute_payment_signature(remote_order_reference: str, remote_payment_reference: str, secret: str) -> str:
    """签名 = HMAC-SHA256(secret, "{网关订单号}|{网关支付号}")，十六进制"""
    payload = f"{remote_order_reference}|{remote_payment_reference}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_payment_signature(
    remote_order_reference: str,
    remote_payment_reference: str,
    signature: str,
    secret: str,
) -> bool:
    """常量时间比较签名"""
    expected = compute_payment_signature(remote_order_reference, remote_payment_reference, secret)
    return hmac.compare_digest(expected.encode("utf-8"), (signature or "").encode("utf-8"))


class GatewayClient:
    """支付网关 API 客户端"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.GATEWAY_BASE_URL).rstrip("/")
        self.key_id = key_id if key_id is not None else settings.GATEWAY_KEY_ID
        self.key_secret = key_secret if key_secret is not None else settings.GATEWAY_KEY_SECRET
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            auth=(self.key_id, self.key_secret),
            timeout=timeout or settings.GATEWAY_TIMEOUT_SECONDS,
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    async def create_remote_order(
        self,
        amount_minor_units: int,
        currency: str,
        local_order_id: str,
        receipt: str,
        notes: Optional[Dict[str, Any]] = None,
    ) -> RemoteOrder:
        """
        在网关创建待支付订单

        Raises:
            GatewayRejectedError: 网关返回 4xx（参数错误、金额不合法等）
            GatewayUnavailableError: 网络错误、超时或 5xx
        """
        if not self.configured:
            raise ConfigurationError("支付网关未配置")
        payload = {
            "amount": int(amount_minor_units),
            "currency": currency,
            "receipt": receipt,
            "notes": {"order_id": local_order_id, **(notes or {})},
        }
        logger.info("创建网关订单 receipt=%s amount=%s %s", receipt, amount_minor_units, currency)
        try:
            response = await self.client.post("/orders", json=payload)
        except httpx.TimeoutException as e:
            logger.error("网关请求超时 receipt=%s: %s", receipt, e)
            raise GatewayUnavailableError("支付网关响应超时") from e
        except httpx.HTTPError as e:
            logger.error("网关请求失败 receipt=%s: %s", receipt, e)
            raise GatewayUnavailableError("支付网关暂不可用") from e

        data = _json_or_empty(response)
        if response.status_code >= 500:
            logger.error("网关服务异常 status=%s body=%s", response.status_code, data)
            raise GatewayUnavailableError("支付网关暂不可用", http_status=response.status_code, payload=data)
        if response.status_code >= 400:
            description = (data.get("error") or {}).get("description") if isinstance(data.get("error"), dict) else None
            logger.error("网关拒绝创建订单 status=%s body=%s", response.status_code, data)
            raise GatewayRejectedError(
                description or "支付网关拒绝了该订单", http_status=response.status_code, payload=data
            )
        reference = data.get("id")
        if not reference:
            raise GatewayUnavailableError("支付网关返回数据缺少订单号", http_status=response.status_code, payload=data)
        logger.info("网关订单已创建 receipt=%s reference=%s", receipt, reference)
        return RemoteOrder(reference=str(reference), raw=data)

    async def close(self):
        """关闭 HTTP 客户端"""
        await self.client.aclose()


def _json_or_empty(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


_default_client: Optional[GatewayClient] = None


def get_gateway_client() -> GatewayClient:
    """FastAPI 依赖：进程内共享的网关客户端"""
    global _default_client
    if _default_client is None:
        _default_client = GatewayClient()
    return _default_client


async def close_gateway_client() -> None:
    global _default_client
    if _default_client is not None:
        await _default_client.close()
        _default_client = None
