"""
业务异常：每类异常携带 HTTP 状态码与错误码，由 main.py 统一转换为响应
"""
from typing import List, Optional


class CheckoutError(Exception):
    """业务异常基类"""
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or []


class ValidationFailedError(CheckoutError):
    """输入校验失败，errors 为完整原因列表"""
    status_code = 400
    code = "validation_failed"

    def __init__(self, errors: List[str]):
        super().__init__("、".join(errors) if errors else "请求参数校验失败", errors)


class RateLimitExceededError(CheckoutError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str = "请求过于频繁，请稍后再试"):
        super().__init__(message)


class ConfigurationError(CheckoutError):
    status_code = 500
    code = "configuration_error"


class PersistenceError(CheckoutError):
    status_code = 500
    code = "persistence_error"


class GatewayError(CheckoutError):
    """支付网关调用失败"""
    status_code = 502
    code = "gateway_error"

    def __init__(self, message: str, http_status: Optional[int] = None, payload: Optional[dict] = None):
        super().__init__(message)
        self.http_status = http_status
        self.payload = payload or {}


class GatewayRejectedError(GatewayError):
    """网关拒绝（4xx，如金额不合法），重试无意义"""
    status_code = 502
    code = "gateway_rejected"


class GatewayUnavailableError(GatewayError):
    """网关不可用（网络错误、超时、5xx）"""
    status_code = 503
    code = "gateway_unavailable"


class SignatureMismatchError(CheckoutError):
    status_code = 400
    code = "signature_mismatch"

    def __init__(self, message: str = "支付校验失败：签名不匹配"):
        super().__init__(message)


class OrderReferenceMismatchError(CheckoutError):
    status_code = 400
    code = "order_reference_mismatch"

    def __init__(self, message: str = "支付校验失败：网关订单号与本地订单不一致"):
        super().__init__(message)


class OrderNotFoundError(CheckoutError):
    status_code = 404
    code = "order_not_found"

    def __init__(self, message: str = "订单不存在"):
        super().__init__(message)


class SubscriptionNotFoundError(CheckoutError):
    status_code = 404
    code = "subscription_not_found"

    def __init__(self, message: str = "订阅不存在"):
        super().__init__(message)


class ProductUnavailableError(CheckoutError):
    """商品不存在或已下架"""
    status_code = 409
    code = "product_unavailable"

    def __init__(self, message: str = "商品不存在或已下架"):
        super().__init__(message)


class InvalidSubscriptionActionError(CheckoutError):
    status_code = 409
    code = "invalid_subscription_action"
