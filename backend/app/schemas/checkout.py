"""
下单与支付相关Schema
"""
from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List, Union


class ShippingAddress(BaseModel):
    """收货地址（字段缺失交给校验层汇总报错）"""
    full_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address_line1: Optional[str] = None
    address_line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None


class CartItemIn(BaseModel):
    """购物车明细（价格单位：元）"""
    product_id: str = ""
    product_name: str = ""
    product_image: Optional[str] = None
    # 类型放宽，非整数数量等问题交给校验层汇总报错
    quantity: Union[int, float] = 0
    unit_price: Union[int, float] = 0
    total_price: Union[int, float] = 0
    is_subscription: bool = False


class CheckoutRequestBase(BaseModel):
    """下单请求公共字段"""
    amount_minor_units: Union[int, float]  # 应付金额，最小货币单位（分/paise）
    shipping_address: Optional[ShippingAddress] = None
    cart_items: List[CartItemIn] = []
    coupon_code: Optional[str] = None
    discount_amount: float = 0


class CreateOrderRequest(CheckoutRequestBase):
    """在线支付下单请求"""
    currency: Optional[str] = None


class CreateOrderResponse(BaseModel):
    """在线支付下单响应：前端据此拉起网关收银台"""
    success: bool = True
    gateway_order_reference: str
    gateway_key_id: Optional[str] = None
    local_order_id: str
    order_number: str
    amount_minor_units: int
    currency: str


class CodOrderRequest(CheckoutRequestBase):
    """货到付款下单请求"""


class CodOrderResponse(BaseModel):
    """货到付款下单响应"""
    success: bool = True
    local_order_id: str
    order_number: str


class VerifyPaymentRequest(BaseModel):
    """网关支付回调校验请求"""
    remote_order_reference: str = Field(..., min_length=1, max_length=100)
    remote_payment_reference: str = Field(..., min_length=1, max_length=100)
    signature: str = Field(..., min_length=1, max_length=256)
    local_order_id: str = Field(..., min_length=1, max_length=64)


class VerifyPaymentResponse(BaseModel):
    """支付校验响应"""
    success: bool = True
    message: str
    order_number: str
    already_verified: bool = False


class OrderItemResponse(BaseModel):
    """订单明细响应"""
    product_id: str
    product_name: str
    product_image: Optional[str] = None
    quantity: int
    unit_price: float
    total_price: float
    is_subscription: bool = False

    class Config:
        from_attributes = True


class OrderResponse(BaseModel):
    """订单响应"""
    id: str
    order_number: str
    status: str
    payment_status: str
    payment_method: Optional[str] = None
    currency: str
    subtotal: float
    discount_amount: float
    total: float
    coupon_code: Optional[str] = None
    shipping_address: dict
    gateway_order_reference: Optional[str] = None
    created_at: Optional[datetime] = None
    items: List[OrderItemResponse] = []

    class Config:
        from_attributes = True


class OrderListResponse(BaseModel):
    """订单列表响应"""
    orders: List[OrderResponse]
    total: int
