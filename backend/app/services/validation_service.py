"""
下单前的输入校验：地址、购物车明细、金额、优惠码

所有函数均为纯函数，不抛异常；预期内的输入问题一律汇总到 ValidationResult.errors，
调用方一次性展示全部原因。
"""
import math
import re
from numbers import Number
from typing import Iterable, List, Optional

from pydantic import BaseModel

from app.schemas.checkout import CartItemIn, CheckoutRequestBase, ShippingAddress

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^[+]?[(]?[0-9]{1,4}[)]?[-\s./0-9]*$")
POSTAL_CODE_RE = re.compile(r"^[1-9][0-9]{5}$")
UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
COUPON_RE = re.compile(r"^[A-Za-z0-9_-]*$")

MAX_CART_ITEMS = 50
MAX_ITEM_QUANTITY = 100
MAX_UNIT_PRICE = 1_000_000
# 明细小计与 单价×数量 允许的舍入误差（元）
LINE_TOTAL_TOLERANCE = 1


class ValidationResult(BaseModel):
    """校验结果"""
    valid: bool = True
    errors: List[str] = []

    @classmethod
    def from_errors(cls, errors: List[str]) -> "ValidationResult":
        return cls(valid=not errors, errors=list(errors))

    @classmethod
    def merge(cls, results: Iterable["ValidationResult"]) -> "ValidationResult":
        errors: List[str] = []
        for r in results:
            errors.extend(r.errors)
        return cls.from_errors(errors)


def _is_number(value) -> bool:
    return isinstance(value, Number) and not isinstance(value, bool) and not (
        isinstance(value, float) and math.isnan(value)
    )


def _text(value: Optional[str]) -> str:
    return (value or "").strip()


def is_valid_email(email: Optional[str]) -> bool:
    return bool(email) and len(email) <= 254 and EMAIL_RE.match(email) is not None


def is_valid_phone(phone: Optional[str]) -> bool:
    return bool(phone) and 10 <= len(phone) <= 20 and PHONE_RE.match(phone) is not None


def is_valid_postal_code(postal_code: Optional[str]) -> bool:
    return bool(postal_code) and POSTAL_CODE_RE.match(postal_code) is not None


def is_valid_identifier(value: Optional[str]) -> bool:
    return bool(value) and UUID_RE.match(value) is not None


def validate_address(address: Optional[ShippingAddress]) -> ValidationResult:
    """校验收货地址"""
    if address is None:
        return ValidationResult.from_errors(["收货地址不能为空"])
    errors: List[str] = []
    name = _text(address.full_name)
    if len(name) < 2:
        errors.append("收货人姓名至少 2 个字符")
    elif len(name) > 100:
        errors.append("收货人姓名不能超过 100 个字符")
    if not is_valid_email(address.email):
        errors.append("邮箱格式不正确")
    if not is_valid_phone(address.phone):
        errors.append("手机号格式不正确")
    if len(_text(address.address_line1)) < 5:
        errors.append("详细地址至少 5 个字符")
    if len(_text(address.city)) < 2:
        errors.append("城市至少 2 个字符")
    if len(_text(address.state)) < 2:
        errors.append("省/州至少 2 个字符")
    if not is_valid_postal_code(address.postal_code):
        errors.append("邮政编码格式不正确（需 6 位数字）")
    return ValidationResult.from_errors(errors)


def validate_cart_items(items: Optional[List[CartItemIn]]) -> ValidationResult:
    """
    校验购物车明细。明细小计必须等于 单价×数量（允许 1 元误差），
    任一明细不一致即整单拒绝，防止客户端篡改价格。
    """
    if not items:
        return ValidationResult.from_errors(["购物车至少需要 1 件商品"])
    if len(items) > MAX_CART_ITEMS:
        return ValidationResult.from_errors([f"购物车商品不能超过 {MAX_CART_ITEMS} 件"])

    errors: List[str] = []
    for index, item in enumerate(items, start=1):
        prefix = f"第 {index} 项"
        if not is_valid_identifier(item.product_id):
            errors.append(f"{prefix}：商品 ID 不合法")
        if not _text(item.product_name):
            errors.append(f"{prefix}：商品名称不能为空")
        quantity_ok = isinstance(item.quantity, int) and not isinstance(item.quantity, bool) \
            and 1 <= item.quantity <= MAX_ITEM_QUANTITY
        if not quantity_ok:
            errors.append(f"{prefix}：数量必须在 1 到 {MAX_ITEM_QUANTITY} 之间")
        unit_ok = _is_number(item.unit_price) and 0 <= item.unit_price <= MAX_UNIT_PRICE
        if not unit_ok:
            errors.append(f"{prefix}：单价不合法")
        total_ok = _is_number(item.total_price) and item.total_price >= 0
        if not total_ok:
            errors.append(f"{prefix}：小计不合法")
        if unit_ok and total_ok and _is_number(item.quantity):
            expected = item.unit_price * item.quantity
            if abs(item.total_price - expected) > LINE_TOTAL_TOLERANCE:
                errors.append(f"{prefix}：小计与 单价×数量 不一致")
    return ValidationResult.from_errors(errors)


def validate_amount(amount, min_amount: int, max_amount: int) -> ValidationResult:
    """校验金额：最小货币单位的整数，且在 [min_amount, max_amount] 内"""
    if not _is_number(amount) or math.isinf(amount):
        return ValidationResult.from_errors(["金额必须是有效数字"])
    if amount < min_amount:
        return ValidationResult.from_errors([f"金额不能低于 {min_amount / 100:g}"])
    if amount > max_amount:
        return ValidationResult.from_errors([f"金额不能超过 {max_amount / 100:g}"])
    if float(amount) != int(amount):
        return ValidationResult.from_errors(["金额必须为整数（最小货币单位）"])
    return ValidationResult()


def validate_coupon_code(code: Optional[str]) -> ValidationResult:
    """校验优惠码：可选；字母数字及 _ -，不超过 50 个字符"""
    if code is None or code == "":
        return ValidationResult()
    if not isinstance(code, str):
        return ValidationResult.from_errors(["优惠码必须是字符串"])
    if len(code) > 50:
        return ValidationResult.from_errors(["优惠码过长"])
    if not COUPON_RE.match(code):
        return ValidationResult.from_errors(["优惠码包含非法字符"])
    return ValidationResult()


def validate_totals(amount_minor_units, subtotal: float, discount_amount: float) -> ValidationResult:
    """校验应付金额 = 小计 - 优惠（允许 1 元误差），优惠不得为负或超过小计"""
    errors: List[str] = []
    if not _is_number(discount_amount) or discount_amount < 0:
        errors.append("优惠金额不能为负数")
    elif discount_amount > subtotal:
        errors.append("优惠金额不能超过商品小计")
    elif _is_number(amount_minor_units):
        expected = subtotal - discount_amount
        if abs(amount_minor_units / 100 - expected) > LINE_TOTAL_TOLERANCE:
            errors.append("应付金额与商品小计不一致")
    return ValidationResult.from_errors(errors)


def validate_checkout_request(
    request: CheckoutRequestBase,
    min_amount: int,
    max_amount: int,
) -> ValidationResult:
    """汇总下单请求的全部校验结果"""
    amount = validate_amount(request.amount_minor_units, min_amount, max_amount)
    address = validate_address(request.shipping_address)
    cart = validate_cart_items(request.cart_items)
    coupon = validate_coupon_code(request.coupon_code)
    results = [amount, address, cart, coupon]
    # 明细本身合法时才比较总额，避免重复报错
    if amount.valid and cart.valid:
        subtotal = sum(item.total_price for item in request.cart_items)
        results.append(validate_totals(request.amount_minor_units, subtotal, request.discount_amount))
    return ValidationResult.merge(results)
