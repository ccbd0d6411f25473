"""
订单查询 API（仅返回当前用户的订单）
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.exceptions import OrderNotFoundError
from app.api.v1.auth import get_current_active_user
from app.schemas.auth import UserResponse
from app.schemas.checkout import OrderItemResponse, OrderListResponse, OrderResponse
from app.services.order_store import OrderStore

router = APIRouter()


async def _to_response(store: OrderStore, order) -> OrderResponse:
    # 明细单独查询，避免异步会话下访问 relationship 触发懒加载
    items = await store.get_order_items(order.id)
    return OrderResponse(
        id=order.id,
        order_number=order.order_number,
        status=order.status,
        payment_status=order.payment_status,
        payment_method=order.payment_method,
        currency=order.currency,
        subtotal=order.subtotal,
        discount_amount=order.discount_amount,
        total=order.total,
        coupon_code=order.coupon_code,
        shipping_address=order.shipping_address or {},
        gateway_order_reference=order.gateway_order_reference,
        created_at=order.created_at,
        items=[OrderItemResponse.model_validate(i) for i in items],
    )


@router.get("", response_model=OrderListResponse)
async def list_orders(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: UserResponse = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
):
    """当前用户的订单列表（最新在前）"""
    store = OrderStore(db)
    orders = await store.list_user_orders(current_user.id, limit=limit, offset=offset)
    return OrderListResponse(
        orders=[await _to_response(store, o) for o in orders],
        total=await store.count_user_orders(current_user.id),
    )


@router.get("/{order_number}", response_model=OrderResponse)
async def get_order(
    order_number: str,
    current_user: UserResponse = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
):
    """订单详情（含明细）"""
    store = OrderStore(db)
    order = await store.get_order_by_number(order_number, current_user.id)
    if order is None:
        raise OrderNotFoundError()
    return await _to_response(store, order)
