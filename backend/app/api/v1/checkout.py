"""
下单 API：在线支付下单、货到付款下单
"""
from fastapi import APIRouter, Depends, status

from app.api.deps import get_checkout_service, get_client_info
from app.api.v1.auth import get_current_active_user
from app.schemas.auth import UserResponse
from app.schemas.checkout import CodOrderRequest, CodOrderResponse, CreateOrderRequest, CreateOrderResponse
from app.services.audit_service import ClientInfo
from app.services.checkout_service import CheckoutService

router = APIRouter()


@router.post("/orders", response_model=CreateOrderResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    body: CreateOrderRequest,
    current_user: UserResponse = Depends(get_current_active_user),
    client: ClientInfo = Depends(get_client_info),
    service: CheckoutService = Depends(get_checkout_service),
):
    """创建在线支付订单，返回网关订单号供前端拉起收银台"""
    result = await service.create_online_order(current_user.id, body, client)
    return CreateOrderResponse(
        gateway_order_reference=result.gateway_order_reference,
        gateway_key_id=service.gateway.key_id if service.gateway else None,
        local_order_id=result.order_id,
        order_number=result.order_number,
        amount_minor_units=result.amount_minor_units,
        currency=result.currency,
    )


@router.post("/cod", response_model=CodOrderResponse, status_code=status.HTTP_201_CREATED)
async def create_cod_order(
    body: CodOrderRequest,
    current_user: UserResponse = Depends(get_current_active_user),
    client: ClientInfo = Depends(get_client_info),
    service: CheckoutService = Depends(get_checkout_service),
):
    """货到付款下单"""
    result = await service.create_cod_order(current_user.id, body, client)
    return CodOrderResponse(local_order_id=result.order_id, order_number=result.order_number)
