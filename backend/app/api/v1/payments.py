"""
支付回调校验 API
"""
from fastapi import APIRouter, Depends

from app.api.deps import get_client_info, get_payment_verification_service
from app.api.v1.auth import get_current_active_user
from app.schemas.auth import UserResponse
from app.schemas.checkout import VerifyPaymentRequest, VerifyPaymentResponse
from app.services.audit_service import ClientInfo
from app.services.payment_verification_service import PaymentVerificationService

router = APIRouter()


@router.post("/verify", response_model=VerifyPaymentResponse)
async def verify_payment(
    body: VerifyPaymentRequest,
    current_user: UserResponse = Depends(get_current_active_user),
    client: ClientInfo = Depends(get_client_info),
    service: PaymentVerificationService = Depends(get_payment_verification_service),
):
    """校验网关支付签名并确认订单；重复提交同一支付结果返回成功"""
    result = await service.verify(current_user.id, body, client)
    return VerifyPaymentResponse(
        message="订单已支付" if result.already_verified else "支付成功",
        order_number=result.order_number,
        already_verified=result.already_verified,
    )
