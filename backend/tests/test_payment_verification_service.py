import asyncio
import json
from decimal import Decimal

import pytest

from app.core.exceptions import (
    ConfigurationError,
    OrderNotFoundError,
    OrderReferenceMismatchError,
    RateLimitExceededError,
    SignatureMismatchError,
)
from app.models.order import Order
from app.schemas.checkout import VerifyPaymentRequest
from app.services import audit_service
from app.services.order_store import OrderDraft, OrderItemDraft, OrderStore, generate_order_number
from app.services.payment_gateway import compute_payment_signature
from app.services.payment_verification_service import PaymentVerificationService

pytestmark = pytest.mark.anyio

SECRET = "gateway_test_secret"


@pytest.fixture
async def pending_order(session_factory, user):
    async with session_factory() as session:
        store = OrderStore(session)
        order = await store.create_order(
            OrderDraft(
                user_id=user.id,
                order_number=generate_order_number(),
                payment_method="razorpay",
                subtotal=Decimal("1350"),
                shipping_address={"full_name": "Asha Verma", "email": "asha@example.com"},
            )
        )
        await store.create_order_items(
            order.id,
            [
                OrderItemDraft(
                    product_id="3f1c2a9e-5b7d-4e2a-9c1f-0a1b2c3d4e5f",
                    product_name="Cold Pressed Groundnut Oil",
                    quantity=3,
                    unit_price=Decimal("450"),
                    total_price=Decimal("1350"),
                )
            ],
        )
        await store.set_gateway_reference(order.id, "order_remote_1")
        return order


@pytest.fixture
def service(db, limiter, audit, notifier):
    return PaymentVerificationService(db, limiter, audit, notifier=notifier, secret=SECRET)


def _request(order_id, order_ref="order_remote_1", payment_ref="pay_1", signature=None):
    return VerifyPaymentRequest(
        remote_order_reference=order_ref,
        remote_payment_reference=payment_ref,
        signature=signature or compute_payment_signature(order_ref, payment_ref, SECRET),
        local_order_id=order_id,
    )


async def _load(session_factory, order_id):
    async with session_factory() as session:
        return await OrderStore(session).get_order(order_id)


class TestPaymentVerification:
    async def test_valid_signature_confirms_order(
        self, service, user, pending_order, limiter, notifier, session_factory, audit_rows
    ):
        result = await service.verify(user.id, _request(pending_order.id))

        assert result.order_number == pending_order.order_number
        assert not result.already_verified
        assert limiter.calls == [(str(user.id), "verify-payment")]
        order = await _load(session_factory, pending_order.id)
        assert (order.status, order.payment_status) == ("confirmed", "paid")
        assert order.gateway_payment_reference == "pay_1"
        assert order.paid_at is not None
        (event,) = await audit_rows(audit_service.PAYMENT_VERIFIED)
        # 条件更新不读取原状态，审计只记录写入后的值
        assert event.old_values is None
        assert event.new_values["payment_status"] == "paid"
        assert event.new_values["remote_payment_reference"] == "pay_1"
        (confirmation,) = notifier.sent
        assert confirmation.payment_method == "在线支付"

    async def test_bad_signature_never_mutates_order(self, service, user, pending_order, session_factory, audit_rows):
        signature = compute_payment_signature("order_remote_1", "pay_1", "wrong_secret")
        with pytest.raises(SignatureMismatchError):
            await service.verify(user.id, _request(pending_order.id, signature=signature))

        order = await _load(session_factory, pending_order.id)
        assert (order.status, order.payment_status) == ("pending", "pending")
        assert order.gateway_payment_reference is None
        (event,) = await audit_rows(audit_service.PAYMENT_VERIFICATION_FAILED)
        detail = json.loads(event.detail)
        assert detail["reason"] == "signature_mismatch"
        assert detail["remote_order_reference"] == "order_remote_1"
        assert detail["remote_payment_reference"] == "pay_1"

    async def test_unknown_order_creates_nothing(self, service, user, pending_order, count_rows):
        with pytest.raises(OrderNotFoundError):
            await service.verify(user.id, _request("00000000-0000-0000-0000-000000000000"))
        assert await count_rows(Order) == 1

    async def test_other_users_order_is_not_confirmed(self, service, other_user, pending_order, session_factory):
        with pytest.raises(OrderNotFoundError):
            await service.verify(other_user.id, _request(pending_order.id))
        assert (await _load(session_factory, pending_order.id)).payment_status == "pending"

    async def test_repeat_callback_is_idempotent(self, service, user, pending_order, notifier, session_factory, audit_rows):
        first = await service.verify(user.id, _request(pending_order.id))
        second = await service.verify(user.id, _request(pending_order.id))

        assert not first.already_verified
        assert second.already_verified
        assert second.order_number == first.order_number
        assert (await _load(session_factory, pending_order.id)).payment_status == "paid"
        assert len(notifier.sent) == 1
        assert len(await audit_rows(audit_service.PAYMENT_VERIFIED)) == 1
        assert len(await audit_rows(audit_service.PAYMENT_VERIFICATION_REPLAYED)) == 1

    async def test_concurrent_callbacks_confirm_once(
        self, session_factory, limiter, audit, notifier, user, pending_order, audit_rows
    ):
        async def verify_in_own_session():
            async with session_factory() as session:
                service = PaymentVerificationService(session, limiter, audit, notifier=notifier, secret=SECRET)
                return await service.verify(user.id, _request(pending_order.id))

        results = await asyncio.gather(verify_in_own_session(), verify_in_own_session())

        assert sorted(r.already_verified for r in results) == [False, True]
        assert len(notifier.sent) == 1
        assert len(await audit_rows(audit_service.PAYMENT_VERIFIED)) == 1
        assert len(await audit_rows(audit_service.PAYMENT_VERIFICATION_REPLAYED)) == 1

    async def test_signed_reference_must_belong_to_order(self, service, user, pending_order, session_factory, audit_rows):
        with pytest.raises(OrderReferenceMismatchError):
            await service.verify(user.id, _request(pending_order.id, order_ref="order_remote_9"))

        assert (await _load(session_factory, pending_order.id)).payment_status == "pending"
        (event,) = await audit_rows(audit_service.PAYMENT_VERIFICATION_FAILED)
        assert json.loads(event.detail)["reason"] == "order_reference_mismatch"

    async def test_rate_limited(self, service, user, pending_order, limiter, session_factory):
        limiter.allowed = False
        with pytest.raises(RateLimitExceededError):
            await service.verify(user.id, _request(pending_order.id))
        assert (await _load(session_factory, pending_order.id)).payment_status == "pending"

    async def test_missing_secret(self, db, limiter, audit, user, pending_order):
        service = PaymentVerificationService(db, limiter, audit, secret="")
        with pytest.raises(ConfigurationError):
            await service.verify(user.id, _request(pending_order.id))

    async def test_email_failure_does_not_block_confirmation(self, service, user, pending_order, notifier, session_factory):
        notifier.fail = True
        result = await service.verify(user.id, _request(pending_order.id))
        assert result.order_number == pending_order.order_number
        assert (await _load(session_factory, pending_order.id)).payment_status == "paid"
