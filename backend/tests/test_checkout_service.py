import json
import re
from decimal import Decimal

import pytest

from app.core.exceptions import (
    ConfigurationError,
    GatewayRejectedError,
    GatewayUnavailableError,
    PersistenceError,
    RateLimitExceededError,
    ValidationFailedError,
)
from app.models.order import Order, OrderItem
from app.schemas.checkout import CodOrderRequest, CreateOrderRequest
from app.services import audit_service
from app.services.audit_service import ClientInfo
from app.services.checkout_service import CheckoutService, SagaStep
from app.services.order_store import OrderStore

pytestmark = pytest.mark.anyio

CLIENT = ClientInfo(ip="203.0.113.9", user_agent="pytest", request_id="req-1")


class FailingItemsStore(OrderStore):
    async def create_order_items(self, order_id, items):
        raise PersistenceError("订单明细写入失败")


class FailingItemsAndDeleteStore(FailingItemsStore):
    async def delete_order(self, order_id):
        raise PersistenceError("删除订单失败")


class RejectingLinkStore(OrderStore):
    async def set_gateway_reference(self, order_id, reference):
        return False


class BrokenLinkStore(OrderStore):
    async def set_gateway_reference(self, order_id, reference):
        raise PersistenceError("关联网关订单号失败")


@pytest.fixture
def make_service(db, limiter, audit, gateway, notifier):
    def _make(store_cls=OrderStore, gateway=gateway):
        return CheckoutService(db, limiter, audit, gateway=gateway, notifier=notifier, store=store_cls(db))
    return _make


class TestOnlineCheckout:
    async def test_happy_path(self, make_service, user, gateway, limiter, checkout_payload, session_factory, audit_rows):
        service = make_service()
        result = await service.create_online_order(user.id, CreateOrderRequest(**checkout_payload()), CLIENT)

        assert result.gateway_order_reference == "order_remote_1"
        assert re.fullmatch(r"NW\d{14}[A-Z0-9]{6}", result.order_number)
        assert result.amount_minor_units == 135000
        assert service.step == SagaStep.DONE
        assert limiter.calls == [(str(user.id), "create-order")]
        assert gateway.calls[0]["amount_minor_units"] == 135000
        assert gateway.calls[0]["receipt"] == result.order_number
        assert gateway.calls[0]["local_order_id"] == result.order_id

        async with session_factory() as session:
            store = OrderStore(session)
            order = await store.get_order(result.order_id, user.id)
            items = await store.get_order_items(result.order_id)
        assert (order.status, order.payment_status) == ("pending", "pending")
        assert order.gateway_order_reference == "order_remote_1"
        assert order.subtotal == Decimal("1350.00")
        assert order.total == Decimal("1350.00")
        assert order.shipping_address["postal_code"] == "560001"
        assert [i.total_price for i in items] == [Decimal("900.00"), Decimal("450.00")]

        (event,) = await audit_rows(audit_service.ORDER_CREATED)
        assert event.new_values["item_count"] == 2
        assert event.new_values["order_number"] == result.order_number
        assert event.request_id == "req-1"

    async def test_subtotal_comes_from_line_items(self, make_service, user, checkout_payload, session_factory):
        payload = checkout_payload(amount_minor_units=100000, discount_amount=350, coupon_code="SAVE350")
        result = await make_service().create_online_order(user.id, CreateOrderRequest(**payload))

        assert result.amount_minor_units == 100000
        async with session_factory() as session:
            order = await OrderStore(session).get_order(result.order_id)
        assert (order.subtotal, order.discount_amount, order.total) == (
            Decimal("1350.00"), Decimal("350.00"), Decimal("1000.00")
        )
        assert order.coupon_code == "SAVE350"

    async def test_validation_failure_persists_nothing(self, make_service, user, limiter, gateway, checkout_payload, count_rows):
        payload = checkout_payload()
        payload["cart_items"][0].update(unit_price=100, quantity=2, total_price=500)

        with pytest.raises(ValidationFailedError) as exc_info:
            await make_service().create_online_order(user.id, CreateOrderRequest(**payload))

        assert "第 1 项：小计与 单价×数量 不一致" in exc_info.value.errors
        assert limiter.calls == []
        assert gateway.calls == []
        assert await count_rows(Order) == 0

    async def test_rate_limited(self, make_service, user, limiter, gateway, checkout_payload, count_rows):
        limiter.allowed = False
        with pytest.raises(RateLimitExceededError):
            await make_service().create_online_order(user.id, CreateOrderRequest(**checkout_payload()))
        assert gateway.calls == []
        assert await count_rows(Order) == 0

    async def test_gateway_not_configured(self, make_service, user, gateway, checkout_payload, count_rows):
        gateway.configured = False
        with pytest.raises(ConfigurationError):
            await make_service().create_online_order(user.id, CreateOrderRequest(**checkout_payload()))
        assert await count_rows(Order) == 0

    async def test_item_failure_removes_order(self, make_service, user, gateway, checkout_payload, count_rows):
        service = make_service(FailingItemsStore)
        with pytest.raises(PersistenceError):
            await service.create_online_order(user.id, CreateOrderRequest(**checkout_payload()))

        assert service.step == SagaStep.ROLLED_BACK
        assert gateway.calls == []
        assert await count_rows(Order) == 0

    @pytest.mark.parametrize(
        "error,expected",
        [
            (GatewayRejectedError("amount exceeds maximum", http_status=400), GatewayRejectedError),
            (GatewayUnavailableError("支付网关响应超时"), GatewayUnavailableError),
            (RuntimeError("unexpected"), GatewayUnavailableError),
        ],
    )
    async def test_gateway_failure_removes_order_and_items(
        self, make_service, user, gateway, checkout_payload, count_rows, error, expected
    ):
        gateway.error = error
        service = make_service()
        with pytest.raises(expected):
            await service.create_online_order(user.id, CreateOrderRequest(**checkout_payload()))

        assert len(gateway.calls) == 1
        assert service.step == SagaStep.ROLLED_BACK
        assert await count_rows(Order) == 0
        assert await count_rows(OrderItem) == 0

    @pytest.mark.parametrize("store_cls", [RejectingLinkStore, BrokenLinkStore])
    async def test_link_failure_is_audited_for_reconciliation(
        self, make_service, user, checkout_payload, count_rows, audit_rows, store_cls
    ):
        with pytest.raises(PersistenceError):
            await make_service(store_cls).create_online_order(user.id, CreateOrderRequest(**checkout_payload()))

        assert await count_rows(Order) == 0
        (event,) = await audit_rows(audit_service.ORDER_LINK_FAILED)
        detail = json.loads(event.detail)
        assert detail["gateway_order_reference"] == "order_remote_1"
        assert detail["amount_minor_units"] == 135000
        assert await audit_rows(audit_service.ORDER_CREATED) == []

    async def test_failed_compensation_still_reports_failure(self, make_service, user, checkout_payload, audit_rows):
        with pytest.raises(PersistenceError):
            await make_service(FailingItemsAndDeleteStore).create_online_order(
                user.id, CreateOrderRequest(**checkout_payload()), CLIENT
            )

        (event,) = await audit_rows(audit_service.ORDER_ROLLBACK_FAILED)
        assert json.loads(event.detail)["reason"] == "order_items_failed"


class TestCashOnDelivery:
    async def test_creates_confirmed_order_without_gateway(
        self, make_service, user, limiter, notifier, checkout_payload, session_factory, audit_rows
    ):
        service = make_service(gateway=None)
        result = await service.create_cod_order(user.id, CodOrderRequest(**checkout_payload()), CLIENT)

        assert result.gateway_order_reference is None
        assert limiter.calls == [(str(user.id), "cod-order")]
        async with session_factory() as session:
            order = await OrderStore(session).get_order_by_number(result.order_number, user.id)
        assert (order.status, order.payment_status, order.payment_method) == ("confirmed", "cod_pending", "cod")
        assert order.gateway_order_reference is None

        assert len(await audit_rows(audit_service.COD_ORDER_CREATED)) == 1
        (confirmation,) = notifier.sent
        assert confirmation.order_number == result.order_number
        assert confirmation.customer_email == "asha@example.com"
        assert [line.quantity for line in confirmation.items] == [2, 1]

    async def test_email_failure_does_not_fail_order(self, make_service, user, notifier, checkout_payload, count_rows):
        notifier.fail = True
        result = await make_service(gateway=None).create_cod_order(user.id, CodOrderRequest(**checkout_payload()))
        assert result.order_number
        assert await count_rows(Order) == 1

    async def test_item_failure_removes_order(self, make_service, user, notifier, checkout_payload, count_rows):
        with pytest.raises(PersistenceError):
            await make_service(FailingItemsStore, gateway=None).create_cod_order(
                user.id, CodOrderRequest(**checkout_payload())
            )
        assert await count_rows(Order) == 0
        assert notifier.sent == []
