import json
from decimal import Decimal

import pytest
from sqlalchemy import select

from app.models.audit_log import AuditLog
from app.services import audit_service
from app.services.audit_service import AuditLogger, ClientInfo

pytestmark = pytest.mark.anyio


class TestAuditLogger:
    async def test_record_persists_event(self, audit, audit_rows, user):
        await audit.record(
            audit_service.ORDER_CREATED,
            user_id=user.id,
            resource_type="order",
            resource_id="order-1",
            new_values={"amount": Decimal("1350.00"), "item_count": 2},
            detail={"gateway_order_reference": "order_remote_1"},
            client=ClientInfo(ip="203.0.113.9", user_agent="pytest", request_id="req-1"),
        )
        (row,) = await audit_rows(audit_service.ORDER_CREATED)
        assert row.user_id == user.id
        assert row.resource_id == "order-1"
        assert row.new_values == {"amount": "1350.00", "item_count": 2}
        assert json.loads(row.detail) == {"gateway_order_reference": "order_remote_1"}
        assert row.ip == "203.0.113.9"
        assert row.request_id == "req-1"

    async def test_system_events_have_no_actor(self, audit, audit_rows):
        await audit.record(audit_service.SUBSCRIPTION_RENEWED, resource_type="subscription", resource_id="s-1")
        (row,) = await audit_rows()
        assert row.user_id is None

    async def test_client_headers_are_clipped_to_column_width(self, audit, audit_rows):
        await audit.record(
            audit_service.PAYMENT_VERIFICATION_FAILED,
            resource_id="order-1",
            client=ClientInfo(ip="203.0.113.9, " * 20, user_agent="u" * 400, request_id="r" * 300),
        )
        (row,) = await audit_rows(audit_service.PAYMENT_VERIFICATION_FAILED)
        assert len(row.ip) == 64
        assert row.user_agent == "u" * 255
        assert row.request_id == "r" * 64

    async def test_disabled_logger_writes_nothing(self, session_factory, audit_rows):
        await AuditLogger(session_factory, enabled=False).record(audit_service.ORDER_CREATED)
        assert await audit_rows() == []

    async def test_storage_failure_is_swallowed(self):
        def broken_factory():
            raise RuntimeError("database unavailable")

        await AuditLogger(broken_factory, enabled=True).record(audit_service.PAYMENT_VERIFIED)

    async def test_rows_cannot_be_updated(self, audit, session_factory):
        await audit.record(audit_service.PAYMENT_VERIFIED, resource_id="order-1")
        async with session_factory() as session:
            row = (await session.execute(select(AuditLog))).scalar_one()
            row.action = "TAMPERED"
            with pytest.raises(RuntimeError):
                await session.commit()
