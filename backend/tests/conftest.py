import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app import models  # noqa: F401
from app.core.database import Base
from app.models.audit_log import AuditLog
from app.models.user import User
from app.services.audit_service import AuditLogger
from app.services.payment_gateway import RemoteOrder


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.ops = []

    def incr(self, key):
        self.ops.append(("incr", key))
        return self

    def expire(self, key, seconds):
        self.ops.append(("expire", key, seconds))
        return self

    def execute(self):
        if self.redis.fail:
            raise ConnectionError("redis unavailable")
        results = []
        for op in self.ops:
            if op[0] == "incr":
                self.redis.counters[op[1]] = self.redis.counters.get(op[1], 0) + 1
                results.append(self.redis.counters[op[1]])
            else:
                self.redis.ttls[op[1]] = op[2]
                results.append(True)
        return results


class FakeRedis:
    """只实现限流用到的 pipeline / INCR / EXPIRE"""

    def __init__(self, fail=False):
        self.fail = fail
        self.counters = {}
        self.ttls = {}

    def pipeline(self, transaction=True):
        return FakePipeline(self)


class StubLimiter:
    def __init__(self, allowed=True):
        self.allowed = allowed
        self.calls = []

    def allow(self, identity, endpoint):
        self.calls.append((identity, endpoint))
        return self.allowed


class FakeGateway:
    def __init__(self, error=None, reference="order_remote_1", configured=True):
        self.error = error
        self.reference = reference
        self.configured = configured
        self.key_id = "key_test"
        self.calls = []

    async def create_remote_order(self, amount_minor_units, currency, local_order_id, receipt, notes=None):
        self.calls.append(
            {
                "amount_minor_units": amount_minor_units,
                "currency": currency,
                "local_order_id": local_order_id,
                "receipt": receipt,
                "notes": notes,
            }
        )
        if self.error is not None:
            raise self.error
        return RemoteOrder(reference=self.reference, raw={"id": self.reference})


class FakeNotifier:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    async def send_order_confirmation(self, order):
        if self.fail:
            raise RuntimeError("smtp down")
        self.sent.append(order)
        return True


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'checkout.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def audit(session_factory):
    return AuditLogger(session_factory, enabled=True)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def limiter():
    return StubLimiter()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return FakeNotifier()


async def _create_user(session_factory, username, role="user"):
    async with session_factory() as session:
        user = User(username=username, email=f"{username}@example.com", role=role, is_active=True)
        session.add(user)
        await session.commit()
        return user


@pytest.fixture
async def user(session_factory):
    return await _create_user(session_factory, "asha")


@pytest.fixture
async def other_user(session_factory):
    return await _create_user(session_factory, "ravi")


@pytest.fixture
async def admin(session_factory):
    return await _create_user(session_factory, "ops", role="admin")


@pytest.fixture
def count_rows(session_factory):
    """用新会话统计行数，避免读到业务会话的缓存"""
    async def _count(model, *where):
        async with session_factory() as session:
            stmt = select(func.count()).select_from(model)
            if where:
                stmt = stmt.where(*where)
            return (await session.execute(stmt)).scalar()
    return _count


@pytest.fixture
def audit_rows(session_factory):
    async def _rows(action=None):
        async with session_factory() as session:
            stmt = select(AuditLog).order_by(AuditLog.id)
            if action:
                stmt = stmt.where(AuditLog.action == action)
            return list((await session.execute(stmt)).scalars().all())
    return _rows


@pytest.fixture
def checkout_payload():
    """合法下单请求：小计 1350，应付 135000（最小货币单位）"""
    def _payload(**overrides):
        payload = {
            "amount_minor_units": 135000,
            "currency": "INR",
            "shipping_address": {
                "full_name": "Asha Verma",
                "email": "asha@example.com",
                "phone": "+91 9876543210",
                "address_line1": "12 MG Road",
                "address_line2": "Indiranagar",
                "city": "Bengaluru",
                "state": "Karnataka",
                "postal_code": "560001",
            },
            "cart_items": [
                {
                    "product_id": "3f1c2a9e-5b7d-4e2a-9c1f-0a1b2c3d4e5f",
                    "product_name": "Cold Pressed Groundnut Oil",
                    "product_image": "https://cdn.example.com/oil.jpg",
                    "quantity": 2,
                    "unit_price": 450,
                    "total_price": 900,
                },
                {
                    "product_id": "7a2b3c4d-1e2f-4a5b-8c9d-0e1f2a3b4c5d",
                    "product_name": "Wild Forest Honey",
                    "quantity": 1,
                    "unit_price": 450,
                    "total_price": 450,
                    "is_subscription": True,
                },
            ],
        }
        payload.update(overrides)
        return payload
    return _payload
