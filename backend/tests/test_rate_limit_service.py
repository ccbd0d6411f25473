from types import SimpleNamespace

from app.services import rate_limit_service
from app.services.rate_limit_service import RATE_LIMITS, RateLimiter, RateLimitRule


class TestRateLimiter:
    def test_allows_until_budget_is_spent(self, fake_redis):
        limiter = RateLimiter(client=fake_redis, enabled=True)
        results = [limiter.allow("7", "create-order") for _ in range(11)]
        assert results == [True] * 10 + [False]

    def test_counters_are_per_identity_and_endpoint(self, fake_redis):
        limiter = RateLimiter(client=fake_redis, rules={"default": RateLimitRule(1, 60)}, enabled=True)
        assert limiter.allow("7", "create-order")
        assert not limiter.allow("7", "create-order")
        assert limiter.allow("8", "create-order")
        assert limiter.allow("7", "verify-payment")

    def test_unknown_endpoint_uses_default_rule(self):
        limiter = RateLimiter(client=None, enabled=True)
        assert limiter.rule_for("list-orders") == RATE_LIMITS["default"]
        assert limiter.rule_for("verify-payment") == RateLimitRule(20, 60)

    def test_key_expires_after_window(self, fake_redis):
        limiter = RateLimiter(client=fake_redis, enabled=True)
        limiter.allow("7", "create-order")
        (key, ttl), = fake_redis.ttls.items()
        assert key.startswith("rate:create-order:user:7:win:60:")
        assert ttl == 120

    def test_budget_resets_at_fixed_window_boundary(self, fake_redis, monkeypatch):
        limiter = RateLimiter(client=fake_redis, rules={"default": RateLimitRule(1, 60)}, enabled=True)
        monkeypatch.setattr(rate_limit_service, "time", SimpleNamespace(time=lambda: 119.0))
        assert limiter.allow("7", "create-order")
        assert not limiter.allow("7", "create-order")

        monkeypatch.setattr(rate_limit_service, "time", SimpleNamespace(time=lambda: 120.0))
        assert limiter.allow("7", "create-order")

    def test_window_key(self):
        assert RateLimiter.window_key("7", "create-order", 60, now=125) == "rate:create-order:user:7:win:60:2"

    def test_fails_open_when_store_is_down(self, fake_redis):
        fake_redis.fail = True
        limiter = RateLimiter(client=fake_redis, enabled=True)
        assert all(limiter.allow("7", "create-order") for _ in range(20))

    def test_disabled_limiter_skips_counting(self, fake_redis):
        limiter = RateLimiter(client=fake_redis, enabled=False)
        assert limiter.allow("7", "create-order")
        assert fake_redis.counters == {}
