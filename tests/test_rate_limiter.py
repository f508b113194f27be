from __future__ import annotations

import threading

import pytest

from paydesk.config import LimitRule
from paydesk.errors import RateLimitedError, ValidationError
from paydesk.rate_limit import RateLimiter, RedisRateLimitStore


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _limiter(clock: FakeClock, **rules: LimitRule) -> RateLimiter:
    return RateLimiter(rules=rules or {"login": LimitRule(max_requests=5, window_s=900)}, clock=clock)


def test_login_scenario_sixth_attempt_is_limited_and_other_identity_unaffected():
    clock = FakeClock()
    limiter = _limiter(clock)
    for _ in range(5):
        limiter.admit("ip:1.1.1.1", "login")
        clock.advance(1)

    with pytest.raises(RateLimitedError) as exc_info:
        limiter.admit("ip:1.1.1.1", "login")
    assert exc_info.value.retry_after_s > 0
    assert exc_info.value.code == "RATE_LIMIT_EXCEEDED"
    assert exc_info.value.http_status == 429

    decision = limiter.check("ip:2.2.2.2", "login")
    assert decision.allowed is True
    assert decision.remaining == 5


def test_check_does_not_consume_budget():
    clock = FakeClock()
    limiter = _limiter(clock)
    for _ in range(10):
        assert limiter.check("u1", "login").remaining == 5
    limiter.record("u1", "login")
    assert limiter.check("u1", "login").remaining == 4


def test_remaining_is_monotone_non_increasing_within_window():
    clock = FakeClock()
    limiter = _limiter(clock)
    seen = []
    for _ in range(7):
        seen.append(limiter.check("u1", "login").remaining)
        limiter.record("u1", "login")
        clock.advance(10)
    assert seen == sorted(seen, reverse=True)
    assert seen[-1] == 0


def test_timestamp_exactly_window_old_is_outside_window():
    clock = FakeClock()
    limiter = _limiter(clock, payment=LimitRule(max_requests=1, window_s=60))
    limiter.admit("u1", "payment")

    clock.advance(59)
    assert limiter.check("u1", "payment").allowed is False

    clock.advance(1)
    decision = limiter.check("u1", "payment")
    assert decision.allowed is True
    assert decision.remaining == 1


def test_reset_at_tracks_oldest_timestamp_and_empty_window_resets_now():
    clock = FakeClock(now=500.0)
    limiter = _limiter(clock, payment=LimitRule(max_requests=3, window_s=60))
    assert limiter.check("u1", "payment").reset_at == 500.0
    limiter.record("u1", "payment")
    clock.advance(5)
    limiter.record("u1", "payment")
    assert limiter.check("u1", "payment").reset_at == 560.0


def test_retry_after_counts_down_to_window_expiry():
    clock = FakeClock()
    limiter = _limiter(clock, payment=LimitRule(max_requests=1, window_s=60))
    limiter.admit("u1", "payment")
    clock.advance(20)
    with pytest.raises(RateLimitedError) as exc_info:
        limiter.admit("u1", "payment")
    assert exc_info.value.retry_after_s == 40


def test_block_overrides_window_until_expiry():
    clock = FakeClock()
    limiter = _limiter(clock)
    until = limiter.block("u1", duration_s=120)

    decision = limiter.check("u1", "login")
    assert decision.allowed is False
    assert decision.remaining == 0
    assert decision.reset_at == until
    with pytest.raises(RateLimitedError) as exc_info:
        limiter.admit("u1", "login")
    assert exc_info.value.code == "CLIENT_BLOCKED"

    clock.advance(120)
    assert limiter.is_blocked("u1") is False
    assert limiter.check("u1", "login").allowed is True


def test_unblock_restores_access():
    limiter = _limiter(FakeClock())
    limiter.block("u1", duration_s=3600)
    limiter.unblock("u1")
    assert limiter.check("u1", "login").allowed is True


def test_limit_classes_are_isolated_per_identity():
    clock = FakeClock()
    limiter = _limiter(
        clock,
        login=LimitRule(max_requests=1, window_s=60),
        api_general=LimitRule(max_requests=2, window_s=60),
    )
    limiter.admit("u1", "login")
    assert limiter.check("u1", "login").allowed is False
    assert limiter.check("u1", "api_general").remaining == 2


def test_sweep_drops_expired_windows():
    clock = FakeClock()
    limiter = _limiter(clock)
    limiter.record("u1", "login")
    limiter.record("u2", "login")
    clock.advance(901)
    assert limiter.sweep() == 2
    assert limiter.check("u1", "login").remaining == 5


def test_unknown_class_and_empty_identity_are_rejected():
    limiter = _limiter(FakeClock())
    with pytest.raises(ValidationError):
        limiter.check("u1", "no_such_class")
    with pytest.raises(ValidationError):
        limiter.admit("", "login")


def test_concurrent_admits_never_exceed_budget():
    limiter = RateLimiter(rules={"payment": LimitRule(max_requests=10, window_s=60)})
    admitted: list[int] = []
    denied: list[int] = []
    lock = threading.Lock()

    def _worker(i: int) -> None:
        try:
            limiter.admit("u1", "payment")
            with lock:
                admitted.append(i)
        except RateLimitedError:
            with lock:
                denied.append(i)

    threads = [threading.Thread(target=_worker, args=(i,)) for i in range(40)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(admitted) == 10
    assert len(denied) == 30


def test_redis_store_uses_sorted_set_per_key():
    class FakeLock:
        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            return False

    class FakeRedis:
        def __init__(self):
            self.zsets: dict[str, dict[str, float]] = {}
            self.values: dict[str, str] = {}

        def lock(self, name, timeout=None, blocking_timeout=None):
            return FakeLock()

        def zremrangebyscore(self, key, low, high):
            entries = self.zsets.get(key, {})
            for member, score in list(entries.items()):
                if score <= float(high):
                    entries.pop(member)
            return 0

        def zrange(self, key, start, end, withscores=False):
            items = sorted(self.zsets.get(key, {}).items(), key=lambda x: x[1])
            return items if withscores else [m for m, _ in items]

        def zadd(self, key, mapping):
            self.zsets.setdefault(key, {}).update(mapping)

        def expire(self, key, seconds):
            return True

        def get(self, key):
            return self.values.get(key)

        def set(self, key, value, ex=None, px=None):
            self.values[key] = value

        def delete(self, *keys):
            for key in keys:
                self.values.pop(key, None)
                self.zsets.pop(key, None)

        def scan_iter(self, match=None):
            prefix = (match or "*").rstrip("*")
            return [k for k in list(self.zsets) + list(self.values) if k.startswith(prefix)]

    fake = FakeRedis()
    clock = FakeClock()
    limiter = RateLimiter(
        rules={"login": LimitRule(max_requests=2, window_s=60)},
        store=RedisRateLimitStore(client=fake),
        clock=clock,
    )
    limiter.admit("u1", "login")
    limiter.admit("u1", "login")
    with pytest.raises(RateLimitedError):
        limiter.admit("u1", "login")
    assert any(key.endswith("login:u1") for key in fake.zsets)

    clock.advance(60)
    assert limiter.check("u1", "login").remaining == 2
