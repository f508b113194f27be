from __future__ import annotations

import logging
import math
import time
import uuid
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from paydesk.config import DEFAULT_LIMIT_RULES, LimitRule, Settings
from paydesk.errors import RateLimitedError, ValidationError
from paydesk.locks import KeyedLocks

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("paydesk.security")


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: float
    blocked: bool = False

    def retry_after_s(self, now: float) -> int:
        return max(1, math.ceil(self.reset_at - now))

    def headers(self, *, limit: int) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }


class RateLimitStore:
    """Window and block storage; every method is scoped to a single key."""

    backend_name = "base"

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        raise NotImplementedError
        yield

    def load_window(self, key: str, *, cutoff: float) -> list[float]:
        """Drop timestamps at or before ``cutoff`` and return the survivors, oldest first."""
        raise NotImplementedError

    def append(self, key: str, *, ts: float, window_s: float) -> None:
        raise NotImplementedError

    def get_block(self, identity: str) -> float | None:
        raise NotImplementedError

    def set_block(self, identity: str, *, until: float) -> None:
        raise NotImplementedError

    def clear_block(self, identity: str) -> None:
        raise NotImplementedError

    def sweep(self, *, now: float, windows: Mapping[str, float]) -> int:
        raise NotImplementedError

    def reset(self) -> None:
        raise NotImplementedError


class InMemoryRateLimitStore(RateLimitStore):
    backend_name = "memory"

    def __init__(self) -> None:
        self._locks = KeyedLocks()
        self._windows: dict[str, list[float]] = {}
        self._blocks: dict[str, float] = {}

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        with self._locks.hold(key):
            yield

    def load_window(self, key: str, *, cutoff: float) -> list[float]:
        timestamps = self._windows.get(key)
        if timestamps is None:
            return []
        survivors = [ts for ts in timestamps if ts > cutoff]
        if survivors:
            self._windows[key] = survivors
        else:
            self._windows.pop(key, None)
        return list(survivors)

    def append(self, key: str, *, ts: float, window_s: float) -> None:
        self._windows.setdefault(key, []).append(ts)

    def get_block(self, identity: str) -> float | None:
        return self._blocks.get(identity)

    def set_block(self, identity: str, *, until: float) -> None:
        self._blocks[identity] = until

    def clear_block(self, identity: str) -> None:
        self._blocks.pop(identity, None)

    def sweep(self, *, now: float, windows: Mapping[str, float]) -> int:
        removed = 0
        for key in list(self._windows.keys()):
            limit_class = key.split(":", maxsplit=1)[0]
            window_s = windows.get(limit_class)
            if window_s is None:
                continue
            with self.lock(key):
                if not self.load_window(key, cutoff=now - window_s):
                    removed += 1
                    self._locks.discard(key)
        for identity, until in list(self._blocks.items()):
            if until <= now:
                self._blocks.pop(identity, None)
        return removed

    def reset(self) -> None:
        self._windows.clear()
        self._blocks.clear()
        self._locks.clear()


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for PAYDESK_RATE_LIMIT_BACKEND=redis; install redis>=5") from exc
    return redis


class RedisRateLimitStore(RateLimitStore):
    """Shared window store: one sorted set per key, scored by request timestamp."""

    backend_name = "redis"

    def __init__(self, *, dsn: str = "", namespace: str = "paydesk", client: Any | None = None) -> None:
        if client is None:
            if not dsn.strip():
                raise ValueError("REDIS_DSN must be provided for redis rate-limit backend")
            redis = _import_redis()
            client = redis.Redis.from_url(dsn.strip(), decode_responses=True)
        self._client = client
        self._namespace = namespace.strip() or "paydesk"

    def _window_key(self, key: str) -> str:
        return f"{self._namespace}:ratelimit:{key}"

    def _block_key(self, identity: str) -> str:
        return f"{self._namespace}:ratelimit-block:{identity}"

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        with self._client.lock(f"{self._namespace}:ratelimit-lock:{key}", timeout=5, blocking_timeout=5):
            yield

    def load_window(self, key: str, *, cutoff: float) -> list[float]:
        redis_key = self._window_key(key)
        self._client.zremrangebyscore(redis_key, "-inf", cutoff)
        rows = self._client.zrange(redis_key, 0, -1, withscores=True)
        return [float(score) for _, score in rows]

    def append(self, key: str, *, ts: float, window_s: float) -> None:
        redis_key = self._window_key(key)
        self._client.zadd(redis_key, {f"{ts:.6f}:{uuid.uuid4().hex[:8]}": ts})
        self._client.expire(redis_key, max(1, math.ceil(window_s)))

    def get_block(self, identity: str) -> float | None:
        raw = self._client.get(self._block_key(identity))
        if raw is None:
            return None
        try:
            return float(raw)
        except (TypeError, ValueError):
            return None

    def set_block(self, identity: str, *, until: float) -> None:
        ttl = max(1, math.ceil(until - time.time()))
        self._client.set(self._block_key(identity), repr(until), ex=ttl)

    def clear_block(self, identity: str) -> None:
        self._client.delete(self._block_key(identity))

    def sweep(self, *, now: float, windows: Mapping[str, float]) -> int:
        # Window keys carry a TTL; redis expires idle windows and blocks on its own.
        return 0

    def reset(self) -> None:
        for pattern in (f"{self._namespace}:ratelimit:*", f"{self._namespace}:ratelimit-block:*"):
            for key in self._client.scan_iter(match=pattern):
                self._client.delete(key)


class RateLimiter:
    """Sliding-window admission control per (identity, limit class)."""

    def __init__(
        self,
        *,
        rules: Mapping[str, LimitRule] | None = None,
        store: RateLimitStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._rules = dict(DEFAULT_LIMIT_RULES if rules is None else rules)
        self._store = store or InMemoryRateLimitStore()
        self._clock = clock

    @property
    def store(self) -> RateLimitStore:
        return self._store

    def rule(self, limit_class: str) -> LimitRule:
        rule = self._rules.get(limit_class)
        if rule is None:
            raise ValidationError(f"unknown limit class: {limit_class}", code="RATE_LIMIT_CLASS_UNKNOWN")
        return rule

    @staticmethod
    def _key(identity: str, limit_class: str) -> str:
        return f"{limit_class}:{identity}"

    def _blocked_until(self, identity: str, now: float) -> float | None:
        until = self._store.get_block(identity)
        if until is None:
            return None
        if until <= now:
            self._store.clear_block(identity)
            return None
        return until

    def _decide(self, identity: str, limit_class: str, now: float) -> RateLimitDecision:
        rule = self.rule(limit_class)
        blocked_until = self._blocked_until(identity, now)
        if blocked_until is not None:
            return RateLimitDecision(allowed=False, remaining=0, reset_at=blocked_until, blocked=True)
        timestamps = self._store.load_window(self._key(identity, limit_class), cutoff=now - rule.window_s)
        count = len(timestamps)
        reset_at = timestamps[0] + rule.window_s if timestamps else now
        return RateLimitDecision(
            allowed=count < rule.max_requests,
            remaining=max(0, rule.max_requests - count),
            reset_at=reset_at,
        )

    def check(self, identity: str, limit_class: str) -> RateLimitDecision:
        if not identity:
            raise ValidationError("rate limit identity must not be empty")
        key = self._key(identity, limit_class)
        with self._store.lock(key):
            return self._decide(identity, limit_class, self._clock())

    def record(self, identity: str, limit_class: str) -> None:
        rule = self.rule(limit_class)
        key = self._key(identity, limit_class)
        with self._store.lock(key):
            self._store.append(key, ts=self._clock(), window_s=rule.window_s)

    def admit(self, identity: str, limit_class: str) -> RateLimitDecision:
        """Check and record one request atomically; raises RateLimitedError when denied."""
        if not identity:
            raise ValidationError("rate limit identity must not be empty")
        rule = self.rule(limit_class)
        key = self._key(identity, limit_class)
        with self._store.lock(key):
            now = self._clock()
            decision = self._decide(identity, limit_class, now)
            if not decision.allowed:
                retry_after_s = decision.retry_after_s(now)
                security_logger.warning(
                    "rate_limited identity=%s limit_class=%s blocked=%s retry_after_s=%s",
                    identity,
                    limit_class,
                    decision.blocked,
                    retry_after_s,
                )
                raise RateLimitedError(
                    "too many requests, please try again later",
                    retry_after_s=retry_after_s,
                    code="CLIENT_BLOCKED" if decision.blocked else "RATE_LIMIT_EXCEEDED",
                )
            self._store.append(key, ts=now, window_s=rule.window_s)
        return RateLimitDecision(
            allowed=True,
            remaining=max(0, decision.remaining - 1),
            reset_at=decision.reset_at if decision.remaining < rule.max_requests else now + rule.window_s,
        )

    def block(self, identity: str, *, duration_s: float) -> float:
        if duration_s <= 0:
            raise ValidationError("block duration must be positive")
        until = self._clock() + duration_s
        self._store.set_block(identity, until=until)
        security_logger.warning("client_blocked identity=%s duration_s=%s", identity, duration_s)
        return until

    def unblock(self, identity: str) -> None:
        self._store.clear_block(identity)

    def is_blocked(self, identity: str) -> bool:
        return self._blocked_until(identity, self._clock()) is not None

    def sweep(self) -> int:
        removed = self._store.sweep(
            now=self._clock(),
            windows={name: rule.window_s for name, rule in self._rules.items()},
        )
        if removed:
            logger.info("rate_limit_sweep removed_windows=%s", removed)
        return removed

    def reset(self) -> None:
        self._store.reset()


def create_rate_limiter(settings: Settings, *, clock: Callable[[], float] = time.time) -> RateLimiter:
    if settings.rate_limit_backend == "redis":
        store: RateLimitStore = RedisRateLimitStore(dsn=settings.redis_dsn)
    else:
        store = InMemoryRateLimitStore()
    return RateLimiter(rules=settings.limit_rules, store=store, clock=clock)
