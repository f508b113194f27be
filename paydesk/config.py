from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from paydesk.domain import CaseKind


def _split_csv(raw: str) -> list[str]:
    return [x.strip() for x in raw.split(",") if x.strip()]


def _env_bool(env: Mapping[str, str], name: str, *, default: bool) -> bool:
    raw = env.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


@dataclass(frozen=True)
class LimitRule:
    max_requests: int
    window_s: float


# Defaults carried over from the production limits of the ticket desk.
DEFAULT_LIMIT_RULES: dict[str, LimitRule] = {
    "login": LimitRule(max_requests=5, window_s=15 * 60),
    "api_general": LimitRule(max_requests=100, window_s=15 * 60),
    "payment": LimitRule(max_requests=10, window_s=60),
    "file_upload": LimitRule(max_requests=20, window_s=60),
    "case_submit": LimitRule(max_requests=5, window_s=60 * 60),
}


def parse_limit_rule(raw: str) -> LimitRule | None:
    """Parse ``"<max_requests>/<window_seconds>"``; returns None for malformed input."""
    parts = raw.strip().split("/")
    if len(parts) != 2:
        return None
    try:
        max_requests = int(parts[0])
        window_s = float(parts[1])
    except ValueError:
        return None
    if max_requests < 1 or window_s <= 0:
        return None
    return LimitRule(max_requests=max_requests, window_s=window_s)


def limit_rules_from_env(env: Mapping[str, str]) -> dict[str, LimitRule]:
    rules = dict(DEFAULT_LIMIT_RULES)
    prefix = "PAYDESK_RATE_LIMIT_"
    for key, value in env.items():
        if not key.startswith(prefix) or key in {"PAYDESK_RATE_LIMIT_BACKEND", "PAYDESK_RATE_LIMIT_ENABLED"}:
            continue
        rule = parse_limit_rule(value)
        if rule is None:
            continue
        rules[key[len(prefix) :].lower()] = rule
    return rules


@dataclass(frozen=True)
class Settings:
    store_backend: str = "memory"
    postgres_dsn: str = ""
    rate_limit_enabled: bool = True
    rate_limit_backend: str = "memory"
    redis_dsn: str = ""
    limit_rules: dict[str, LimitRule] = field(default_factory=lambda: dict(DEFAULT_LIMIT_RULES))
    abuse_block_seconds: int = 60 * 60
    currency: str = "IDR"
    base_prices: dict[CaseKind, int] = field(
        default_factory=lambda: {CaseKind.TICKET: 49500, CaseKind.SALE: 50000}
    )
    draft_max_age_hours: int = 24
    document_storage_root: str = ".local/documents"
    apps_script_url: str = ""
    sync_secret: str = ""
    messaging_webhook_url: str = ""
    payment_webhook_secret: str = ""
    collaborator_timeout_s: int = 10
    cors_allow_origins: list[str] = field(default_factory=list)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            store_backend=env.get("PAYDESK_STORE_BACKEND", "memory").strip().lower() or "memory",
            postgres_dsn=env.get("POSTGRES_DSN", "").strip(),
            rate_limit_enabled=_env_bool(env, "PAYDESK_RATE_LIMIT_ENABLED", default=True),
            rate_limit_backend=env.get("PAYDESK_RATE_LIMIT_BACKEND", "memory").strip().lower() or "memory",
            redis_dsn=env.get("REDIS_DSN", "").strip(),
            limit_rules=limit_rules_from_env(env),
            abuse_block_seconds=_env_int(env, "PAYDESK_ABUSE_BLOCK_SECONDS", default=60 * 60, minimum=1),
            currency=env.get("PAYDESK_CURRENCY", "IDR").strip() or "IDR",
            base_prices={
                CaseKind.TICKET: _env_int(env, "PAYDESK_PRICE_TICKET", default=49500, minimum=0),
                CaseKind.SALE: _env_int(env, "PAYDESK_PRICE_SALE", default=50000, minimum=0),
            },
            draft_max_age_hours=_env_int(env, "PAYDESK_DRAFT_MAX_AGE_HOURS", default=24, minimum=1),
            document_storage_root=env.get("PAYDESK_DOCUMENT_ROOT", ".local/documents").strip()
            or ".local/documents",
            apps_script_url=env.get("GOOGLE_APPS_SCRIPT_URL", "").strip(),
            sync_secret=env.get("GOOGLE_SYNC_SECRET", "").strip(),
            messaging_webhook_url=env.get("PAYDESK_MESSAGING_WEBHOOK_URL", "").strip(),
            payment_webhook_secret=env.get("PAYDESK_PAYMENT_WEBHOOK_SECRET", "").strip(),
            collaborator_timeout_s=_env_int(env, "PAYDESK_COLLABORATOR_TIMEOUT_S", default=10, minimum=1),
            cors_allow_origins=_split_csv(
                env.get("CORS_ALLOW_ORIGINS", "http://127.0.0.1:3000,http://localhost:3000")
            ),
        )
