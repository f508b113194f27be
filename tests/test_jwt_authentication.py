from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
from datetime import UTC, datetime, timedelta

from fastapi.testclient import TestClient

from paydesk.main import create_app

SHARED_KEY = "jwt_test_secret"


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _build_hs256_token(*, secret: str, claims: dict[str, object], alg: str = "HS256") -> str:
    header = {"alg": alg, "typ": "JWT"}
    header_raw = _b64url(json.dumps(header, sort_keys=True, separators=(",", ":")).encode("utf-8"))
    payload_raw = _b64url(json.dumps(claims, sort_keys=True, separators=(",", ":")).encode("utf-8"))
    signing_input = f"{header_raw}.{payload_raw}".encode("ascii")
    signature = hmac.new(secret.encode("utf-8"), signing_input, hashlib.sha256).digest()
    return f"{header_raw}.{payload_raw}.{_b64url(signature)}"


def _claims(*, role: str = "CUSTOMER", ttl_minutes: int = 15, **extra: object) -> dict[str, object]:
    now = datetime.now(UTC)
    claims: dict[str, object] = {
        "iss": "test-issuer",
        "aud": "test-audience",
        "sub": "cust_1",
        "role": role,
        "exp": int((now + timedelta(minutes=ttl_minutes)).timestamp()),
        "iat": int(now.timestamp()),
    }
    claims.update(extra)
    return claims


def _get_cases(client: TestClient, token: str | None):
    headers = {} if token is None else {"Authorization": f"Bearer {token}"}
    return client.get("/api/v1/cases", headers=headers)


def test_jwt_required_rejects_missing_authorization():
    resp = _get_cases(TestClient(create_app()), None)
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert resp.json()["error"]["class"] == "security_sensitive"


def test_jwt_accepts_valid_token_and_scopes_actor():
    client = TestClient(create_app())
    resp = _get_cases(client, _build_hs256_token(secret=SHARED_KEY, claims=_claims()))
    assert resp.status_code == 200
    assert resp.json()["data"] == {"items": [], "total": 0}


def test_jwt_rejects_expired_token():
    token = _build_hs256_token(secret=SHARED_KEY, claims=_claims(ttl_minutes=-1))
    resp = _get_cases(TestClient(create_app()), token)
    assert resp.status_code == 401


def test_jwt_rejects_wrong_signature():
    token = _build_hs256_token(secret="someone_else", claims=_claims())
    resp = _get_cases(TestClient(create_app()), token)
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "AUTH_UNAUTHORIZED"


def test_jwt_rejects_missing_role_and_unknown_role():
    claims = _claims()
    claims.pop("role")
    client = TestClient(create_app())
    assert _get_cases(client, _build_hs256_token(secret=SHARED_KEY, claims=claims)).status_code == 401
    assert _get_cases(client, _build_hs256_token(secret=SHARED_KEY, claims=_claims(role="ROOT"))).status_code == 401


def test_jwt_rejects_wrong_audience_and_algorithm():
    client = TestClient(create_app())
    wrong_aud = _build_hs256_token(secret=SHARED_KEY, claims=_claims(aud="other-api"))
    assert _get_cases(client, wrong_aud).status_code == 401
    wrong_alg = _build_hs256_token(secret=SHARED_KEY, claims=_claims(), alg="none")
    assert _get_cases(client, wrong_alg).status_code == 401


def test_health_endpoints_do_not_require_token():
    client = TestClient(create_app())
    assert client.get("/healthz").status_code == 200
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    assert resp.json()["data"]["store_backend"] == "memory"


def test_repeated_auth_failures_consume_login_budget(caplog):
    client = TestClient(create_app())
    caplog.set_level(logging.WARNING, logger="paydesk.security")
    codes = [_get_cases(client, "not-a-token").status_code for _ in range(6)]
    assert codes == [401, 401, 401, 401, 401, 429]

    resp = _get_cases(client, "not-a-token")
    assert resp.status_code == 429
    assert int(resp.headers["Retry-After"]) >= 1
    assert resp.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"
    assert any("security_blocked" in r.getMessage() for r in caplog.records)
    assert all("not-a-token" not in r.getMessage() for r in caplog.records)
