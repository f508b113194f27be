import pathlib
import sys
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from paydesk.config import Settings
from paydesk.desk import build_desk
from paydesk.domain import Actor, Role
from paydesk.main import create_app
from paydesk.store import store
from paydesk.unique_code import UniqueCodeAllocator

JWT_SECRET = "jwt_test_secret"


def _issue_token(*, secret: str, subject: str, role: str) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "role": role,
        "exp": int((now + timedelta(minutes=30)).timestamp()),
        "iat": int(now.timestamp()),
        "iss": "test-issuer",
        "aud": "test-audience",
    }
    return jwt.encode(payload, secret, algorithm="HS256")


class FixedRandom:
    """Deterministic stand-in for the allocator's RNG."""

    def __init__(self, *values: int):
        self._values = list(values)

    def randint(self, low: int, high: int) -> int:
        value = self._values.pop(0) if len(self._values) > 1 else self._values[0]
        assert low <= value <= high
        return value


class AuthenticatedClient:
    def __init__(self, client: TestClient, *, jwt_secret: str):
        self._client = client
        self._jwt_secret = jwt_secret

    def request(self, method: str, url: str, *, as_user: tuple[str, str] = ("cust_1", "CUSTOMER"), **kwargs):
        headers = dict(kwargs.pop("headers", {}) or {})
        if url.startswith("/api/v1/") and not url.startswith(("/api/v1/internal/", "/api/v1/webhooks/")):
            if "Authorization" not in headers:
                subject, role = as_user
                token = _issue_token(secret=self._jwt_secret, subject=subject, role=role)
                headers["Authorization"] = f"Bearer {token}"
        return self._client.request(method, url, headers=headers, **kwargs)

    def __getattr__(self, name: str):
        return getattr(self._client, name)

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)


@pytest.fixture(autouse=True)
def reset_store(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("JWT_SHARED_SECRET", JWT_SECRET)
    monkeypatch.setenv("JWT_ISSUER", "test-issuer")
    monkeypatch.setenv("JWT_AUDIENCE", "test-audience")
    monkeypatch.setenv("JWT_REQUIRED_CLAIMS", "sub,role,exp")
    monkeypatch.setenv("PAYDESK_DOCUMENT_ROOT", str(tmp_path / "documents"))
    monkeypatch.setenv("GOOGLE_SYNC_SECRET", "sync_test_secret")
    monkeypatch.setenv("PAYDESK_PAYMENT_WEBHOOK_SECRET", "hook_test_secret")
    monkeypatch.delenv("PAYDESK_INTERNAL_TOKEN", raising=False)
    monkeypatch.delenv("GOOGLE_APPS_SCRIPT_URL", raising=False)
    monkeypatch.delenv("PAYDESK_MESSAGING_WEBHOOK_URL", raising=False)
    store.reset()
    yield


@pytest.fixture
def customer() -> Actor:
    return Actor(actor_id="cust_1", role=Role.CUSTOMER)


@pytest.fixture
def agent() -> Actor:
    return Actor(actor_id="agent_1", role=Role.AGENT)


@pytest.fixture
def admin() -> Actor:
    return Actor(actor_id="admin_1", role=Role.ADMIN)


@pytest.fixture
def desk():
    settings = Settings.from_env()
    return build_desk(
        store=store,
        settings=settings,
        allocator=UniqueCodeAllocator(rng=FixedRandom(187)),
    )


@pytest.fixture
def client() -> AuthenticatedClient:
    app = create_app()
    base = TestClient(app)
    return AuthenticatedClient(base, jwt_secret=JWT_SECRET)
