from __future__ import annotations

import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from paydesk.config import Settings
from paydesk.desk import Desk, build_desk
from paydesk.errors import ApiError, RateLimitedError, UnauthorizedError
from paydesk.rate_limit import RateLimiter, create_rate_limiter
from paydesk.routes import cases, internal, payments
from paydesk.routes._deps import error_response, request_id_from_request, trace_id_from_request
from paydesk.schemas import success_envelope
from paydesk.security import JwtSecurityConfig, parse_and_validate_bearer_token, redact_sensitive
from paydesk.store import store

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("paydesk.security")

_UNAUTHENTICATED_PREFIXES = ("/api/v1/internal/", "/api/v1/webhooks/")
_UNLIMITED_PATHS = {"/healthz", "/api/v1/health"}
_SECURITY_ERROR_CODES = {
    "AUTH_UNAUTHORIZED",
    "AUTH_FORBIDDEN",
    "FORBIDDEN",
    "SYNC_SECRET_INVALID",
    "WEBHOOK_SECRET_INVALID",
}


def limit_class_for(method: str, path: str) -> str:
    if path.startswith("/api/v1/payments") or path.startswith("/api/v1/webhooks/"):
        return "payment"
    if method == "POST" and path.rstrip("/") == "/api/v1/cases":
        return "case_submit"
    return "api_general"


def _client_identity(request: Request) -> str:
    actor = getattr(request.state, "actor", None)
    if actor is not None:
        return f"user:{actor.actor_id}"
    host = request.client.host if request.client else "unknown"
    return f"ip:{host}"


def _api_error_response(request: Request, exc: ApiError):
    response = error_response(
        request,
        code=exc.code,
        message=exc.message,
        error_class=exc.error_class,
        retryable=exc.retryable,
        status_code=exc.http_status,
    )
    if isinstance(exc, RateLimitedError):
        response.headers["Retry-After"] = str(exc.retry_after_s)
    response.headers["x-trace-id"] = trace_id_from_request(request)
    response.headers["x-request-id"] = request_id_from_request(request)
    return response


def create_app(
    *,
    settings: Settings | None = None,
    desk: Desk | None = None,
    rate_limiter: RateLimiter | None = None,
) -> FastAPI:
    cfg = settings or Settings.from_env()
    app = FastAPI(title="Paydesk API", version="0.1.0")
    security_cfg = JwtSecurityConfig.from_env()
    app.state.settings = cfg
    app.state.security_cfg = security_cfg
    app.state.desk = desk or build_desk(store=store, settings=cfg)
    app.state.rate_limiter = rate_limiter or create_rate_limiter(cfg)
    if cfg.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cfg.cors_allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    def _log_security_event(request: Request, *, code: str, detail: str) -> None:
        headers_obj = dict(request.headers.items())
        headers_payload = redact_sensitive(headers_obj) if security_cfg.log_redaction_enabled else headers_obj
        security_logger.warning(
            "security_blocked code=%s path=%s trace_id=%s detail=%s headers=%s",
            code,
            request.url.path,
            trace_id_from_request(request),
            detail,
            headers_payload,
        )

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        request.state.actor = None
        limiter: RateLimiter = request.app.state.rate_limiter
        path = request.url.path
        try:
            needs_auth = (
                path.startswith("/api/v1/")
                and path not in _UNLIMITED_PATHS
                and not path.startswith(_UNAUTHENTICATED_PREFIXES)
            )
            if needs_auth:
                try:
                    auth_ctx = parse_and_validate_bearer_token(
                        authorization=request.headers.get("Authorization"),
                        cfg=security_cfg,
                    )
                except UnauthorizedError as exc:
                    # Failed credentials draw from the login budget of the caller's address.
                    if cfg.rate_limit_enabled:
                        limiter.admit(_client_identity(request), "login")
                    _log_security_event(request, code=exc.code, detail=exc.message)
                    raise
                request.state.actor = auth_ctx.actor
            rate_headers: dict[str, str] = {}
            if cfg.rate_limit_enabled and path.startswith("/api/") and path not in _UNLIMITED_PATHS:
                limit_class = limit_class_for(request.method, path)
                decision = limiter.admit(_client_identity(request), limit_class)
                rate_headers = decision.headers(limit=limiter.rule(limit_class).max_requests)
            response = await call_next(request)
            for key, value in rate_headers.items():
                response.headers[key] = value
            response.headers["x-trace-id"] = trace_id_from_request(request)
            response.headers["x-request-id"] = request_id_from_request(request)
            return response
        except ApiError as exc:
            return _api_error_response(request, exc)

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.code in _SECURITY_ERROR_CODES:
            _log_security_event(request, code=exc.code, detail=exc.message)
        return _api_error_response(request, exc)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="not_found",
                retryable=False,
                status_code=404,
            )
        return error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.exception("unhandled error path=%s trace_id=%s", request.url.path, trace_id_from_request(request))
        return error_response(
            request,
            code="INTERNAL_ERROR",
            message="internal server error",
            error_class="internal",
            retryable=True,
            status_code=500,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        return success_envelope(
            {"status": "ok", "store_backend": request.app.state.desk.store.backend_name},
            trace_id_from_request(request),
        )

    app.include_router(cases.router)
    app.include_router(payments.router)
    app.include_router(internal.router)
    return app


app = create_app()
