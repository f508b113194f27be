from __future__ import annotations

import uuid

from fastapi import Request
from fastapi.responses import JSONResponse

from paydesk.desk import Desk
from paydesk.domain import Actor
from paydesk.errors import ForbiddenError, UnauthorizedError
from paydesk.schemas import error_envelope
from paydesk.security import secrets_match


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    return f"req_{uuid.uuid4().hex[:12]}"


def actor_from_request(request: Request) -> Actor:
    actor = getattr(request.state, "actor", None)
    if actor is None:
        raise UnauthorizedError("authentication required")
    return actor


def desk_from_request(request: Request) -> Desk:
    return request.app.state.desk


def require_internal_access(request: Request, x_internal_debug: str | None) -> None:
    expected = request.app.state.security_cfg.internal_debug_token or "true"
    if not secrets_match(expected, x_internal_debug):
        raise ForbiddenError("internal endpoint forbidden", code="AUTH_FORBIDDEN")


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
        ),
    )
