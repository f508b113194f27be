from __future__ import annotations

import logging
from datetime import timedelta

from fastapi import APIRouter, Header, Query, Request

from paydesk.errors import ForbiddenError
from paydesk.retention import run_retention_sweep
from paydesk.routes._deps import desk_from_request, require_internal_access, trace_id_from_request
from paydesk.schemas import RetentionSweepRequest, SheetSyncRequest, case_view, success_envelope
from paydesk.security import secrets_match

router = APIRouter(prefix="/api/v1/internal", tags=["internal"])

security_logger = logging.getLogger("paydesk.security")


# ---------------------------------------------------------------------------
# Outbox
# ---------------------------------------------------------------------------


@router.get("/outbox/events")
def internal_list_outbox_events(
    request: Request,
    status: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_access(request, x_internal_debug)
    items = desk_from_request(request).store.list_outbox_events(status=status, limit=limit)
    return success_envelope(
        {"items": items, "total": len(items)},
        trace_id_from_request(request),
    )


@router.post("/outbox/events/{event_id}/publish")
def internal_publish_outbox_event(
    event_id: str,
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_access(request, x_internal_debug)
    event = desk_from_request(request).relay.mark_published(event_id)
    return success_envelope(event, trace_id_from_request(request))


@router.post("/outbox/relay")
def internal_relay_outbox_events(
    request: Request,
    limit: int = Query(default=100, ge=1, le=1000),
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_access(request, x_internal_debug)
    data = desk_from_request(request).relay.relay(limit=limit)
    return success_envelope(data, trace_id_from_request(request))


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


@router.post("/retention/sweep")
def internal_retention_sweep(
    request: Request,
    payload: RetentionSweepRequest | None = None,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_access(request, x_internal_debug)
    desk = desk_from_request(request)
    if payload is not None and payload.max_age_hours is not None:
        data = run_retention_sweep(
            store=desk.store,
            lifecycle=desk.lifecycle,
            now=desk.clock(),
            max_age=timedelta(hours=payload.max_age_hours),
        )
    else:
        data = desk.sweep_stale_drafts()
    return success_envelope(data, trace_id_from_request(request))


@router.get("/audit/verify")
def internal_verify_audit(
    request: Request,
    subject_id: str | None = Query(default=None),
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_access(request, x_internal_debug)
    data = desk_from_request(request).audit.verify_integrity(subject_id=subject_id)
    return success_envelope(data, trace_id_from_request(request))


@router.post("/rate-limit/{identity}/block")
def internal_block_identity(
    identity: str,
    request: Request,
    duration_s: int | None = Query(default=None, ge=1),
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_access(request, x_internal_debug)
    limiter = request.app.state.rate_limiter
    seconds = duration_s or desk_from_request(request).settings.abuse_block_seconds
    until = limiter.block(identity, duration_s=seconds)
    return success_envelope({"identity": identity, "blocked_until": until}, trace_id_from_request(request))


@router.post("/rate-limit/{identity}/unblock")
def internal_unblock_identity(
    identity: str,
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_access(request, x_internal_debug)
    request.app.state.rate_limiter.unblock(identity)
    return success_envelope({"identity": identity, "blocked": False}, trace_id_from_request(request))


@router.post("/rate-limit/sweep")
def internal_sweep_rate_limits(
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_access(request, x_internal_debug)
    removed = request.app.state.rate_limiter.sweep()
    return success_envelope({"removed_windows": removed}, trace_id_from_request(request))


# ---------------------------------------------------------------------------
# Spreadsheet sync (inbound)
# ---------------------------------------------------------------------------


@router.post("/sync/sheet")
def internal_sheet_sync(
    payload: SheetSyncRequest,
    request: Request,
    x_sync_secret: str | None = Header(default=None, alias="x-sync-secret"),
):
    desk = desk_from_request(request)
    if not secrets_match(desk.settings.sync_secret, x_sync_secret):
        security_logger.warning("sheet sync rejected: bad shared secret case_no=%s", payload.case_no)
        raise ForbiddenError("invalid sync secret", code="SYNC_SECRET_INVALID")
    case = desk.lifecycle.record_sheet_note(payload.case_no, payload.value)
    return success_envelope(case_view(case), trace_id_from_request(request), message="synced")
