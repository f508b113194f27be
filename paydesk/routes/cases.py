from __future__ import annotations

from fastapi import APIRouter, Header, Query, Request
from fastapi.responses import JSONResponse

from paydesk.domain import CaseStatus
from paydesk.routes._deps import actor_from_request, desk_from_request, trace_id_from_request
from paydesk.schemas import (
    AssignOperatorRequest,
    CaseCreateRequest,
    StatusUpdateRequest,
    audit_view,
    case_view,
    payment_view,
    success_envelope,
)

router = APIRouter(prefix="/api/v1", tags=["cases"])


@router.post("/cases")
def create_case(
    payload: CaseCreateRequest,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    desk = desk_from_request(request)
    actor = actor_from_request(request)

    def _execute() -> dict[str, object]:
        case = desk.lifecycle.create_case(
            actor,
            kind=payload.kind,
            details=payload.details,
            customer_id=payload.customer_id,
        )
        return case_view(case)

    if idempotency_key:
        data = desk.store.run_idempotent(
            endpoint="POST:/api/v1/cases",
            scope=actor.actor_id,
            idempotency_key=idempotency_key,
            payload=payload.model_dump(mode="json"),
            execute=_execute,
        )
    else:
        data = _execute()
    return JSONResponse(
        status_code=201,
        content=success_envelope(data, trace_id_from_request(request)),
    )


@router.get("/cases")
def list_cases(request: Request, status: CaseStatus | None = Query(default=None)):
    desk = desk_from_request(request)
    items = [case_view(x) for x in desk.lifecycle.list_cases(actor_from_request(request), status=status)]
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.get("/cases/{case_id}")
def get_case(case_id: str, request: Request):
    desk = desk_from_request(request)
    case = desk.lifecycle.get_case(actor_from_request(request), case_id)
    return success_envelope(case_view(case), trace_id_from_request(request))


@router.post("/cases/{case_id}/status")
def update_case_status(case_id: str, payload: StatusUpdateRequest, request: Request):
    desk = desk_from_request(request)
    case = desk.lifecycle.transition(
        actor_from_request(request),
        case_id,
        payload.new_status,
        notes=payload.notes,
    )
    return success_envelope(case_view(case), trace_id_from_request(request), message="status updated")


@router.post("/cases/{case_id}/assign")
def assign_operator(case_id: str, payload: AssignOperatorRequest, request: Request):
    desk = desk_from_request(request)
    case = desk.lifecycle.assign_operator(actor_from_request(request), case_id, payload.operator_id)
    return success_envelope(case_view(case), trace_id_from_request(request), message="operator assigned")


@router.get("/cases/{case_id}/audit")
def list_case_audit(case_id: str, request: Request):
    desk = desk_from_request(request)
    items = [audit_view(x) for x in desk.lifecycle.list_audit(actor_from_request(request), case_id)]
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.get("/cases/{case_id}/payments")
def list_case_payments(case_id: str, request: Request):
    desk = desk_from_request(request)
    items = [payment_view(x) for x in desk.ledger.list_for_case(actor_from_request(request), case_id)]
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))
