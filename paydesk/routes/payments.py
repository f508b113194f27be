from __future__ import annotations

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse

from paydesk.errors import ForbiddenError
from paydesk.routes._deps import actor_from_request, desk_from_request, trace_id_from_request
from paydesk.schemas import (
    PaymentConfirmRequest,
    PaymentCreateRequest,
    PaymentResolveRequest,
    PaymentSearchRequest,
    PaymentWebhookRequest,
    payment_view,
    success_envelope,
)
from paydesk.security import secrets_match

router = APIRouter(prefix="/api/v1", tags=["payments"])


@router.post("/payments")
def create_payment(
    payload: PaymentCreateRequest,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    desk = desk_from_request(request)
    actor = actor_from_request(request)

    def _execute() -> dict[str, object]:
        payment = desk.ledger.create_payment(actor, payload.case_id, base_amount=payload.base_amount)
        return payment_view(payment)

    if idempotency_key:
        data = desk.store.run_idempotent(
            endpoint="POST:/api/v1/payments",
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


@router.get("/payments/pending")
def list_pending_payments(request: Request):
    desk = desk_from_request(request)
    items = [payment_view(x) for x in desk.ledger.list_pending(actor_from_request(request))]
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.post("/payments/search")
def search_payments(payload: PaymentSearchRequest, request: Request):
    desk = desk_from_request(request)
    found = desk.ledger.search(
        actor_from_request(request),
        amount=payload.amount,
        unique_code=payload.unique_code,
        order_id=payload.order_id,
        include_resolved=payload.include_resolved,
    )
    items = [payment_view(x) for x in found]
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.get("/payments/{payment_id}")
def get_payment(payment_id: str, request: Request):
    desk = desk_from_request(request)
    payment = desk.ledger.get_payment(actor_from_request(request), payment_id)
    return success_envelope(payment_view(payment), trace_id_from_request(request))


@router.post("/payments/{payment_id}/confirm")
def confirm_payment(payment_id: str, payload: PaymentConfirmRequest, request: Request):
    desk = desk_from_request(request)
    payment = desk.ledger.confirm(
        actor_from_request(request),
        payment_id,
        order_id=payload.order_id,
        confirmed_amount=payload.confirmed_amount,
        unique_code=payload.unique_code,
        notes=payload.notes,
    )
    return success_envelope(payment_view(payment), trace_id_from_request(request), message="payment confirmed")


@router.post("/payments/{payment_id}/reject")
def reject_payment(payment_id: str, payload: PaymentResolveRequest, request: Request):
    desk = desk_from_request(request)
    payment = desk.ledger.reject(
        actor_from_request(request),
        payment_id,
        order_id=payload.order_id,
        notes=payload.notes,
    )
    return success_envelope(payment_view(payment), trace_id_from_request(request), message="payment rejected")


@router.post("/payments/{payment_id}/reopen")
def reopen_payment(payment_id: str, payload: PaymentResolveRequest, request: Request):
    desk = desk_from_request(request)
    payment = desk.ledger.reopen(
        actor_from_request(request),
        payment_id,
        order_id=payload.order_id,
        notes=payload.notes,
    )
    return success_envelope(payment_view(payment), trace_id_from_request(request), message="payment reopened")


@router.post("/webhooks/payment")
def payment_webhook(
    payload: PaymentWebhookRequest,
    request: Request,
    x_webhook_secret: str | None = Header(default=None, alias="x-webhook-secret"),
):
    desk = desk_from_request(request)
    # An unset secret refuses every call.
    if not secrets_match(desk.settings.payment_webhook_secret, x_webhook_secret):
        raise ForbiddenError("invalid webhook secret", code="WEBHOOK_SECRET_INVALID")
    payment = desk.ledger.record_provider_event(
        order_id=payload.order_id,
        status=payload.status,
        raw_payload=payload.payload,
    )
    return success_envelope(payment_view(payment), trace_id_from_request(request))
