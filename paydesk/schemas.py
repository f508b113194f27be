from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from paydesk.domain import AuditLogEntry, Case, CaseKind, CaseStatus, Payment


class CaseCreateRequest(BaseModel):
    kind: CaseKind = CaseKind.TICKET
    details: dict[str, Any] = Field(default_factory=dict)
    customer_id: str | None = None


class StatusUpdateRequest(BaseModel):
    new_status: CaseStatus
    notes: str = Field(default="", max_length=2000)


class AssignOperatorRequest(BaseModel):
    operator_id: str | None = None


class PaymentCreateRequest(BaseModel):
    case_id: str = Field(min_length=1)
    base_amount: int | None = Field(default=None, ge=0)


class PaymentSearchRequest(BaseModel):
    amount: int = Field(ge=0)
    unique_code: int = Field(ge=100, le=999)
    order_id: str | None = None
    include_resolved: bool = False


class PaymentConfirmRequest(BaseModel):
    order_id: str = Field(min_length=1)
    confirmed_amount: int = Field(ge=0)
    unique_code: int
    notes: str = Field(default="", max_length=2000)


class PaymentResolveRequest(BaseModel):
    order_id: str = Field(min_length=1)
    notes: str = Field(default="", max_length=2000)


class PaymentWebhookRequest(BaseModel):
    order_id: str = Field(min_length=1)
    status: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)


class SheetSyncRequest(BaseModel):
    case_no: str = Field(min_length=1)
    field: Literal["notes_internal"] = "notes_internal"
    value: str = Field(default="", max_length=4000)


class RetentionSweepRequest(BaseModel):
    max_age_hours: int | None = Field(default=None, ge=1)


def case_view(case: Case) -> dict[str, Any]:
    return case.to_dict()


def payment_view(payment: Payment) -> dict[str, Any]:
    data = payment.to_dict()
    data["base_amount"] = payment.payload.base_amount
    data["unique_code"] = payment.payload.unique_code
    return data


def audit_view(entry: AuditLogEntry) -> dict[str, Any]:
    return entry.to_dict()


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
