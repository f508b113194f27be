from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class Role(StrEnum):
    CUSTOMER = "CUSTOMER"
    AGENT = "AGENT"
    ADMIN = "ADMIN"


class CaseKind(StrEnum):
    TICKET = "TICKET"
    SALE = "SALE"


class CaseStatus(StrEnum):
    DRAFT = "DRAFT"
    RECEIVED = "RECEIVED"
    IN_REVIEW = "IN_REVIEW"
    NEED_MORE_INFO = "NEED_MORE_INFO"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"
    REJECTED = "REJECTED"


TERMINAL_CASE_STATUSES = frozenset({CaseStatus.CLOSED, CaseStatus.REJECTED})


class PaymentStatus(StrEnum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"
    REJECTED = "REJECTED"


# A case mirrors the state of its latest payment attempt.
CasePaymentStatus = PaymentStatus

TERMINAL_PAYMENT_STATUSES = frozenset(
    {PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.EXPIRED, PaymentStatus.REJECTED}
)


class AuditAction(StrEnum):
    CASE_CREATED = "CASE_CREATED"
    STATUS_CHANGED = "STATUS_CHANGED"
    OPERATOR_ASSIGNED = "OPERATOR_ASSIGNED"
    PAYMENT_CREATED = "PAYMENT_CREATED"
    PAYMENT_STATUS_CHANGED = "PAYMENT_STATUS_CHANGED"
    NOTE_ADDED = "NOTE_ADDED"


def utcnow() -> datetime:
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def parse_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


@dataclass(frozen=True)
class Actor:
    actor_id: str
    role: Role

    @property
    def is_operator(self) -> bool:
        return self.role in {Role.AGENT, Role.ADMIN}

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


SYSTEM_ACTOR = Actor(actor_id="system", role=Role.ADMIN)


@dataclass
class Case:
    case_id: str
    case_no: str
    kind: CaseKind
    customer_id: str
    status: CaseStatus
    payment_status: CasePaymentStatus
    created_at: datetime
    updated_at: datetime
    assigned_operator_id: str | None = None
    closed_at: datetime | None = None
    details: dict[str, Any] = field(default_factory=dict)
    version: int = 1

    def copy(self) -> "Case":
        return replace(self, details=dict(self.details))

    def to_dict(self) -> dict[str, Any]:
        return {
            "case_id": self.case_id,
            "case_no": self.case_no,
            "kind": self.kind.value,
            "customer_id": self.customer_id,
            "status": self.status.value,
            "payment_status": self.payment_status.value,
            "assigned_operator_id": self.assigned_operator_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "closed_at": _iso(self.closed_at),
            "details": dict(self.details),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> "Case":
        return cls(
            case_id=str(row["case_id"]),
            case_no=str(row["case_no"]),
            kind=CaseKind(row["kind"]),
            customer_id=str(row["customer_id"]),
            status=CaseStatus(row["status"]),
            payment_status=PaymentStatus(row["payment_status"]),
            assigned_operator_id=row.get("assigned_operator_id"),
            created_at=parse_datetime(row["created_at"]),  # type: ignore[arg-type]
            updated_at=parse_datetime(row.get("updated_at") or row["created_at"]),  # type: ignore[arg-type]
            closed_at=parse_datetime(row.get("closed_at")),
            details=dict(row.get("details") or {}),
            version=int(row.get("version", 1)),
        )


@dataclass(frozen=True)
class PaymentPayload:
    """Resolution metadata carried by a payment; amount composition fields are required."""

    base_amount: int
    unique_code: int
    confirmed_at: datetime | None = None
    confirmed_by: str | None = None
    confirmed_amount: int | None = None
    rejected_at: datetime | None = None
    rejected_by: str | None = None
    expired_at: datetime | None = None
    failure_reason: str | None = None
    notes: str = ""
    provider_payload: dict[str, Any] = field(default_factory=dict)
    status_history: tuple[dict[str, Any], ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "base_amount": self.base_amount,
            "unique_code": self.unique_code,
            "confirmed_at": _iso(self.confirmed_at),
            "confirmed_by": self.confirmed_by,
            "confirmed_amount": self.confirmed_amount,
            "rejected_at": _iso(self.rejected_at),
            "rejected_by": self.rejected_by,
            "expired_at": _iso(self.expired_at),
            "failure_reason": self.failure_reason,
            "notes": self.notes,
            "provider_payload": dict(self.provider_payload),
            "status_history": [dict(x) for x in self.status_history],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "PaymentPayload":
        return cls(
            base_amount=int(raw["base_amount"]),
            unique_code=int(raw["unique_code"]),
            confirmed_at=parse_datetime(raw.get("confirmed_at")),
            confirmed_by=raw.get("confirmed_by"),
            confirmed_amount=raw.get("confirmed_amount"),
            rejected_at=parse_datetime(raw.get("rejected_at")),
            rejected_by=raw.get("rejected_by"),
            expired_at=parse_datetime(raw.get("expired_at")),
            failure_reason=raw.get("failure_reason"),
            notes=str(raw.get("notes") or ""),
            provider_payload=dict(raw.get("provider_payload") or {}),
            status_history=tuple(dict(x) for x in raw.get("status_history") or ()),
        )


@dataclass
class Payment:
    payment_id: str
    case_id: str
    provider: str
    order_id: str
    amount: int
    currency: str
    status: PaymentStatus
    payload: PaymentPayload
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PAYMENT_STATUSES

    def copy(self) -> "Payment":
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "payment_id": self.payment_id,
            "case_id": self.case_id,
            "provider": self.provider,
            "order_id": self.order_id,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status.value,
            "payload": self.payload.to_dict(),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> "Payment":
        return cls(
            payment_id=str(row["payment_id"]),
            case_id=str(row["case_id"]),
            provider=str(row["provider"]),
            order_id=str(row["order_id"]),
            amount=int(row["amount"]),
            currency=str(row.get("currency") or "IDR"),
            status=PaymentStatus(row["status"]),
            payload=PaymentPayload.from_dict(row["payload"]),
            created_at=parse_datetime(row["created_at"]),  # type: ignore[arg-type]
            updated_at=parse_datetime(row.get("updated_at") or row["created_at"]),  # type: ignore[arg-type]
        )


@dataclass(frozen=True)
class AuditLogEntry:
    audit_id: str
    actor_id: str
    subject_id: str
    action: AuditAction
    before: dict[str, Any] | None
    after: dict[str, Any]
    occurred_at: datetime
    seq: int
    prev_hash: str
    audit_hash: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "audit_id": self.audit_id,
            "actor_id": self.actor_id,
            "subject_id": self.subject_id,
            "action": self.action.value,
            "before": None if self.before is None else dict(self.before),
            "after": dict(self.after),
            "occurred_at": _iso(self.occurred_at),
            "seq": self.seq,
            "prev_hash": self.prev_hash,
            "audit_hash": self.audit_hash,
        }

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> "AuditLogEntry":
        return cls(
            audit_id=str(row["audit_id"]),
            actor_id=str(row["actor_id"]),
            subject_id=str(row["subject_id"]),
            action=AuditAction(row["action"]),
            before=None if row.get("before") is None else dict(row["before"]),
            after=dict(row["after"]),
            occurred_at=parse_datetime(row["occurred_at"]),  # type: ignore[arg-type]
            seq=int(row["seq"]),
            prev_hash=str(row.get("prev_hash") or ""),
            audit_hash=str(row.get("audit_hash") or ""),
        )
