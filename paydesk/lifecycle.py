from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any

from paydesk.access_policy import (
    Permission,
    can_assign,
    can_transition,
    can_view_audit,
    can_view_case,
    has_permission,
    require,
)
from paydesk.audit import AuditTrail
from paydesk.domain import (
    TERMINAL_CASE_STATUSES,
    Actor,
    AuditAction,
    AuditLogEntry,
    Case,
    CaseKind,
    CaseStatus,
    Payment,
    PaymentStatus,
    Role,
    utcnow,
)
from paydesk.errors import ConflictError, NotFoundError, ValidationError
from paydesk.outbox import (
    CASE_CREATED,
    CASE_OPERATOR_ASSIGNED,
    CASE_STATUS_CHANGED,
    PAYMENT_EXPIRED,
    PAYMENT_REJECTED,
    new_outbox_event,
)
from paydesk.retention import should_cancel
from paydesk.store import InMemoryStore, case_lock_key, payment_lock_key

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[CaseStatus, frozenset[CaseStatus]] = {
    CaseStatus.DRAFT: frozenset({CaseStatus.RECEIVED, CaseStatus.REJECTED}),
    CaseStatus.RECEIVED: frozenset({CaseStatus.IN_REVIEW, CaseStatus.REJECTED}),
    CaseStatus.IN_REVIEW: frozenset({CaseStatus.NEED_MORE_INFO, CaseStatus.IN_PROGRESS, CaseStatus.REJECTED}),
    CaseStatus.NEED_MORE_INFO: frozenset({CaseStatus.IN_REVIEW, CaseStatus.CLOSED, CaseStatus.REJECTED}),
    CaseStatus.IN_PROGRESS: frozenset({CaseStatus.RESOLVED, CaseStatus.NEED_MORE_INFO, CaseStatus.REJECTED}),
    CaseStatus.RESOLVED: frozenset({CaseStatus.CLOSED, CaseStatus.IN_PROGRESS, CaseStatus.REJECTED}),
    CaseStatus.CLOSED: frozenset(),
    CaseStatus.REJECTED: frozenset(),
}

# Reachable only through payment confirmation, never through ``transition``.
PAYMENT_ONLY_TRANSITIONS = frozenset({(CaseStatus.DRAFT, CaseStatus.RECEIVED)})

SHEET_SYNC_ACTOR = Actor(actor_id="system:sheet-sync", role=Role.ADMIN)


def is_transition_allowed(current: CaseStatus, target: CaseStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def case_number_prefix(kind: CaseKind, now: datetime) -> str:
    if kind == CaseKind.SALE:
        return f"GS-{now:%Y%m%d}"
    return f"WAC-{now:%Y}"


def format_case_number(kind: CaseKind, now: datetime, sequence: int) -> str:
    prefix = case_number_prefix(kind, now)
    if kind == CaseKind.SALE:
        return f"{prefix}-{sequence:04d}"
    return f"{prefix}-{sequence:06d}"


def case_event_payload(case: Case) -> dict[str, Any]:
    return {
        "case_id": case.case_id,
        "case_no": case.case_no,
        "kind": case.kind.value,
        "customer_id": case.customer_id,
        "status": case.status.value,
        "payment_status": case.payment_status.value,
        "assigned_operator_id": case.assigned_operator_id,
    }


class CaseLifecycle:
    def __init__(
        self,
        store: InMemoryStore,
        audit: AuditTrail,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._audit = audit
        self._clock = clock

    def create_case(
        self,
        actor: Actor,
        *,
        kind: CaseKind,
        details: dict[str, Any] | None = None,
        customer_id: str | None = None,
    ) -> Case:
        require(has_permission(actor, Permission.CASE_CREATE), "case creation not permitted")
        owner = actor.actor_id
        if customer_id and customer_id != actor.actor_id:
            # Only administrators open cases on behalf of a customer.
            require(actor.role == Role.ADMIN, "cannot create a case for another customer")
            owner = customer_id
        case_id = f"case_{uuid.uuid4().hex[:12]}"
        with self._store.begin(case_lock_key(case_id), actor_id=actor.actor_id) as tx:
            now = self._clock()
            sequence = tx.next_case_sequence(case_number_prefix(kind, now))
            case = Case(
                case_id=case_id,
                case_no=format_case_number(kind, now, sequence),
                kind=kind,
                customer_id=owner,
                status=CaseStatus.DRAFT,
                payment_status=PaymentStatus.PENDING,
                created_at=now,
                updated_at=now,
                details=dict(details or {}),
            )
            tx.save_case(case)
            self._audit.append(
                tx,
                actor_id=actor.actor_id,
                subject_id=case.case_id,
                action=AuditAction.CASE_CREATED,
                before=None,
                after={
                    "case_no": case.case_no,
                    "kind": case.kind.value,
                    "status": case.status.value,
                    "payment_status": case.payment_status.value,
                },
            )
            tx.add_outbox_event(
                new_outbox_event(event_type=CASE_CREATED, aggregate_id=case.case_id, payload=case_event_payload(case))
            )
        logger.info("case created case_id=%s case_no=%s actor_id=%s", case.case_id, case.case_no, actor.actor_id)
        return case

    def get_case(self, actor: Actor, case_id: str) -> Case:
        case = self._store.get_case(case_id)
        # Invisible cases are reported as missing so ids cannot be guessed.
        if case is None or not can_view_case(actor, case):
            raise NotFoundError("case not found", code="CASE_NOT_FOUND")
        return case

    def list_cases(self, actor: Actor, *, status: CaseStatus | None = None) -> list[Case]:
        return self._store.list_cases(actor=actor, status=status)

    def list_audit(self, actor: Actor, case_id: str) -> list[AuditLogEntry]:
        case = self.get_case(actor, case_id)
        require(can_view_audit(actor, case), "audit trail not visible to this actor")
        return self._audit.list_by_subject(case.case_id)

    def find_by_case_no(self, case_no: str) -> Case | None:
        for case in self._store.list_cases():
            if case.case_no == case_no:
                return case
        return None

    def record_sheet_note(self, case_no: str, notes: str, *, actor: Actor = SHEET_SYNC_ACTOR) -> Case:
        """Apply an operator note edited in the mirrored spreadsheet."""
        located = self.find_by_case_no(case_no)
        if located is None:
            raise NotFoundError("case not found", code="CASE_NOT_FOUND")
        with self._store.begin(case_lock_key(located.case_id), actor_id=actor.actor_id) as tx:
            case = tx.get_case(located.case_id, for_update=True)
            if case is None:
                raise NotFoundError("case not found", code="CASE_NOT_FOUND")
            previous = case.details.get("notes_internal")
            if previous == notes:
                return case
            case.details["notes_internal"] = notes
            case.updated_at = self._clock()
            case.version += 1
            tx.save_case(case)
            self._audit.append(
                tx,
                actor_id=actor.actor_id,
                subject_id=case.case_id,
                action=AuditAction.NOTE_ADDED,
                before={"notes_internal": previous},
                after={"notes_internal": notes},
            )
        return case

    def transition(self, actor: Actor, case_id: str, new_status: CaseStatus, *, notes: str = "") -> Case:
        # A terminal case must not keep a payment open in the operators' queue.
        scanned = None
        lock_keys = [case_lock_key(case_id)]
        if new_status in TERMINAL_CASE_STATUSES:
            scanned = next(
                (p for p in self._store.list_payments_for_case(case_id) if p.status == PaymentStatus.PENDING),
                None,
            )
            if scanned is not None:
                lock_keys.append(payment_lock_key(scanned.payment_id))
        withdrawn: Payment | None = None
        with self._store.begin(*lock_keys, actor_id=actor.actor_id) as tx:
            case = tx.get_case(case_id, for_update=True)
            if case is None or not can_view_case(actor, case):
                raise NotFoundError("case not found", code="CASE_NOT_FOUND")
            require(can_transition(actor, case), "status change not permitted for this case")
            previous = case.status
            if (previous, new_status) in PAYMENT_ONLY_TRANSITIONS:
                raise ConflictError(
                    "cases enter RECEIVED only through payment confirmation",
                    code="INVALID_TRANSITION",
                )
            if not is_transition_allowed(previous, new_status):
                raise ConflictError(
                    f"transition {previous.value} -> {new_status.value} is not allowed",
                    code="INVALID_TRANSITION",
                )
            now = self._clock()
            if new_status in TERMINAL_CASE_STATUSES:
                pending = tx.find_pending_payment(case_id)
                if pending is not None:
                    if scanned is None or pending.payment_id != scanned.payment_id:
                        raise ConflictError("case payment changed concurrently; retry", code="CONCURRENT_UPDATE")
                    withdrawn = self._withdraw_pending_payment(tx, actor, case, pending, now=now, reason=new_status)
            case.status = new_status
            case.updated_at = now
            if new_status in TERMINAL_CASE_STATUSES:
                case.closed_at = now
            case.version += 1
            tx.save_case(case)
            after: dict[str, Any] = {"status": new_status.value}
            if notes:
                after["notes"] = notes
            self._audit.append(
                tx,
                actor_id=actor.actor_id,
                subject_id=case.case_id,
                action=AuditAction.STATUS_CHANGED,
                before={"status": previous.value},
                after=after,
            )
            tx.add_outbox_event(
                new_outbox_event(
                    event_type=CASE_STATUS_CHANGED,
                    aggregate_id=case.case_id,
                    payload={**case_event_payload(case), "previous_status": previous.value},
                )
            )
        logger.info(
            "case status changed case_id=%s from=%s to=%s actor_id=%s",
            case_id,
            previous.value,
            new_status.value,
            actor.actor_id,
        )
        if withdrawn is not None:
            logger.info("pending payment withdrawn payment_id=%s case_id=%s", withdrawn.payment_id, case_id)
        return case

    def _withdraw_pending_payment(
        self,
        tx: Any,
        actor: Actor,
        case: Case,
        payment: Payment,
        *,
        now: datetime,
        reason: CaseStatus,
    ) -> Payment:
        payment = tx.get_payment(payment.payment_id, for_update=True) or payment
        note = f"case {reason.value.lower()}"
        payment.status = PaymentStatus.REJECTED
        payment.updated_at = now
        payment.payload = replace(payment.payload, rejected_at=now, rejected_by=actor.actor_id, notes=note)
        tx.save_payment(payment)
        before = {"payment_status": case.payment_status.value, "payment_id": payment.payment_id}
        case.payment_status = PaymentStatus.REJECTED
        self._audit.append(
            tx,
            actor_id=actor.actor_id,
            subject_id=case.case_id,
            action=AuditAction.PAYMENT_STATUS_CHANGED,
            before=before,
            after={"payment_status": PaymentStatus.REJECTED.value, "payment_id": payment.payment_id, "notes": note},
        )
        tx.add_outbox_event(
            new_outbox_event(
                event_type=PAYMENT_REJECTED,
                aggregate_id=case.case_id,
                payload={**case_event_payload(case), "payment_id": payment.payment_id, "notes": note},
            )
        )
        return payment

    def assign_operator(self, actor: Actor, case_id: str, operator_id: str | None) -> Case:
        require(can_assign(actor), "only administrators can assign operators")
        if operator_id is not None and not operator_id.strip():
            raise ValidationError("operator id must not be blank", code="INVALID_OPERATOR")
        with self._store.begin(case_lock_key(case_id), actor_id=actor.actor_id) as tx:
            case = tx.get_case(case_id, for_update=True)
            if case is None:
                raise NotFoundError("case not found", code="CASE_NOT_FOUND")
            if case.status in TERMINAL_CASE_STATUSES:
                raise ConflictError(f"case is {case.status.value}", code="INVALID_STATUS")
            previous = case.assigned_operator_id
            case.assigned_operator_id = operator_id
            case.updated_at = self._clock()
            case.version += 1
            tx.save_case(case)
            self._audit.append(
                tx,
                actor_id=actor.actor_id,
                subject_id=case.case_id,
                action=AuditAction.OPERATOR_ASSIGNED,
                before={"assigned_operator_id": previous},
                after={"assigned_operator_id": operator_id},
            )
            tx.add_outbox_event(
                new_outbox_event(
                    event_type=CASE_OPERATOR_ASSIGNED,
                    aggregate_id=case.case_id,
                    payload=case_event_payload(case),
                )
            )
        return case

    def cancel_stale_draft(self, actor: Actor, case_id: str, *, now: datetime, max_age: timedelta) -> bool:
        """Expire an unpaid draft; returns False when the case no longer qualifies."""
        require(has_permission(actor, Permission.OPS_SWEEP), "retention sweep requires an administrator")
        pending = next(
            (p for p in self._store.list_payments_for_case(case_id) if p.status == PaymentStatus.PENDING),
            None,
        )
        lock_keys = [case_lock_key(case_id)]
        if pending is not None:
            lock_keys.append(payment_lock_key(pending.payment_id))
        with self._store.begin(*lock_keys, actor_id=actor.actor_id) as tx:
            case = tx.get_case(case_id, for_update=True)
            if case is None:
                raise NotFoundError("case not found", code="CASE_NOT_FOUND")
            # Re-evaluated under the lock: a confirm may have landed since the scan.
            if not should_cancel(case, now=now, max_age=max_age):
                return False
            payment = tx.find_pending_payment(case_id)
            if payment is not None:
                payment = tx.get_payment(payment.payment_id, for_update=True) or payment
            if payment is not None and payment.status == PaymentStatus.PENDING:
                payment.status = PaymentStatus.EXPIRED
                payment.updated_at = now
                payment.payload = replace(payment.payload, expired_at=now, failure_reason="draft_expired")
                tx.save_payment(payment)
            case.payment_status = PaymentStatus.EXPIRED
            case.updated_at = now
            case.version += 1
            tx.save_case(case)
            after: dict[str, Any] = {"payment_status": PaymentStatus.EXPIRED.value, "reason": "draft_expired"}
            if payment is not None:
                after["payment_id"] = payment.payment_id
            self._audit.append(
                tx,
                actor_id=actor.actor_id,
                subject_id=case.case_id,
                action=AuditAction.PAYMENT_STATUS_CHANGED,
                before={"payment_status": PaymentStatus.PENDING.value},
                after=after,
            )
            tx.add_outbox_event(
                new_outbox_event(event_type=PAYMENT_EXPIRED, aggregate_id=case.case_id, payload=case_event_payload(case))
            )
        logger.info("stale draft expired case_id=%s", case_id)
        return True
