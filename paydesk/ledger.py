from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime
from typing import Any

from paydesk.access_policy import (
    can_create_payment,
    can_reopen_payment,
    can_resolve_payment,
    can_view_case,
    require,
)
from paydesk.audit import AuditTrail
from paydesk.config import Settings
from paydesk.domain import (
    TERMINAL_CASE_STATUSES,
    Actor,
    AuditAction,
    Case,
    CaseStatus,
    Payment,
    PaymentPayload,
    PaymentStatus,
    Role,
    utcnow,
)
from paydesk.errors import ConflictError, NotFoundError, ValidationError
from paydesk.outbox import (
    PAYMENT_CONFIRMED,
    PAYMENT_CREATED,
    PAYMENT_EXPIRED,
    PAYMENT_FAILED,
    PAYMENT_REJECTED,
    PAYMENT_REOPENED,
    new_outbox_event,
)
from paydesk.store import InMemoryStore, case_lock_key, payment_lock_key
from paydesk.unique_code import UniqueCodeAllocator, compose_amount, parse_unique_code

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("paydesk.security")

DEFAULT_PROVIDER = "qris_manual"
WEBHOOK_ACTOR = Actor(actor_id="system:webhook", role=Role.ADMIN)

# Case payment states from which a new payment attempt may be opened. EXPIRED
# is absent: an expired draft stays unpayable whether the sweep or the provider
# closed it.
_PAYABLE_CASE_PAYMENT_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.REJECTED, PaymentStatus.FAILED})

_PROVIDER_SUCCESS = frozenset({"success", "paid", "settlement", "capture"})
_PROVIDER_FAILED = frozenset({"failed", "failure", "deny", "cancel"})
_PROVIDER_EXPIRED = frozenset({"expired", "expire"})
_PROVIDER_PENDING = frozenset({"pending"})


def payment_event_payload(case: Case, payment: Payment) -> dict[str, Any]:
    return {
        "case_id": case.case_id,
        "case_no": case.case_no,
        "kind": case.kind.value,
        "customer_id": case.customer_id,
        "status": case.status.value,
        "payment_status": case.payment_status.value,
        "payment_id": payment.payment_id,
        "order_id": payment.order_id,
        "amount": payment.amount,
        "currency": payment.currency,
        "payment_state": payment.status.value,
    }


class PaymentLedger:
    """Creates and resolves payments for cases waiting in DRAFT.

    Every mutation holds the case and payment locks (row locks on Postgres)
    and writes the payment, the case, the audit entry and the outbox event
    in one transaction.
    """

    def __init__(
        self,
        store: InMemoryStore,
        audit: AuditTrail,
        *,
        settings: Settings | None = None,
        allocator: UniqueCodeAllocator | None = None,
        clock: Callable[[], datetime] = utcnow,
        provider: str = DEFAULT_PROVIDER,
    ) -> None:
        self._store = store
        self._audit = audit
        self._settings = settings or Settings()
        self._allocator = allocator or UniqueCodeAllocator()
        self._clock = clock
        self._provider = provider

    @staticmethod
    def _new_order_id(case: Case) -> str:
        return f"ORD-{case.case_no}-{uuid.uuid4().hex[:8].upper()}"

    def create_payment(self, actor: Actor, case_id: str, *, base_amount: int | None = None) -> Payment:
        # Customers pay the configured price; only operators may quote a different base.
        require(base_amount is None or actor.is_operator, "price override requires an operator")
        with self._store.begin(case_lock_key(case_id), actor_id=actor.actor_id) as tx:
            case = tx.get_case(case_id, for_update=True)
            if case is None or not can_view_case(actor, case):
                raise NotFoundError("case not found", code="CASE_NOT_FOUND")
            require(can_create_payment(actor, case), "payment creation not permitted for this case")
            if case.status != CaseStatus.DRAFT or case.payment_status not in _PAYABLE_CASE_PAYMENT_STATUSES:
                raise ConflictError(
                    f"case is {case.status.value}/{case.payment_status.value}; payment not allowed",
                    code="INVALID_STATUS",
                )
            existing = tx.find_pending_payment(case_id)
            if existing is not None:
                return existing

            base = self._settings.base_prices[case.kind] if base_amount is None else base_amount
            code = self._allocator.allocate(avoid=tx.pending_codes_for_base(base))
            amount = compose_amount(base, code)
            now = self._clock()
            payment = Payment(
                payment_id=f"pay_{uuid.uuid4().hex[:12]}",
                case_id=case.case_id,
                provider=self._provider,
                order_id=self._new_order_id(case),
                amount=amount,
                currency=self._settings.currency,
                status=PaymentStatus.PENDING,
                payload=PaymentPayload(base_amount=base, unique_code=code),
                created_at=now,
                updated_at=now,
            )
            tx.save_payment(payment)
            if case.payment_status != PaymentStatus.PENDING:
                case.payment_status = PaymentStatus.PENDING
                case.updated_at = now
                case.version += 1
                tx.save_case(case)
            self._audit.append(
                tx,
                actor_id=actor.actor_id,
                subject_id=case.case_id,
                action=AuditAction.PAYMENT_CREATED,
                before=None,
                after={
                    "payment_id": payment.payment_id,
                    "order_id": payment.order_id,
                    "amount": payment.amount,
                    "base_amount": base,
                    "unique_code": code,
                    "status": payment.status.value,
                },
            )
            tx.add_outbox_event(
                new_outbox_event(
                    event_type=PAYMENT_CREATED,
                    aggregate_id=case.case_id,
                    payload=payment_event_payload(case, payment),
                )
            )
        logger.info("payment created payment_id=%s case_id=%s amount=%s", payment.payment_id, case_id, amount)
        return payment

    def get_payment(self, actor: Actor, payment_id: str) -> Payment:
        payment = self._store.get_payment(payment_id)
        if payment is None:
            raise NotFoundError("payment not found", code="PAYMENT_NOT_FOUND")
        case = self._store.get_case(payment.case_id)
        if case is None or not can_view_case(actor, case):
            raise NotFoundError("payment not found", code="PAYMENT_NOT_FOUND")
        return payment

    def list_for_case(self, actor: Actor, case_id: str) -> list[Payment]:
        case = self._store.get_case(case_id)
        if case is None or not can_view_case(actor, case):
            raise NotFoundError("case not found", code="CASE_NOT_FOUND")
        return self._store.list_payments_for_case(case_id)

    def search(
        self,
        actor: Actor,
        *,
        amount: int,
        unique_code: int | str,
        order_id: str | None = None,
        include_resolved: bool = False,
    ) -> list[Payment]:
        require(can_resolve_payment(actor), "payment search requires an operator")
        code = parse_unique_code(unique_code)
        statuses = None if include_resolved else {PaymentStatus.PENDING}
        found = self._store.search_payments(amount=amount, unique_code=code, order_id=order_id, statuses=statuses)
        if not found:
            raise NotFoundError("no payment matches amount and unique code", code="PAYMENT_NOT_FOUND")
        return found

    def list_pending(self, actor: Actor) -> list[Payment]:
        require(can_resolve_payment(actor), "pending queue requires an operator")
        return self._store.list_payments_by_status(PaymentStatus.PENDING)

    def _locate(self, payment_id: str) -> Payment:
        payment = self._store.get_payment(payment_id)
        if payment is None:
            raise NotFoundError("payment not found", code="PAYMENT_NOT_FOUND")
        return payment

    @staticmethod
    def _check_order(actor: Actor, payment: Payment, order_id: str) -> None:
        if payment.order_id != order_id:
            security_logger.critical(
                "order id mismatch payment_id=%s actor_id=%s supplied=%r",
                payment.payment_id,
                actor.actor_id,
                order_id,
            )
            raise ConflictError("order id does not match payment", code="ORDER_MISMATCH")

    def _load_locked(self, tx: Any, actor: Actor, payment_id: str, case_id: str, order_id: str) -> tuple[Case, Payment]:
        # Case row first, then payment row: the same order every mutation uses.
        case = tx.get_case(case_id, for_update=True)
        payment = tx.get_payment(payment_id, for_update=True)
        if payment is None or case is None:
            raise NotFoundError("payment not found", code="PAYMENT_NOT_FOUND")
        self._check_order(actor, payment, order_id)
        return case, payment

    def confirm(
        self,
        actor: Actor,
        payment_id: str,
        *,
        order_id: str,
        confirmed_amount: int,
        unique_code: int | str,
        notes: str = "",
        provider_payload: dict[str, Any] | None = None,
    ) -> Payment:
        require(can_resolve_payment(actor), "payment confirmation requires an operator")
        located = self._locate(payment_id)
        self._check_order(actor, located, order_id)
        with self._store.begin(
            case_lock_key(located.case_id),
            payment_lock_key(payment_id),
            actor_id=actor.actor_id,
        ) as tx:
            case, payment = self._load_locked(tx, actor, payment_id, located.case_id, order_id)
            if payment.status != PaymentStatus.PENDING:
                raise ConflictError(f"payment is {payment.status.value}", code="INVALID_STATUS")
            if case.status != CaseStatus.DRAFT:
                raise ConflictError(f"case is {case.status.value}", code="INVALID_STATUS")
            if confirmed_amount != payment.amount:
                raise ConflictError("confirmed amount does not match payment amount", code="AMOUNT_MISMATCH")
            try:
                code = parse_unique_code(unique_code)
            except ValidationError as exc:
                raise ConflictError("unique code does not match payment", code="CODE_MISMATCH") from exc
            if code != payment.payload.unique_code:
                raise ConflictError("unique code does not match payment", code="CODE_MISMATCH")

            now = self._clock()
            payment.status = PaymentStatus.PAID
            payment.updated_at = now
            payment.payload = replace(
                payment.payload,
                confirmed_at=now,
                confirmed_by=actor.actor_id,
                confirmed_amount=confirmed_amount,
                notes=notes,
                provider_payload=dict(provider_payload or payment.payload.provider_payload),
            )
            tx.save_payment(payment)
            before = {"status": case.status.value, "payment_status": case.payment_status.value}
            case.status = CaseStatus.RECEIVED
            case.payment_status = PaymentStatus.PAID
            case.updated_at = now
            case.version += 1
            tx.save_case(case)
            self._audit.append(
                tx,
                actor_id=actor.actor_id,
                subject_id=case.case_id,
                action=AuditAction.STATUS_CHANGED,
                before=before,
                after={"status": case.status.value, "payment_status": case.payment_status.value},
            )
            tx.add_outbox_event(
                new_outbox_event(
                    event_type=PAYMENT_CONFIRMED,
                    aggregate_id=case.case_id,
                    payload={**payment_event_payload(case, payment), "confirmed_by": actor.actor_id},
                )
            )
        logger.info("payment confirmed payment_id=%s case_id=%s actor_id=%s", payment_id, case.case_id, actor.actor_id)
        return payment

    def reject(self, actor: Actor, payment_id: str, *, order_id: str, notes: str = "") -> Payment:
        require(can_resolve_payment(actor), "payment rejection requires an operator")
        located = self._locate(payment_id)
        self._check_order(actor, located, order_id)
        with self._store.begin(
            case_lock_key(located.case_id),
            payment_lock_key(payment_id),
            actor_id=actor.actor_id,
        ) as tx:
            case, payment = self._load_locked(tx, actor, payment_id, located.case_id, order_id)
            if payment.status != PaymentStatus.PENDING:
                raise ConflictError(f"payment is {payment.status.value}", code="INVALID_STATUS")
            if case.status != CaseStatus.DRAFT:
                raise ConflictError(f"case is {case.status.value}", code="INVALID_STATUS")
            now = self._clock()
            payment.status = PaymentStatus.REJECTED
            payment.updated_at = now
            payment.payload = replace(payment.payload, rejected_at=now, rejected_by=actor.actor_id, notes=notes)
            tx.save_payment(payment)
            before = {"status": case.status.value, "payment_status": case.payment_status.value}
            case.payment_status = PaymentStatus.REJECTED
            case.updated_at = now
            case.version += 1
            tx.save_case(case)
            self._audit.append(
                tx,
                actor_id=actor.actor_id,
                subject_id=case.case_id,
                action=AuditAction.PAYMENT_STATUS_CHANGED,
                before={**before, "payment_id": payment.payment_id},
                after={
                    "status": case.status.value,
                    "payment_status": case.payment_status.value,
                    "payment_id": payment.payment_id,
                    "notes": notes,
                },
            )
            tx.add_outbox_event(
                new_outbox_event(
                    event_type=PAYMENT_REJECTED,
                    aggregate_id=case.case_id,
                    payload={**payment_event_payload(case, payment), "notes": notes},
                )
            )
        logger.info("payment rejected payment_id=%s case_id=%s actor_id=%s", payment_id, case.case_id, actor.actor_id)
        return payment

    def reopen(self, actor: Actor, payment_id: str, *, order_id: str, notes: str = "") -> Payment:
        """Administrative undo for the latest attempt of an open case.

        A REJECTED payment on a DRAFT case, or a PAID payment whose case is still
        RECEIVED, goes back to PENDING and the case returns to DRAFT.
        """
        require(can_reopen_payment(actor), "only administrators can reopen payments")
        located = self._locate(payment_id)
        self._check_order(actor, located, order_id)
        with self._store.begin(
            case_lock_key(located.case_id),
            payment_lock_key(payment_id),
            actor_id=actor.actor_id,
        ) as tx:
            case, payment = self._load_locked(tx, actor, payment_id, located.case_id, order_id)
            if case.status in TERMINAL_CASE_STATUSES:
                raise ConflictError(f"case is {case.status.value}", code="INVALID_STATUS")
            if payment.status == PaymentStatus.PAID:
                if case.status != CaseStatus.RECEIVED:
                    raise ConflictError("case already progressed past RECEIVED", code="INVALID_STATUS")
            elif payment.status != PaymentStatus.REJECTED:
                raise ConflictError(f"payment is {payment.status.value}", code="INVALID_STATUS")
            elif case.status != CaseStatus.DRAFT:
                raise ConflictError(f"case is {case.status.value}", code="INVALID_STATUS")
            elif case.payment_status != PaymentStatus.REJECTED:
                raise ConflictError("a newer payment attempt exists for this case", code="INVALID_STATUS")
            other = tx.find_pending_payment(case.case_id)
            if other is not None and other.payment_id != payment.payment_id:
                raise ConflictError("case already has a pending payment", code="INVALID_STATUS")

            now = self._clock()
            previous = payment.status
            history_entry = {
                "from": previous.value,
                "to": PaymentStatus.PENDING.value,
                "at": now.isoformat(),
                "by": actor.actor_id,
                "notes": notes,
            }
            payment.status = PaymentStatus.PENDING
            payment.updated_at = now
            payment.payload = replace(
                payment.payload,
                confirmed_at=None,
                confirmed_by=None,
                confirmed_amount=None,
                rejected_at=None,
                rejected_by=None,
                notes=notes,
                status_history=payment.payload.status_history + (history_entry,),
            )
            tx.save_payment(payment)
            before = {"status": case.status.value, "payment_status": case.payment_status.value}
            case.status = CaseStatus.DRAFT
            case.payment_status = PaymentStatus.PENDING
            case.updated_at = now
            case.version += 1
            tx.save_case(case)
            self._audit.append(
                tx,
                actor_id=actor.actor_id,
                subject_id=case.case_id,
                action=AuditAction.PAYMENT_STATUS_CHANGED,
                before={**before, "payment_id": payment.payment_id, "payment_state": previous.value},
                after={
                    "status": case.status.value,
                    "payment_status": case.payment_status.value,
                    "payment_id": payment.payment_id,
                    "payment_state": payment.status.value,
                    "notes": notes,
                },
            )
            tx.add_outbox_event(
                new_outbox_event(
                    event_type=PAYMENT_REOPENED,
                    aggregate_id=case.case_id,
                    payload=payment_event_payload(case, payment),
                )
            )
        logger.info("payment reopened payment_id=%s from=%s actor_id=%s", payment_id, previous.value, actor.actor_id)
        return payment

    def _terminate(
        self,
        actor: Actor,
        payment_id: str,
        *,
        target: PaymentStatus,
        reason: str,
        provider_payload: dict[str, Any] | None = None,
    ) -> Payment:
        located = self._locate(payment_id)
        with self._store.begin(
            case_lock_key(located.case_id),
            payment_lock_key(payment_id),
            actor_id=actor.actor_id,
        ) as tx:
            case, payment = self._load_locked(tx, actor, payment_id, located.case_id, located.order_id)
            if payment.status != PaymentStatus.PENDING:
                raise ConflictError(f"payment is {payment.status.value}", code="INVALID_STATUS")
            now = self._clock()
            payment.status = target
            payment.updated_at = now
            changes: dict[str, Any] = {"failure_reason": reason}
            if target == PaymentStatus.EXPIRED:
                changes["expired_at"] = now
            if provider_payload is not None:
                changes["provider_payload"] = dict(provider_payload)
            payment.payload = replace(payment.payload, **changes)
            tx.save_payment(payment)
            before = {"payment_status": case.payment_status.value, "payment_id": payment.payment_id}
            case.payment_status = target
            case.updated_at = now
            case.version += 1
            tx.save_case(case)
            self._audit.append(
                tx,
                actor_id=actor.actor_id,
                subject_id=case.case_id,
                action=AuditAction.PAYMENT_STATUS_CHANGED,
                before=before,
                after={"payment_status": target.value, "payment_id": payment.payment_id, "reason": reason},
            )
            tx.add_outbox_event(
                new_outbox_event(
                    event_type=PAYMENT_EXPIRED if target == PaymentStatus.EXPIRED else PAYMENT_FAILED,
                    aggregate_id=case.case_id,
                    payload={**payment_event_payload(case, payment), "reason": reason},
                )
            )
        logger.info("payment %s payment_id=%s reason=%s", target.value.lower(), payment_id, reason)
        return payment

    def mark_failed(
        self,
        payment_id: str,
        *,
        reason: str,
        actor: Actor = WEBHOOK_ACTOR,
        provider_payload: dict[str, Any] | None = None,
    ) -> Payment:
        """Provider declined the transfer; the case may open a new attempt."""
        return self._terminate(
            actor, payment_id, target=PaymentStatus.FAILED, reason=reason, provider_payload=provider_payload
        )

    def expire(
        self,
        payment_id: str,
        *,
        reason: str = "expired",
        actor: Actor = WEBHOOK_ACTOR,
        provider_payload: dict[str, Any] | None = None,
    ) -> Payment:
        """Payment window closed; the case becomes permanently unpayable."""
        return self._terminate(
            actor, payment_id, target=PaymentStatus.EXPIRED, reason=reason, provider_payload=provider_payload
        )

    def record_provider_event(self, *, order_id: str, status: str, raw_payload: dict[str, Any]) -> Payment:
        """Generic provider callback; the raw payload is kept verbatim on the payment."""
        payment = self._store.get_payment_by_order_id(order_id)
        if payment is None:
            raise NotFoundError("payment not found", code="PAYMENT_NOT_FOUND")
        normalized = str(status or "").strip().lower()
        if normalized in _PROVIDER_SUCCESS:
            return self.confirm(
                WEBHOOK_ACTOR,
                payment.payment_id,
                order_id=order_id,
                confirmed_amount=payment.amount,
                unique_code=payment.payload.unique_code,
                notes="confirmed by provider callback",
                provider_payload=raw_payload,
            )
        if normalized in _PROVIDER_FAILED:
            return self.mark_failed(payment.payment_id, reason=f"provider:{normalized}", provider_payload=raw_payload)
        if normalized in _PROVIDER_EXPIRED:
            return self.expire(payment.payment_id, reason=f"provider:{normalized}", provider_payload=raw_payload)
        if normalized in _PROVIDER_PENDING:
            with self._store.begin(
                case_lock_key(payment.case_id),
                payment_lock_key(payment.payment_id),
                actor_id=WEBHOOK_ACTOR.actor_id,
            ) as tx:
                current = tx.get_payment(payment.payment_id, for_update=True)
                if current is None:
                    raise NotFoundError("payment not found", code="PAYMENT_NOT_FOUND")
                current.payload = replace(current.payload, provider_payload=dict(raw_payload))
                current.updated_at = self._clock()
                tx.save_payment(current)
            return current
        raise ValidationError(f"unsupported provider status: {status}", code="WEBHOOK_STATUS_UNSUPPORTED")
