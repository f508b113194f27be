from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor

import pytest

from paydesk.config import Settings
from paydesk.desk import build_desk
from paydesk.domain import Actor, AuditAction, CaseKind, CaseStatus, PaymentStatus, Role
from paydesk.errors import ApiError, ConflictError, ForbiddenError, NotFoundError, ValidationError
from paydesk.store import case_lock_key, store
from paydesk.unique_code import UniqueCodeAllocator


def _open_sale(desk, customer):
    case = desk.lifecycle.create_case(customer, kind=CaseKind.SALE, details={"item": "used guitar"})
    payment = desk.ledger.create_payment(customer, case.case_id)
    return case, payment


def _actions(case_id: str) -> list[AuditAction]:
    return [x.action for x in store.list_audit_logs(case_id)]


def test_create_payment_composes_amount_from_base_and_code(desk, customer):
    case, payment = _open_sale(desk, customer)
    assert payment.payload.base_amount == 50000
    assert payment.payload.unique_code == 187
    assert payment.amount == 50187
    assert payment.status == PaymentStatus.PENDING
    assert payment.currency == "IDR"
    assert payment.order_id.startswith(f"ORD-{case.case_no}-")
    assert _actions(case.case_id) == [AuditAction.CASE_CREATED, AuditAction.PAYMENT_CREATED]
    assert [e["event_type"] for e in store.list_outbox_events()] == ["case.created", "payment.created"]


def test_create_payment_returns_existing_pending_payment(desk, customer):
    case, payment = _open_sale(desk, customer)
    again = desk.ledger.create_payment(customer, case.case_id)
    assert again.payment_id == payment.payment_id
    assert len(store.list_payments_for_case(case.case_id)) == 1
    assert _actions(case.case_id).count(AuditAction.PAYMENT_CREATED) == 1


def test_create_payment_rules(desk, customer, agent):
    case = desk.lifecycle.create_case(customer, kind=CaseKind.TICKET)
    with pytest.raises(ForbiddenError):
        desk.ledger.create_payment(customer, case.case_id, base_amount=1)
    with pytest.raises(NotFoundError):
        desk.ledger.create_payment(customer, "case_missing")

    quoted = desk.ledger.create_payment(agent, case.case_id, base_amount=50000)
    assert quoted.amount == 50187


def test_create_payment_avoids_codes_pending_for_same_base(customer):
    class ScriptedRandom:
        def __init__(self, values):
            self._values = list(values)

        def randint(self, low, high):
            return self._values.pop(0)

    desk = build_desk(
        store=store,
        settings=Settings.from_env(),
        allocator=UniqueCodeAllocator(rng=ScriptedRandom([187, 187, 455])),
    )
    first = _open_sale(desk, customer)[1]
    second = _open_sale(desk, customer)[1]
    assert first.payload.unique_code == 187
    assert second.payload.unique_code == 455


def test_end_to_end_confirm_moves_case_to_received(desk, customer, agent):
    case, payment = _open_sale(desk, customer)

    found = desk.ledger.search(agent, amount=50187, unique_code=187)
    assert [p.payment_id for p in found] == [payment.payment_id]

    confirmed = desk.ledger.confirm(
        agent,
        payment.payment_id,
        order_id=payment.order_id,
        confirmed_amount=50187,
        unique_code=187,
        notes="matched bank mutation",
    )
    assert confirmed.status == PaymentStatus.PAID
    assert confirmed.payload.confirmed_by == "agent_1"
    assert confirmed.payload.confirmed_amount == 50187

    stored_case = store.get_case(case.case_id)
    assert stored_case.status == CaseStatus.RECEIVED
    assert stored_case.payment_status == PaymentStatus.PAID

    entries = store.list_audit_logs(case.case_id)
    assert entries[-1].action == AuditAction.STATUS_CHANGED
    assert entries[-1].before == {"status": "DRAFT", "payment_status": "PENDING"}
    assert entries[-1].after == {"status": "RECEIVED", "payment_status": "PAID"}
    assert store.list_outbox_events()[-1]["event_type"] == "payment.confirmed"

    with pytest.raises(NotFoundError):
        desk.ledger.search(agent, amount=50187, unique_code=187)
    assert len(desk.ledger.search(agent, amount=50187, unique_code=187, include_resolved=True)) == 1


def test_double_confirm_is_rejected_without_second_audit(desk, customer, agent):
    case, payment = _open_sale(desk, customer)
    kwargs = {"order_id": payment.order_id, "confirmed_amount": payment.amount, "unique_code": 187}
    desk.ledger.confirm(agent, payment.payment_id, **kwargs)
    audit_count = len(store.list_audit_logs(case.case_id))

    with pytest.raises(ConflictError) as exc_info:
        desk.ledger.confirm(agent, payment.payment_id, **kwargs)
    assert exc_info.value.code == "INVALID_STATUS"
    assert len(store.list_audit_logs(case.case_id)) == audit_count


def test_concurrent_confirms_yield_exactly_one_success(desk, customer, agent):
    case, payment = _open_sale(desk, customer)

    def _confirm(_: int) -> str:
        try:
            desk.ledger.confirm(
                agent,
                payment.payment_id,
                order_id=payment.order_id,
                confirmed_amount=payment.amount,
                unique_code=187,
            )
            return "ok"
        except ApiError as exc:
            return exc.code

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(_confirm, range(8)))

    assert outcomes.count("ok") == 1
    assert outcomes.count("INVALID_STATUS") == 7
    assert _actions(case.case_id).count(AuditAction.STATUS_CHANGED) == 1


def test_order_mismatch_is_logged_as_fraud_signal(desk, customer, agent, caplog):
    case, payment = _open_sale(desk, customer)
    caplog.set_level(logging.CRITICAL, logger="paydesk.security")

    with pytest.raises(ConflictError) as exc_info:
        desk.ledger.confirm(
            agent,
            payment.payment_id,
            order_id="ORD-FORGED",
            confirmed_amount=payment.amount,
            unique_code=187,
        )
    assert exc_info.value.code == "ORDER_MISMATCH"
    assert any(r.levelno == logging.CRITICAL and r.name == "paydesk.security" for r in caplog.records)
    assert store.get_payment(payment.payment_id).status == PaymentStatus.PENDING


def test_amount_and_code_mismatch_leave_payment_pending(desk, customer, agent):
    _, payment = _open_sale(desk, customer)
    with pytest.raises(ConflictError) as exc_info:
        desk.ledger.confirm(
            agent, payment.payment_id, order_id=payment.order_id, confirmed_amount=50000, unique_code=187
        )
    assert exc_info.value.code == "AMOUNT_MISMATCH"

    with pytest.raises(ConflictError) as exc_info:
        desk.ledger.confirm(
            agent, payment.payment_id, order_id=payment.order_id, confirmed_amount=50187, unique_code=188
        )
    assert exc_info.value.code == "CODE_MISMATCH"
    assert store.get_payment(payment.payment_id).status == PaymentStatus.PENDING


def test_confirm_checks_permission_before_existence(desk, customer):
    with pytest.raises(ForbiddenError):
        desk.ledger.confirm(customer, "pay_missing", order_id="x", confirmed_amount=1, unique_code=187)


def test_confirm_unknown_payment_is_not_found(desk, agent):
    with pytest.raises(NotFoundError):
        desk.ledger.confirm(agent, "pay_missing", order_id="x", confirmed_amount=1, unique_code=187)


def test_reject_allows_a_fresh_payment(desk, customer, agent):
    case, payment = _open_sale(desk, customer)
    rejected = desk.ledger.reject(agent, payment.payment_id, order_id=payment.order_id, notes="no transfer found")
    assert rejected.status == PaymentStatus.REJECTED
    assert rejected.payload.rejected_by == "agent_1"

    stored_case = store.get_case(case.case_id)
    assert stored_case.status == CaseStatus.DRAFT
    assert stored_case.payment_status == PaymentStatus.REJECTED
    assert _actions(case.case_id)[-1] == AuditAction.PAYMENT_STATUS_CHANGED

    retry = desk.ledger.create_payment(customer, case.case_id)
    assert retry.payment_id != payment.payment_id
    assert store.get_case(case.case_id).payment_status == PaymentStatus.PENDING


def test_reopen_rejected_payment_is_admin_only(desk, customer, agent, admin):
    case, payment = _open_sale(desk, customer)
    desk.ledger.reject(agent, payment.payment_id, order_id=payment.order_id)

    with pytest.raises(ForbiddenError):
        desk.ledger.reopen(agent, payment.payment_id, order_id=payment.order_id)

    reopened = desk.ledger.reopen(admin, payment.payment_id, order_id=payment.order_id, notes="found it")
    assert reopened.status == PaymentStatus.PENDING
    assert reopened.payload.rejected_at is None
    assert reopened.payload.status_history[-1]["from"] == "REJECTED"
    assert store.get_case(case.case_id).payment_status == PaymentStatus.PENDING


def test_reopen_paid_payment_only_while_case_is_received(desk, customer, agent, admin):
    case, payment = _open_sale(desk, customer)
    desk.ledger.confirm(
        agent, payment.payment_id, order_id=payment.order_id, confirmed_amount=payment.amount, unique_code=187
    )
    desk.lifecycle.transition(agent, case.case_id, CaseStatus.IN_REVIEW)

    with pytest.raises(ConflictError) as exc_info:
        desk.ledger.reopen(admin, payment.payment_id, order_id=payment.order_id)
    assert exc_info.value.code == "INVALID_STATUS"


def test_reopen_refused_when_another_payment_is_pending(desk, customer, agent, admin):
    case, payment = _open_sale(desk, customer)
    desk.ledger.reject(agent, payment.payment_id, order_id=payment.order_id)
    desk.ledger.create_payment(customer, case.case_id)
    with pytest.raises(ConflictError):
        desk.ledger.reopen(admin, payment.payment_id, order_id=payment.order_id)


class _ConstantRandom:
    def __init__(self, value: int):
        self._value = value

    def randint(self, low: int, high: int) -> int:
        return self._value


def test_search_surfaces_every_colliding_candidate(customer, agent):
    desk = build_desk(
        store=store,
        settings=Settings.from_env(),
        allocator=UniqueCodeAllocator(rng=_ConstantRandom(187), max_attempts=1),
    )
    _, first = _open_sale(desk, customer)
    other_customer = Actor(actor_id="cust_2", role=Role.CUSTOMER)
    _, second = _open_sale(desk, other_customer)
    assert first.amount == second.amount == 50187

    found = desk.ledger.search(agent, amount=50187, unique_code=187)
    assert {p.payment_id for p in found} == {first.payment_id, second.payment_id}

    narrowed = desk.ledger.search(agent, amount=50187, unique_code=187, order_id=second.order_id)
    assert [p.payment_id for p in narrowed] == [second.payment_id]


def _resolve(desk, action: str, actor, payment):
    if action == "confirm":
        return desk.ledger.confirm(
            actor, payment.payment_id, order_id=payment.order_id, confirmed_amount=payment.amount, unique_code=187
        )
    return desk.ledger.reject(actor, payment.payment_id, order_id=payment.order_id, notes="no transfer")


@pytest.mark.parametrize(
    "first, second",
    [("confirm", "confirm"), ("reject", "confirm"), ("confirm", "reject"), ("reject", "reject")],
)
def test_payment_resolves_at_most_once_in_either_order(desk, customer, agent, first, second):
    case, payment = _open_sale(desk, customer)
    resolved = _resolve(desk, first, agent, payment)
    audit_count = len(store.list_audit_logs(case.case_id))
    case_after_first = store.get_case(case.case_id)

    with pytest.raises(ConflictError) as exc_info:
        _resolve(desk, second, agent, payment)

    assert exc_info.value.code == "INVALID_STATUS"
    assert store.get_payment(payment.payment_id).status == resolved.status
    assert len(store.list_audit_logs(case.case_id)) == audit_count
    assert store.get_case(case.case_id).version == case_after_first.version


def test_reject_requires_case_in_draft(desk, customer, agent):
    case, payment = _open_sale(desk, customer)
    # A case that left DRAFT while its payment stayed open.
    with store.begin(case_lock_key(case.case_id)) as tx:
        stale = tx.get_case(case.case_id)
        stale.status = CaseStatus.CLOSED
        tx.save_case(stale)

    with pytest.raises(ConflictError) as exc_info:
        desk.ledger.reject(agent, payment.payment_id, order_id=payment.order_id)
    assert exc_info.value.code == "INVALID_STATUS"
    assert store.get_case(case.case_id).status == CaseStatus.CLOSED
    assert store.get_payment(payment.payment_id).status == PaymentStatus.PENDING


def test_reopen_only_latest_rejected_attempt(desk, customer, agent, admin):
    case, first = _open_sale(desk, customer)
    desk.ledger.reject(agent, first.payment_id, order_id=first.order_id)
    second = desk.ledger.create_payment(customer, case.case_id)
    desk.ledger.mark_failed(second.payment_id, reason="bank_declined")

    with pytest.raises(ConflictError) as exc_info:
        desk.ledger.reopen(admin, first.payment_id, order_id=first.order_id)
    assert exc_info.value.code == "INVALID_STATUS"
    assert store.get_case(case.case_id).payment_status == PaymentStatus.FAILED


def test_mark_failed_and_expire_are_audited_once(desk, customer):
    case, payment = _open_sale(desk, customer)
    failed = desk.ledger.mark_failed(payment.payment_id, reason="bank_declined")
    assert failed.status == PaymentStatus.FAILED
    last = store.list_audit_logs(case.case_id)[-1]
    assert last.actor_id == "system:webhook"
    assert last.after["reason"] == "bank_declined"
    assert store.list_outbox_events()[-1]["event_type"] == "payment.failed"
    with pytest.raises(ConflictError):
        desk.ledger.mark_failed(payment.payment_id, reason="bank_declined")

    retry = desk.ledger.create_payment(customer, case.case_id)
    expired = desk.ledger.expire(retry.payment_id)
    assert expired.payload.failure_reason == "expired"
    assert store.list_outbox_events()[-1]["event_type"] == "payment.expired"


def test_list_pending_is_operator_only(desk, customer, agent):
    _open_sale(desk, customer)
    assert len(desk.ledger.list_pending(agent)) == 1
    with pytest.raises(ForbiddenError):
        desk.ledger.list_pending(customer)


def test_other_customer_cannot_see_payment(desk, customer):
    _, payment = _open_sale(desk, customer)
    stranger = Actor(actor_id="cust_2", role=Role.CUSTOMER)
    with pytest.raises(NotFoundError):
        desk.ledger.get_payment(stranger, payment.payment_id)


def test_provider_success_confirms_and_keeps_raw_payload(desk, customer):
    case, payment = _open_sale(desk, customer)
    result = desk.ledger.record_provider_event(
        order_id=payment.order_id, status="settlement", raw_payload={"transaction_id": "tx-1"}
    )
    assert result.status == PaymentStatus.PAID
    assert result.payload.confirmed_by == "system:webhook"
    assert result.payload.provider_payload == {"transaction_id": "tx-1"}
    assert store.get_case(case.case_id).status == CaseStatus.RECEIVED


def test_provider_failure_and_expiry_keep_case_in_draft(desk, customer):
    case, payment = _open_sale(desk, customer)
    failed = desk.ledger.record_provider_event(order_id=payment.order_id, status="deny", raw_payload={"code": 202})
    assert failed.status == PaymentStatus.FAILED
    assert failed.payload.failure_reason == "provider:deny"
    stored_case = store.get_case(case.case_id)
    assert stored_case.status == CaseStatus.DRAFT
    assert stored_case.payment_status == PaymentStatus.FAILED

    retry = desk.ledger.create_payment(customer, case.case_id)
    expired = desk.ledger.record_provider_event(order_id=retry.order_id, status="expire", raw_payload={"n": 2})
    assert expired.status == PaymentStatus.EXPIRED
    assert expired.payload.expired_at is not None
    assert expired.payload.provider_payload == {"n": 2}

    with pytest.raises(ConflictError) as exc_info:
        desk.ledger.create_payment(customer, case.case_id)
    assert exc_info.value.code == "INVALID_STATUS"


def test_provider_pending_only_records_payload(desk, customer):
    _, payment = _open_sale(desk, customer)
    result = desk.ledger.record_provider_event(order_id=payment.order_id, status="pending", raw_payload={"n": 1})
    assert result.status == PaymentStatus.PENDING
    assert store.get_payment(payment.payment_id).payload.provider_payload == {"n": 1}


def test_provider_unknown_status_and_unknown_order(desk, customer):
    _, payment = _open_sale(desk, customer)
    with pytest.raises(ValidationError) as exc_info:
        desk.ledger.record_provider_event(order_id=payment.order_id, status="refund", raw_payload={})
    assert exc_info.value.code == "WEBHOOK_STATUS_UNSUPPORTED"
    with pytest.raises(NotFoundError):
        desk.ledger.record_provider_event(order_id="ORD-NOPE", status="success", raw_payload={})
