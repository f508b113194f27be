from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from paydesk.audit import AuditTrail, compute_audit_hash
from paydesk.domain import AuditAction
from paydesk.errors import ValidationError
from paydesk.store import InMemoryStore, case_lock_key


class SteppingClock:
    def __init__(self, *moments: datetime):
        self._moments = list(moments)

    def __call__(self) -> datetime:
        if len(self._moments) > 1:
            return self._moments.pop(0)
        return self._moments[0]


T0 = datetime(2026, 3, 1, 8, 0, tzinfo=UTC)


def _record(store: InMemoryStore, trail: AuditTrail, subject_id: str, status: str):
    with store.begin(case_lock_key(subject_id)) as tx:
        return trail.append(
            tx,
            actor_id="agent_1",
            subject_id=subject_id,
            action=AuditAction.STATUS_CHANGED,
            before={"status": "DRAFT"},
            after={"status": status},
        )


def test_append_chains_entries_per_subject():
    store = InMemoryStore()
    trail = AuditTrail(store, clock=SteppingClock(T0, T0 + timedelta(seconds=1), T0 + timedelta(seconds=2)))
    first = _record(store, trail, "case_a", "RECEIVED")
    other = _record(store, trail, "case_b", "RECEIVED")
    second = _record(store, trail, "case_a", "IN_REVIEW")

    assert first.seq == 1
    assert first.prev_hash == ""
    assert other.seq == 1
    assert second.seq == 2
    assert second.prev_hash == first.audit_hash
    assert [x.audit_id for x in trail.list_by_subject("case_a")] == [first.audit_id, second.audit_id]


def test_hash_covers_entry_and_previous_hash():
    store = InMemoryStore()
    trail = AuditTrail(store, clock=lambda: T0)
    entry = _record(store, trail, "case_a", "RECEIVED")
    assert entry.audit_hash == compute_audit_hash(entry=entry.to_dict(), prev_hash="")
    assert entry.audit_hash != compute_audit_hash(entry=entry.to_dict(), prev_hash="other")


def test_timestamps_never_go_backwards_within_subject():
    store = InMemoryStore()
    trail = AuditTrail(store, clock=SteppingClock(T0, T0 - timedelta(minutes=5)))
    first = _record(store, trail, "case_a", "RECEIVED")
    second = _record(store, trail, "case_a", "IN_REVIEW")
    assert second.occurred_at == first.occurred_at
    assert trail.verify_integrity()["valid"] is True


@pytest.mark.parametrize(
    "kwargs",
    [
        {"actor_id": "", "subject_id": "case_a", "action": AuditAction.STATUS_CHANGED, "after": {"x": 1}},
        {"actor_id": "a", "subject_id": " ", "action": AuditAction.STATUS_CHANGED, "after": {"x": 1}},
        {"actor_id": "a", "subject_id": "case_a", "action": "", "after": {"x": 1}},
        {"actor_id": "a", "subject_id": "case_a", "action": "NOT_AN_ACTION", "after": {"x": 1}},
        {"actor_id": "a", "subject_id": "case_a", "action": AuditAction.STATUS_CHANGED, "after": None},
    ],
)
def test_invalid_entries_are_rejected_and_nothing_is_written(kwargs):
    store = InMemoryStore()
    trail = AuditTrail(store)
    with pytest.raises(ValidationError) as exc_info:
        with store.begin("case:case_a") as tx:
            trail.append(tx, before=None, **kwargs)
    assert exc_info.value.code == "AUDIT_INVALID"
    assert store.audit_logs == []


def test_verify_integrity_reports_clean_chain():
    store = InMemoryStore()
    trail = AuditTrail(store)
    _record(store, trail, "case_a", "RECEIVED")
    _record(store, trail, "case_a", "IN_REVIEW")
    _record(store, trail, "case_b", "RECEIVED")
    result = trail.verify_integrity()
    assert result == {"valid": True, "checked_count": 3, "subject_count": 2}
    assert trail.verify_integrity(subject_id="case_b")["checked_count"] == 1


def test_verify_integrity_detects_tampered_payload():
    store = InMemoryStore()
    trail = AuditTrail(store)
    first = _record(store, trail, "case_a", "RECEIVED")
    _record(store, trail, "case_a", "IN_REVIEW")

    store.audit_logs[0]["after"] = {"status": "CLOSED"}

    result = trail.verify_integrity(subject_id="case_a")
    assert result["valid"] is False
    assert result["reason"] == "audit_hash_mismatch"
    assert result["audit_id"] == first.audit_id


def test_verify_integrity_detects_removed_entry():
    store = InMemoryStore()
    trail = AuditTrail(store, clock=SteppingClock(T0, T0 + timedelta(seconds=1), T0 + timedelta(seconds=2)))
    _record(store, trail, "case_a", "RECEIVED")
    _record(store, trail, "case_a", "IN_REVIEW")
    third = _record(store, trail, "case_a", "IN_PROGRESS")

    del store.audit_logs[1]

    result = trail.verify_integrity()
    assert result["valid"] is False
    assert result["reason"] == "seq_gap"
    assert result["audit_id"] == third.audit_id


def test_verify_integrity_detects_relinked_chain():
    store = InMemoryStore()
    trail = AuditTrail(store)
    _record(store, trail, "case_a", "RECEIVED")
    second = _record(store, trail, "case_a", "IN_REVIEW")

    store.audit_logs[1]["prev_hash"] = "0" * 64

    result = trail.verify_integrity()
    assert result["reason"] == "prev_hash_mismatch"
    assert result["audit_id"] == second.audit_id


def test_append_rolls_back_with_enclosing_transaction():
    store = InMemoryStore()
    trail = AuditTrail(store)
    with pytest.raises(RuntimeError):
        with store.begin("case:case_a") as tx:
            trail.append(
                tx,
                actor_id="agent_1",
                subject_id="case_a",
                action=AuditAction.NOTE_ADDED,
                before=None,
                after={"notes_internal": "call back"},
            )
            raise RuntimeError("boom")
    assert store.audit_logs == []
