from __future__ import annotations

import hashlib
import json
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

from paydesk.domain import AuditAction, AuditLogEntry, utcnow
from paydesk.errors import ValidationError
from paydesk.store import InMemoryStore


def compute_audit_hash(*, entry: dict[str, Any], prev_hash: str) -> str:
    material = {key: value for key, value in entry.items() if key not in {"audit_hash", "prev_hash"}}
    material["prev_hash"] = prev_hash
    blob = json.dumps(material, sort_keys=True, ensure_ascii=True, separators=(",", ":"), default=str)
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()


class AuditTrail:
    """Append-only, per-subject hash-chained record of state changes.

    ``append`` runs inside the caller's transaction so the entry commits or
    rolls back together with the mutation it describes.
    """

    def __init__(self, store: InMemoryStore, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    def append(
        self,
        tx: Any,
        *,
        actor_id: str,
        subject_id: str,
        action: AuditAction | str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> AuditLogEntry:
        if not str(actor_id or "").strip():
            raise ValidationError("audit actor is required", code="AUDIT_INVALID")
        if not str(subject_id or "").strip():
            raise ValidationError("audit subject is required", code="AUDIT_INVALID")
        if not str(action or "").strip():
            raise ValidationError("audit action is required", code="AUDIT_INVALID")
        if after is None:
            raise ValidationError("audit after-state is required", code="AUDIT_INVALID")
        try:
            action_value = AuditAction(action)
        except ValueError as exc:
            raise ValidationError(f"unknown audit action: {action}", code="AUDIT_INVALID") from exc

        previous = tx.last_audit(subject_id)
        occurred_at = self._clock()
        prev_hash = ""
        seq = 1
        if previous is not None:
            prev_hash = previous.audit_hash
            seq = previous.seq + 1
            # Entries of one subject never go back in time, even if the clock does.
            if occurred_at < previous.occurred_at:
                occurred_at = previous.occurred_at

        draft = AuditLogEntry(
            audit_id=f"audit_{uuid.uuid4().hex[:12]}",
            actor_id=str(actor_id),
            subject_id=str(subject_id),
            action=action_value,
            before=None if before is None else dict(before),
            after=dict(after),
            occurred_at=occurred_at,
            seq=seq,
            prev_hash=prev_hash,
            audit_hash="",
        )
        entry = AuditLogEntry.from_dict(
            {
                **draft.to_dict(),
                "audit_hash": compute_audit_hash(entry=draft.to_dict(), prev_hash=prev_hash),
            }
        )
        return tx.add_audit(entry)

    def list_by_subject(self, subject_id: str) -> list[AuditLogEntry]:
        return self._store.list_audit_logs(subject_id)

    def verify_integrity(self, *, subject_id: str | None = None) -> dict[str, Any]:
        subjects = [subject_id] if subject_id else self._store.list_audit_subjects()
        checked = 0
        for subject in subjects:
            prev_hash = ""
            for expected_seq, entry in enumerate(self._store.list_audit_logs(subject), start=1):
                checked += 1
                row = entry.to_dict()
                if entry.seq != expected_seq:
                    return self._broken(checked, "seq_gap", entry)
                if entry.prev_hash != prev_hash:
                    return self._broken(checked, "prev_hash_mismatch", entry)
                if entry.audit_hash != compute_audit_hash(entry=row, prev_hash=entry.prev_hash):
                    return self._broken(checked, "audit_hash_mismatch", entry)
                prev_hash = entry.audit_hash
        return {
            "valid": True,
            "checked_count": checked,
            "subject_count": len(subjects),
        }

    @staticmethod
    def _broken(checked: int, reason: str, entry: AuditLogEntry) -> dict[str, Any]:
        return {
            "valid": False,
            "checked_count": checked,
            "reason": reason,
            "audit_id": entry.audit_id,
            "subject_id": entry.subject_id,
        }
