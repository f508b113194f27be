from __future__ import annotations

import json
import re
import threading
from typing import Any

from paydesk.domain import AuditLogEntry


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class InMemoryAuditLogsRepository:
    """Append-only; there is deliberately no update or delete."""

    def __init__(self, audit_logs: list[dict[str, Any]]) -> None:
        self._audit_logs = audit_logs
        self._lock = threading.Lock()

    def append(self, *, entry: AuditLogEntry) -> AuditLogEntry:
        with self._lock:
            self._audit_logs.append(entry.to_dict())
        return entry

    def list_for_subject(self, *, subject_id: str) -> list[AuditLogEntry]:
        rows = [AuditLogEntry.from_dict(x) for x in list(self._audit_logs) if x.get("subject_id") == subject_id]
        return sorted(rows, key=lambda x: (x.occurred_at, x.seq))

    def last_for_subject(self, *, subject_id: str) -> AuditLogEntry | None:
        rows = self.list_for_subject(subject_id=subject_id)
        return rows[-1] if rows else None

    def list_subjects(self) -> list[str]:
        seen: dict[str, None] = {}
        for row in list(self._audit_logs):
            seen.setdefault(str(row.get("subject_id")), None)
        return list(seen)


class PostgresAuditLogsRepository:
    def __init__(self, *, table_name: str = "audit_logs") -> None:
        self._table_name = _validate_identifier(table_name)

    def schema_statements(self) -> list[str]:
        return [
            f"""
            CREATE TABLE IF NOT EXISTS {self._table_name} (
                audit_id TEXT PRIMARY KEY,
                subject_id TEXT NOT NULL,
                seq INTEGER NOT NULL,
                action TEXT NOT NULL,
                occurred_at TIMESTAMPTZ NOT NULL,
                payload JSONB NOT NULL,
                UNIQUE (subject_id, seq)
            )
            """,
        ]

    def append(self, conn: Any, *, entry: AuditLogEntry) -> AuditLogEntry:
        item = entry.to_dict()
        sql = f"""
            INSERT INTO {self._table_name} (
                audit_id, subject_id, seq, action, occurred_at, payload
            ) VALUES (%s, %s, %s, %s, %s, %s::jsonb)
        """
        with conn.cursor() as cur:
            cur.execute(
                sql,
                (
                    item["audit_id"],
                    item["subject_id"],
                    item["seq"],
                    item["action"],
                    item["occurred_at"],
                    json.dumps(item, ensure_ascii=True, sort_keys=True),
                ),
            )
        return entry

    def list_for_subject(self, conn: Any, *, subject_id: str) -> list[AuditLogEntry]:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE subject_id = %s
            ORDER BY occurred_at ASC, seq ASC
        """
        with conn.cursor() as cur:
            cur.execute(sql, (subject_id,))
            rows = cur.fetchall() or []
        return [AuditLogEntry.from_dict(row[0]) for row in rows if isinstance(row[0], dict)]

    def last_for_subject(self, conn: Any, *, subject_id: str) -> AuditLogEntry | None:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE subject_id = %s
            ORDER BY seq DESC
            LIMIT 1
        """
        with conn.cursor() as cur:
            cur.execute(sql, (subject_id,))
            row = cur.fetchone()
        if row is None or not isinstance(row[0], dict):
            return None
        return AuditLogEntry.from_dict(row[0])

    def list_subjects(self, conn: Any) -> list[str]:
        with conn.cursor() as cur:
            cur.execute(f"SELECT DISTINCT subject_id FROM {self._table_name} ORDER BY subject_id ASC")
            rows = cur.fetchall() or []
        return [str(row[0]) for row in rows]
