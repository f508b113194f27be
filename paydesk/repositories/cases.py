from __future__ import annotations

import json
import re
import threading
from collections.abc import Callable
from typing import Any

from paydesk.domain import Case, CaseStatus


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class InMemoryCasesRepository:
    def __init__(self, cases: dict[str, dict[str, Any]], counters: dict[str, int]) -> None:
        self._cases = cases
        self._counters = counters
        self._lock = threading.Lock()

    def get(self, *, case_id: str) -> Case | None:
        row = self._cases.get(case_id)
        if row is None:
            return None
        return Case.from_dict(row)

    def upsert(self, *, case: Case) -> Case:
        self._cases[case.case_id] = case.to_dict()
        return case

    def list(
        self,
        *,
        predicate: Callable[[Case], bool] | None = None,
        status: CaseStatus | None = None,
    ) -> list[Case]:
        items = [Case.from_dict(row) for row in list(self._cases.values())]
        if status is not None:
            items = [x for x in items if x.status == status]
        if predicate is not None:
            items = [x for x in items if predicate(x)]
        return sorted(items, key=lambda x: x.created_at, reverse=True)

    def next_sequence(self, *, prefix: str) -> int:
        with self._lock:
            value = self._counters.get(prefix, 0) + 1
            self._counters[prefix] = value
            return value


class PostgresCasesRepository:
    """Cases table; the full record lives in ``payload`` with indexed copies of the filter columns."""

    def __init__(self, *, table_name: str = "cases", counters_table: str = "case_counters") -> None:
        self._table_name = _validate_identifier(table_name)
        self._counters_table = _validate_identifier(counters_table)

    def schema_statements(self) -> list[str]:
        return [
            f"""
            CREATE TABLE IF NOT EXISTS {self._table_name} (
                case_id TEXT PRIMARY KEY,
                case_no TEXT NOT NULL UNIQUE,
                customer_id TEXT NOT NULL,
                assigned_operator_id TEXT NULL,
                status TEXT NOT NULL,
                payment_status TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                payload JSONB NOT NULL
            )
            """,
            f"""
            CREATE TABLE IF NOT EXISTS {self._counters_table} (
                prefix TEXT PRIMARY KEY,
                value BIGINT NOT NULL
            )
            """,
        ]

    def get(self, conn: Any, *, case_id: str, for_update: bool = False) -> Case | None:
        sql = f"SELECT payload FROM {self._table_name} WHERE case_id = %s"
        if for_update:
            sql += " FOR UPDATE"
        with conn.cursor() as cur:
            cur.execute(sql, (case_id,))
            row = cur.fetchone()
        if row is None or not isinstance(row[0], dict):
            return None
        return Case.from_dict(row[0])

    def upsert(self, conn: Any, *, case: Case) -> Case:
        row = case.to_dict()
        sql = f"""
            INSERT INTO {self._table_name} (
                case_id, case_no, customer_id, assigned_operator_id, status, payment_status, created_at, payload
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s::jsonb)
            ON CONFLICT(case_id) DO UPDATE
            SET assigned_operator_id = EXCLUDED.assigned_operator_id,
                status = EXCLUDED.status,
                payment_status = EXCLUDED.payment_status,
                payload = EXCLUDED.payload
        """
        with conn.cursor() as cur:
            cur.execute(
                sql,
                (
                    row["case_id"],
                    row["case_no"],
                    row["customer_id"],
                    row["assigned_operator_id"],
                    row["status"],
                    row["payment_status"],
                    row["created_at"],
                    json.dumps(row, ensure_ascii=True, sort_keys=True),
                ),
            )
        return case

    def list(
        self,
        conn: Any,
        *,
        where_sql: str = "TRUE",
        params: tuple[Any, ...] = (),
        status: CaseStatus | None = None,
    ) -> list[Case]:
        sql = f"SELECT payload FROM {self._table_name} WHERE {where_sql}"
        args: list[Any] = list(params)
        if status is not None:
            sql += " AND status = %s"
            args.append(status.value)
        sql += " ORDER BY created_at DESC"
        with conn.cursor() as cur:
            cur.execute(sql, tuple(args))
            rows = cur.fetchall() or []
        return [Case.from_dict(row[0]) for row in rows if isinstance(row[0], dict)]

    def next_sequence(self, conn: Any, *, prefix: str) -> int:
        sql = f"""
            INSERT INTO {self._counters_table} (prefix, value) VALUES (%s, 1)
            ON CONFLICT(prefix) DO UPDATE SET value = {self._counters_table}.value + 1
            RETURNING value
        """
        with conn.cursor() as cur:
            cur.execute(sql, (prefix,))
            row = cur.fetchone()
        return int(row[0])
