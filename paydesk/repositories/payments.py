from __future__ import annotations

import json
import re
from typing import Any

from paydesk.domain import Payment, PaymentStatus


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _matches(
    payment: Payment,
    *,
    amount: int,
    unique_code: int,
    order_id: str | None,
    statuses: set[PaymentStatus] | None,
) -> bool:
    if payment.amount != amount or payment.payload.unique_code != unique_code:
        return False
    if order_id is not None and payment.order_id != order_id:
        return False
    if statuses is not None and payment.status not in statuses:
        return False
    return True


class InMemoryPaymentsRepository:
    def __init__(self, payments: dict[str, dict[str, Any]]) -> None:
        self._payments = payments

    def get(self, *, payment_id: str) -> Payment | None:
        row = self._payments.get(payment_id)
        if row is None:
            return None
        return Payment.from_dict(row)

    def get_by_order_id(self, *, order_id: str) -> Payment | None:
        for row in list(self._payments.values()):
            if row.get("order_id") == order_id:
                return Payment.from_dict(row)
        return None

    def upsert(self, *, payment: Payment) -> Payment:
        self._payments[payment.payment_id] = payment.to_dict()
        return payment

    def list_for_case(self, *, case_id: str) -> list[Payment]:
        items = [Payment.from_dict(row) for row in list(self._payments.values()) if row.get("case_id") == case_id]
        return sorted(items, key=lambda x: x.created_at)

    def find_pending_for_case(self, *, case_id: str) -> Payment | None:
        for payment in self.list_for_case(case_id=case_id):
            if payment.status == PaymentStatus.PENDING:
                return payment
        return None

    def pending_codes_for_base(self, *, base_amount: int) -> set[int]:
        return {
            p.payload.unique_code
            for p in (Payment.from_dict(row) for row in list(self._payments.values()))
            if p.status == PaymentStatus.PENDING and p.payload.base_amount == base_amount
        }

    def search(
        self,
        *,
        amount: int,
        unique_code: int,
        order_id: str | None = None,
        statuses: set[PaymentStatus] | None = None,
    ) -> list[Payment]:
        items = [
            p
            for p in (Payment.from_dict(row) for row in list(self._payments.values()))
            if _matches(p, amount=amount, unique_code=unique_code, order_id=order_id, statuses=statuses)
        ]
        return sorted(items, key=lambda x: x.created_at)

    def list_by_status(self, *, status: PaymentStatus) -> list[Payment]:
        items = [Payment.from_dict(row) for row in list(self._payments.values()) if row.get("status") == status.value]
        return sorted(items, key=lambda x: x.created_at)


class PostgresPaymentsRepository:
    def __init__(self, *, table_name: str = "payments") -> None:
        self._table_name = _validate_identifier(table_name)

    def schema_statements(self) -> list[str]:
        return [
            f"""
            CREATE TABLE IF NOT EXISTS {self._table_name} (
                payment_id TEXT PRIMARY KEY,
                case_id TEXT NOT NULL,
                order_id TEXT NOT NULL UNIQUE,
                amount BIGINT NOT NULL,
                base_amount BIGINT NOT NULL,
                unique_code INTEGER NOT NULL,
                status TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                payload JSONB NOT NULL
            )
            """,
            f"""
            CREATE UNIQUE INDEX IF NOT EXISTS {self._table_name}_one_pending_per_case
            ON {self._table_name} (case_id) WHERE status = 'PENDING'
            """,
        ]

    def _fetch_one(self, conn: Any, sql: str, params: tuple[Any, ...]) -> Payment | None:
        with conn.cursor() as cur:
            cur.execute(sql, params)
            row = cur.fetchone()
        if row is None or not isinstance(row[0], dict):
            return None
        return Payment.from_dict(row[0])

    def _fetch_all(self, conn: Any, sql: str, params: tuple[Any, ...]) -> list[Payment]:
        with conn.cursor() as cur:
            cur.execute(sql, params)
            rows = cur.fetchall() or []
        return [Payment.from_dict(row[0]) for row in rows if isinstance(row[0], dict)]

    def get(self, conn: Any, *, payment_id: str, for_update: bool = False) -> Payment | None:
        sql = f"SELECT payload FROM {self._table_name} WHERE payment_id = %s"
        if for_update:
            sql += " FOR UPDATE"
        return self._fetch_one(conn, sql, (payment_id,))

    def get_by_order_id(self, conn: Any, *, order_id: str) -> Payment | None:
        return self._fetch_one(conn, f"SELECT payload FROM {self._table_name} WHERE order_id = %s", (order_id,))

    def upsert(self, conn: Any, *, payment: Payment) -> Payment:
        row = payment.to_dict()
        sql = f"""
            INSERT INTO {self._table_name} (
                payment_id, case_id, order_id, amount, base_amount, unique_code, status, created_at, payload
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb)
            ON CONFLICT(payment_id) DO UPDATE
            SET status = EXCLUDED.status,
                payload = EXCLUDED.payload
        """
        with conn.cursor() as cur:
            cur.execute(
                sql,
                (
                    row["payment_id"],
                    row["case_id"],
                    row["order_id"],
                    row["amount"],
                    payment.payload.base_amount,
                    payment.payload.unique_code,
                    row["status"],
                    row["created_at"],
                    json.dumps(row, ensure_ascii=True, sort_keys=True),
                ),
            )
        return payment

    def list_for_case(self, conn: Any, *, case_id: str) -> list[Payment]:
        return self._fetch_all(
            conn,
            f"SELECT payload FROM {self._table_name} WHERE case_id = %s ORDER BY created_at ASC",
            (case_id,),
        )

    def find_pending_for_case(self, conn: Any, *, case_id: str) -> Payment | None:
        return self._fetch_one(
            conn,
            f"SELECT payload FROM {self._table_name} WHERE case_id = %s AND status = 'PENDING' LIMIT 1",
            (case_id,),
        )

    def pending_codes_for_base(self, conn: Any, *, base_amount: int) -> set[int]:
        with conn.cursor() as cur:
            cur.execute(
                f"SELECT unique_code FROM {self._table_name} WHERE base_amount = %s AND status = 'PENDING'",
                (base_amount,),
            )
            rows = cur.fetchall() or []
        return {int(row[0]) for row in rows}

    def search(
        self,
        conn: Any,
        *,
        amount: int,
        unique_code: int,
        order_id: str | None = None,
        statuses: set[PaymentStatus] | None = None,
    ) -> list[Payment]:
        sql = f"SELECT payload FROM {self._table_name} WHERE amount = %s AND unique_code = %s"
        args: list[Any] = [amount, unique_code]
        if order_id is not None:
            sql += " AND order_id = %s"
            args.append(order_id)
        if statuses is not None:
            sql += " AND status = ANY(%s)"
            args.append(sorted(s.value for s in statuses))
        sql += " ORDER BY created_at ASC"
        return self._fetch_all(conn, sql, tuple(args))

    def list_by_status(self, conn: Any, *, status: PaymentStatus) -> list[Payment]:
        return self._fetch_all(
            conn,
            f"SELECT payload FROM {self._table_name} WHERE status = %s ORDER BY created_at ASC",
            (status.value,),
        )
