from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from paydesk.access_policy import visibility_predicate, visibility_sql
from paydesk.db.postgres import PostgresTxRunner
from paydesk.domain import Actor, AuditLogEntry, Case, CaseStatus, Payment, PaymentStatus
from paydesk.errors import ConflictError
from paydesk.locks import KeyedLocks
from paydesk.repositories.audit_logs import InMemoryAuditLogsRepository, PostgresAuditLogsRepository
from paydesk.repositories.cases import InMemoryCasesRepository, PostgresCasesRepository
from paydesk.repositories.outbox import InMemoryOutboxRepository, PostgresOutboxRepository
from paydesk.repositories.payments import InMemoryPaymentsRepository, PostgresPaymentsRepository

logger = logging.getLogger(__name__)


def case_lock_key(case_id: str) -> str:
    return f"case:{case_id}"


def payment_lock_key(payment_id: str) -> str:
    return f"payment:{payment_id}"


def outbox_lock_key(event_id: str) -> str:
    return f"outbox:{event_id}"


@dataclass
class IdempotencyRecord:
    fingerprint: str
    data: dict[str, Any]


class InMemoryTransaction:
    """Stages every write and applies them together on commit; nothing is visible before that."""

    def __init__(self, store: "InMemoryStore") -> None:
        self._store = store
        self._cases: dict[str, Case] = {}
        self._payments: dict[str, Payment] = {}
        self._audit: list[AuditLogEntry] = []
        self._outbox: list[dict[str, Any]] = []

    def get_case(self, case_id: str, *, for_update: bool = False) -> Case | None:
        staged = self._cases.get(case_id)
        if staged is not None:
            return staged.copy()
        return self._store.cases_repository.get(case_id=case_id)

    def save_case(self, case: Case) -> Case:
        self._cases[case.case_id] = case.copy()
        return case

    def next_case_sequence(self, prefix: str) -> int:
        return self._store.cases_repository.next_sequence(prefix=prefix)

    def get_payment(self, payment_id: str, *, for_update: bool = False) -> Payment | None:
        staged = self._payments.get(payment_id)
        if staged is not None:
            return staged.copy()
        return self._store.payments_repository.get(payment_id=payment_id)

    def get_payment_by_order_id(self, order_id: str) -> Payment | None:
        for staged in self._payments.values():
            if staged.order_id == order_id:
                return staged.copy()
        return self._store.payments_repository.get_by_order_id(order_id=order_id)

    def find_pending_payment(self, case_id: str) -> Payment | None:
        for staged in self._payments.values():
            if staged.case_id == case_id and staged.status == PaymentStatus.PENDING:
                return staged.copy()
        existing = self._store.payments_repository.find_pending_for_case(case_id=case_id)
        if existing is None or existing.payment_id in self._payments:
            return None
        return existing

    def pending_codes_for_base(self, base_amount: int) -> set[int]:
        codes = self._store.payments_repository.pending_codes_for_base(base_amount=base_amount)
        for staged in self._payments.values():
            if staged.status == PaymentStatus.PENDING and staged.payload.base_amount == base_amount:
                codes.add(staged.payload.unique_code)
        return codes

    def save_payment(self, payment: Payment) -> Payment:
        self._payments[payment.payment_id] = payment.copy()
        return payment

    def last_audit(self, subject_id: str) -> AuditLogEntry | None:
        for entry in reversed(self._audit):
            if entry.subject_id == subject_id:
                return entry
        return self._store.audit_repository.last_for_subject(subject_id=subject_id)

    def add_audit(self, entry: AuditLogEntry) -> AuditLogEntry:
        self._audit.append(entry)
        return entry

    def add_outbox_event(self, event: dict[str, Any]) -> dict[str, Any]:
        self._outbox.append(dict(event))
        return event

    def get_outbox_event(self, event_id: str) -> dict[str, Any] | None:
        for staged in self._outbox:
            if staged["event_id"] == event_id:
                return dict(staged)
        return self._store.outbox_repository.get(event_id=event_id)

    def update_outbox_event(self, event: dict[str, Any]) -> dict[str, Any]:
        self._outbox = [x for x in self._outbox if x["event_id"] != event["event_id"]]
        self._outbox.append(dict(event))
        return event

    def commit(self) -> None:
        for case in self._cases.values():
            self._store.cases_repository.upsert(case=case)
        for payment in self._payments.values():
            self._store.payments_repository.upsert(payment=payment)
        for entry in self._audit:
            self._store.audit_repository.append(entry=entry)
        for event in self._outbox:
            self._store.outbox_repository.update(event=event)


class InMemoryStore:
    backend_name = "memory"

    def __init__(self) -> None:
        self._locks = KeyedLocks()
        self.idempotency_records: dict[tuple[str, str], IdempotencyRecord] = {}
        self.cases: dict[str, dict[str, Any]] = {}
        self.case_counters: dict[str, int] = {}
        self.payments: dict[str, dict[str, Any]] = {}
        self.audit_logs: list[dict[str, Any]] = []
        self.outbox_events: dict[str, dict[str, Any]] = {}
        self.outbox_deliveries: dict[str, dict[str, Any]] = {}
        self._bind_repositories()

    def _bind_repositories(self) -> None:
        self.cases_repository = InMemoryCasesRepository(self.cases, self.case_counters)
        self.payments_repository = InMemoryPaymentsRepository(self.payments)
        self.audit_repository = InMemoryAuditLogsRepository(self.audit_logs)
        self.outbox_repository = InMemoryOutboxRepository(self.outbox_events, self.outbox_deliveries)

    def reset(self) -> None:
        self.idempotency_records.clear()
        self.cases.clear()
        self.case_counters.clear()
        self.payments.clear()
        self.audit_logs.clear()
        self.outbox_events.clear()
        self.outbox_deliveries.clear()
        self._locks.clear()

    @staticmethod
    def _fingerprint(payload: dict[str, Any]) -> str:
        return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)

    @contextmanager
    def begin(self, *lock_keys: str, actor_id: str = "system") -> Iterator[InMemoryTransaction]:
        with self._locks.hold_many(lock_keys):
            tx = InMemoryTransaction(self)
            yield tx
            tx.commit()

    def run_idempotent(
        self,
        *,
        endpoint: str,
        scope: str,
        idempotency_key: str,
        payload: dict[str, Any],
        execute: Callable[[], dict[str, Any]],
    ) -> dict[str, Any]:
        key = (f"{scope}:{endpoint}", idempotency_key)
        current_fingerprint = self._fingerprint(payload)
        with self._locks.hold(f"idem:{key[0]}:{key[1]}"):
            if key in self.idempotency_records:
                record = self.idempotency_records[key]
                if record.fingerprint != current_fingerprint:
                    raise ConflictError("same key with different payload", code="IDEMPOTENCY_CONFLICT")
                return record.data

            data = execute()
            self.idempotency_records[key] = IdempotencyRecord(
                fingerprint=current_fingerprint,
                data=data,
            )
            return data

    def get_case(self, case_id: str) -> Case | None:
        return self.cases_repository.get(case_id=case_id)

    def list_cases(self, *, actor: Actor | None = None, status: CaseStatus | None = None) -> list[Case]:
        predicate = None if actor is None else visibility_predicate(actor)
        return self.cases_repository.list(predicate=predicate, status=status)

    def get_payment(self, payment_id: str) -> Payment | None:
        return self.payments_repository.get(payment_id=payment_id)

    def get_payment_by_order_id(self, order_id: str) -> Payment | None:
        return self.payments_repository.get_by_order_id(order_id=order_id)

    def list_payments_for_case(self, case_id: str) -> list[Payment]:
        return self.payments_repository.list_for_case(case_id=case_id)

    def list_payments_by_status(self, status: PaymentStatus) -> list[Payment]:
        return self.payments_repository.list_by_status(status=status)

    def search_payments(
        self,
        *,
        amount: int,
        unique_code: int,
        order_id: str | None = None,
        statuses: set[PaymentStatus] | None = None,
    ) -> list[Payment]:
        return self.payments_repository.search(
            amount=amount,
            unique_code=unique_code,
            order_id=order_id,
            statuses=statuses,
        )

    def list_audit_logs(self, subject_id: str) -> list[AuditLogEntry]:
        return self.audit_repository.list_for_subject(subject_id=subject_id)

    def list_audit_subjects(self) -> list[str]:
        return self.audit_repository.list_subjects()

    def list_outbox_events(self, *, status: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        return self.outbox_repository.list(status=status, limit=limit)

    def get_outbox_delivery(self, *, event_id: str, consumer_name: str) -> dict[str, Any] | None:
        return self.outbox_repository.get_delivery(event_id=event_id, consumer_name=consumer_name)

    def add_outbox_delivery(self, *, record: dict[str, Any]) -> dict[str, Any]:
        with self._locks.hold(outbox_lock_key(record["event_id"])):
            return self.outbox_repository.add_delivery(record=record)


class PostgresTransaction:
    def __init__(self, conn: Any, store: "PostgresBackedStore") -> None:
        self._conn = conn
        self._store = store

    def get_case(self, case_id: str, *, for_update: bool = False) -> Case | None:
        return self._store.cases_repository.get(self._conn, case_id=case_id, for_update=for_update)

    def save_case(self, case: Case) -> Case:
        return self._store.cases_repository.upsert(self._conn, case=case)

    def next_case_sequence(self, prefix: str) -> int:
        return self._store.cases_repository.next_sequence(self._conn, prefix=prefix)

    def get_payment(self, payment_id: str, *, for_update: bool = False) -> Payment | None:
        return self._store.payments_repository.get(self._conn, payment_id=payment_id, for_update=for_update)

    def get_payment_by_order_id(self, order_id: str) -> Payment | None:
        return self._store.payments_repository.get_by_order_id(self._conn, order_id=order_id)

    def find_pending_payment(self, case_id: str) -> Payment | None:
        return self._store.payments_repository.find_pending_for_case(self._conn, case_id=case_id)

    def pending_codes_for_base(self, base_amount: int) -> set[int]:
        return self._store.payments_repository.pending_codes_for_base(self._conn, base_amount=base_amount)

    def save_payment(self, payment: Payment) -> Payment:
        return self._store.payments_repository.upsert(self._conn, payment=payment)

    def last_audit(self, subject_id: str) -> AuditLogEntry | None:
        return self._store.audit_repository.last_for_subject(self._conn, subject_id=subject_id)

    def add_audit(self, entry: AuditLogEntry) -> AuditLogEntry:
        return self._store.audit_repository.append(self._conn, entry=entry)

    def add_outbox_event(self, event: dict[str, Any]) -> dict[str, Any]:
        return self._store.outbox_repository.add(self._conn, event=event)

    def get_outbox_event(self, event_id: str) -> dict[str, Any] | None:
        return self._store.outbox_repository.get(self._conn, event_id=event_id)

    def update_outbox_event(self, event: dict[str, Any]) -> dict[str, Any]:
        return self._store.outbox_repository.update(self._conn, event=event)


class PostgresBackedStore(InMemoryStore):
    """Row-locked PostgreSQL persistence; idempotency records stay per process."""

    backend_name = "postgres"

    def __init__(self, *, dsn: str, tx_runner: PostgresTxRunner | None = None) -> None:
        super().__init__()
        self._tx_runner = tx_runner or PostgresTxRunner(dsn)
        self.cases_repository = PostgresCasesRepository()  # type: ignore[assignment]
        self.payments_repository = PostgresPaymentsRepository()  # type: ignore[assignment]
        self.audit_repository = PostgresAuditLogsRepository()  # type: ignore[assignment]
        self.outbox_repository = PostgresOutboxRepository()  # type: ignore[assignment]

    def ensure_schema(self) -> None:
        statements: list[str] = []
        for repo in (self.cases_repository, self.payments_repository, self.audit_repository, self.outbox_repository):
            statements.extend(repo.schema_statements())

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                for sql in statements:
                    cur.execute(sql)

        self._tx_runner.run_in_tx(fn=_op)

    def reset(self) -> None:
        self.idempotency_records.clear()

    @contextmanager
    def begin(self, *lock_keys: str, actor_id: str = "system") -> Iterator[PostgresTransaction]:
        # Row locks are taken by ``for_update`` reads inside the transaction.
        with self._tx_runner.transaction(actor_id=actor_id) as conn:
            yield PostgresTransaction(conn, self)

    def _read(self, fn: Callable[[Any], Any]) -> Any:
        return self._tx_runner.run_in_tx(fn=fn)

    def get_case(self, case_id: str) -> Case | None:
        return self._read(lambda conn: self.cases_repository.get(conn, case_id=case_id))

    def list_cases(self, *, actor: Actor | None = None, status: CaseStatus | None = None) -> list[Case]:
        where_sql, params = ("TRUE", ()) if actor is None else visibility_sql(actor)
        return self._read(
            lambda conn: self.cases_repository.list(conn, where_sql=where_sql, params=params, status=status)
        )

    def get_payment(self, payment_id: str) -> Payment | None:
        return self._read(lambda conn: self.payments_repository.get(conn, payment_id=payment_id))

    def get_payment_by_order_id(self, order_id: str) -> Payment | None:
        return self._read(lambda conn: self.payments_repository.get_by_order_id(conn, order_id=order_id))

    def list_payments_for_case(self, case_id: str) -> list[Payment]:
        return self._read(lambda conn: self.payments_repository.list_for_case(conn, case_id=case_id))

    def list_payments_by_status(self, status: PaymentStatus) -> list[Payment]:
        return self._read(lambda conn: self.payments_repository.list_by_status(conn, status=status))

    def search_payments(
        self,
        *,
        amount: int,
        unique_code: int,
        order_id: str | None = None,
        statuses: set[PaymentStatus] | None = None,
    ) -> list[Payment]:
        return self._read(
            lambda conn: self.payments_repository.search(
                conn,
                amount=amount,
                unique_code=unique_code,
                order_id=order_id,
                statuses=statuses,
            )
        )

    def list_audit_logs(self, subject_id: str) -> list[AuditLogEntry]:
        return self._read(lambda conn: self.audit_repository.list_for_subject(conn, subject_id=subject_id))

    def list_audit_subjects(self) -> list[str]:
        return self._read(lambda conn: self.audit_repository.list_subjects(conn))

    def list_outbox_events(self, *, status: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        return self._read(lambda conn: self.outbox_repository.list(conn, status=status, limit=limit))

    def get_outbox_delivery(self, *, event_id: str, consumer_name: str) -> dict[str, Any] | None:
        return self._read(
            lambda conn: self.outbox_repository.get_delivery(conn, event_id=event_id, consumer_name=consumer_name)
        )

    def add_outbox_delivery(self, *, record: dict[str, Any]) -> dict[str, Any]:
        return self._read(lambda conn: self.outbox_repository.add_delivery(conn, record=record))


def create_store_from_env(environ: Mapping[str, str] | None = None) -> InMemoryStore:
    env = os.environ if environ is None else environ
    backend = env.get("PAYDESK_STORE_BACKEND", "memory").strip().lower()
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when PAYDESK_STORE_BACKEND=postgres")
        pg_store = PostgresBackedStore(dsn=dsn)
        if env.get("POSTGRES_ENSURE_SCHEMA", "false").strip().lower() in {"1", "true", "yes", "on"}:
            pg_store.ensure_schema()
        return pg_store
    if backend != "memory":
        logger.warning("unknown PAYDESK_STORE_BACKEND=%s; using in-memory store", backend)
    return InMemoryStore()


store = create_store_from_env()
