from __future__ import annotations

import json
import re
from typing import Any


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def delivery_key(*, event_id: str, consumer_name: str) -> str:
    return f"{event_id}:{consumer_name}"


class InMemoryOutboxRepository:
    def __init__(self, events: dict[str, dict[str, Any]], deliveries: dict[str, dict[str, Any]]) -> None:
        self._events = events
        self._deliveries = deliveries

    def add(self, *, event: dict[str, Any]) -> dict[str, Any]:
        self._events[str(event["event_id"])] = dict(event)
        return dict(event)

    def get(self, *, event_id: str) -> dict[str, Any] | None:
        event = self._events.get(event_id)
        return None if event is None else dict(event)

    def update(self, *, event: dict[str, Any]) -> dict[str, Any]:
        self._events[str(event["event_id"])] = dict(event)
        return dict(event)

    def list(self, *, status: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        items = [dict(x) for x in list(self._events.values())]
        if status:
            items = [x for x in items if x.get("status") == status]
        items = sorted(items, key=lambda x: x.get("created_at", ""))
        return items[: max(1, min(limit, 1000))]

    def get_delivery(self, *, event_id: str, consumer_name: str) -> dict[str, Any] | None:
        record = self._deliveries.get(delivery_key(event_id=event_id, consumer_name=consumer_name))
        return None if record is None else dict(record)

    def add_delivery(self, *, record: dict[str, Any]) -> dict[str, Any]:
        key = delivery_key(event_id=record["event_id"], consumer_name=record["consumer_name"])
        existing = self._deliveries.get(key)
        if existing is not None:
            return dict(existing)
        self._deliveries[key] = dict(record)
        return dict(record)


class PostgresOutboxRepository:
    def __init__(self, *, table_name: str = "outbox_events", deliveries_table: str = "outbox_deliveries") -> None:
        self._table_name = _validate_identifier(table_name)
        self._deliveries_table = _validate_identifier(deliveries_table)

    def schema_statements(self) -> list[str]:
        return [
            f"""
            CREATE TABLE IF NOT EXISTS {self._table_name} (
                event_id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                payload JSONB NOT NULL
            )
            """,
            f"""
            CREATE TABLE IF NOT EXISTS {self._deliveries_table} (
                event_id TEXT NOT NULL,
                consumer_name TEXT NOT NULL,
                payload JSONB NOT NULL,
                PRIMARY KEY (event_id, consumer_name)
            )
            """,
        ]

    def add(self, conn: Any, *, event: dict[str, Any]) -> dict[str, Any]:
        return self.update(conn, event=event)

    def get(self, conn: Any, *, event_id: str) -> dict[str, Any] | None:
        with conn.cursor() as cur:
            cur.execute(f"SELECT payload FROM {self._table_name} WHERE event_id = %s", (event_id,))
            row = cur.fetchone()
        if row is None or not isinstance(row[0], dict):
            return None
        return row[0]

    def update(self, conn: Any, *, event: dict[str, Any]) -> dict[str, Any]:
        item = dict(event)
        sql = f"""
            INSERT INTO {self._table_name} (event_id, status, created_at, payload)
            VALUES (%s, %s, %s, %s::jsonb)
            ON CONFLICT(event_id) DO UPDATE
            SET status = EXCLUDED.status,
                payload = EXCLUDED.payload
        """
        with conn.cursor() as cur:
            cur.execute(
                sql,
                (
                    item["event_id"],
                    item["status"],
                    item["created_at"],
                    json.dumps(item, ensure_ascii=True, sort_keys=True),
                ),
            )
        return item

    def list(self, conn: Any, *, status: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        sql = f"SELECT payload FROM {self._table_name}"
        args: list[Any] = []
        if status:
            sql += " WHERE status = %s"
            args.append(status)
        sql += " ORDER BY created_at ASC LIMIT %s"
        args.append(max(1, min(limit, 1000)))
        with conn.cursor() as cur:
            cur.execute(sql, tuple(args))
            rows = cur.fetchall() or []
        return [row[0] for row in rows if isinstance(row[0], dict)]

    def get_delivery(self, conn: Any, *, event_id: str, consumer_name: str) -> dict[str, Any] | None:
        with conn.cursor() as cur:
            cur.execute(
                f"SELECT payload FROM {self._deliveries_table} WHERE event_id = %s AND consumer_name = %s",
                (event_id, consumer_name),
            )
            row = cur.fetchone()
        if row is None or not isinstance(row[0], dict):
            return None
        return row[0]

    def add_delivery(self, conn: Any, *, record: dict[str, Any]) -> dict[str, Any]:
        sql = f"""
            INSERT INTO {self._deliveries_table} (event_id, consumer_name, payload)
            VALUES (%s, %s, %s::jsonb)
            ON CONFLICT(event_id, consumer_name) DO NOTHING
        """
        with conn.cursor() as cur:
            cur.execute(
                sql,
                (
                    record["event_id"],
                    record["consumer_name"],
                    json.dumps(record, ensure_ascii=True, sort_keys=True),
                ),
            )
        return dict(record)
