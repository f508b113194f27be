from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from paydesk.collaborators import Collaborators
from paydesk.domain import utcnow
from paydesk.errors import DependencyError, NotFoundError
from paydesk.store import InMemoryStore, outbox_lock_key

logger = logging.getLogger(__name__)

CASE_CREATED = "case.created"
CASE_STATUS_CHANGED = "case.status_changed"
CASE_OPERATOR_ASSIGNED = "case.operator_assigned"
PAYMENT_CREATED = "payment.created"
PAYMENT_CONFIRMED = "payment.confirmed"
PAYMENT_REJECTED = "payment.rejected"
PAYMENT_REOPENED = "payment.reopened"
PAYMENT_FAILED = "payment.failed"
PAYMENT_EXPIRED = "payment.expired"


def new_outbox_event(*, event_type: str, aggregate_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "event_id": f"evt_{uuid.uuid4().hex[:12]}",
        "event_type": event_type,
        "aggregate_id": aggregate_id,
        "payload": dict(payload),
        "status": "pending",
        "attempts": 0,
        "last_error": None,
        "created_at": utcnow().isoformat(),
        "published_at": None,
    }


@dataclass(frozen=True)
class Consumer:
    name: str
    event_types: frozenset[str]
    handle: Callable[[dict[str, Any]], Any]

    def accepts(self, event_type: str) -> bool:
        return "*" in self.event_types or event_type in self.event_types


def build_consumers(collaborators: Collaborators) -> list[Consumer]:
    def archive_receipt(event: dict[str, Any]) -> dict[str, Any]:
        payload = event["payload"]
        receipt = json.dumps(payload, ensure_ascii=True, sort_keys=True, default=str).encode("utf-8")
        stored = collaborators.documents.upload(
            content=receipt,
            filename=f"receipt-{payload.get('order_id', event['aggregate_id'])}.json",
            mime_type="application/json",
            folder_ref=str(payload.get("case_no") or event["aggregate_id"]),
        )
        return {"file_id": stored.file_id, "url": stored.url}

    def notify(event: dict[str, Any]) -> bool:
        return collaborators.messenger.send({"event_type": event["event_type"], **event["payload"]})

    def mirror(event: dict[str, Any]) -> bool:
        payload = event["payload"]
        delta = {k: v for k, v in payload.items() if k in {"status", "payment_status", "assigned_operator_id"}}
        delta["last_event"] = event["event_type"]
        return collaborators.sheet.push(str(payload.get("case_no") or event["aggregate_id"]), delta)

    return [
        Consumer(name="document_archive", event_types=frozenset({PAYMENT_CONFIRMED}), handle=archive_receipt),
        Consumer(
            name="messenger",
            event_types=frozenset({CASE_CREATED, CASE_STATUS_CHANGED, PAYMENT_CONFIRMED, PAYMENT_REJECTED}),
            handle=notify,
        ),
        Consumer(name="sheet_mirror", event_types=frozenset({"*"}), handle=mirror),
    ]


class OutboxRelay:
    """Delivers committed events to collaborators, at most once per consumer.

    A failing collaborator leaves the event pending with ``attempts`` and
    ``last_error`` updated; consumers that already succeeded are skipped on
    the next relay because their delivery record exists.
    """

    def __init__(self, store: InMemoryStore, consumers: list[Consumer]) -> None:
        self._store = store
        self._consumers = consumers

    def relay(self, *, limit: int = 100) -> dict[str, Any]:
        published: list[str] = []
        failed: list[dict[str, Any]] = []
        for event in self._store.list_outbox_events(status="pending", limit=limit):
            errors = self._deliver(event)
            if errors:
                self._record_failure(event["event_id"], errors)
                failed.append({"event_id": event["event_id"], "errors": errors})
                continue
            self.mark_published(event["event_id"])
            published.append(event["event_id"])
        return {
            "published_count": len(published),
            "failed_count": len(failed),
            "published": published,
            "failed": failed,
        }

    def _deliver(self, event: dict[str, Any]) -> list[str]:
        errors: list[str] = []
        for consumer in self._consumers:
            if not consumer.accepts(str(event["event_type"])):
                continue
            existing = self._store.get_outbox_delivery(event_id=event["event_id"], consumer_name=consumer.name)
            if existing is not None:
                continue
            try:
                result = consumer.handle(event)
            except DependencyError as exc:
                logger.warning(
                    "outbox delivery failed event_id=%s consumer=%s collaborator=%s error=%s",
                    event["event_id"],
                    consumer.name,
                    exc.collaborator,
                    exc.message,
                )
                errors.append(f"{consumer.name}: {exc.message}")
                continue
            self._store.add_outbox_delivery(
                record={
                    "delivery_id": f"odl_{uuid.uuid4().hex[:12]}",
                    "event_id": event["event_id"],
                    "consumer_name": consumer.name,
                    "result": result if isinstance(result, dict) else {"ok": bool(result)},
                    "delivered_at": utcnow().isoformat(),
                }
            )
        return errors

    def _record_failure(self, event_id: str, errors: list[str]) -> None:
        with self._store.begin(outbox_lock_key(event_id)) as tx:
            event = tx.get_outbox_event(event_id)
            if event is None:
                return
            event["attempts"] = int(event.get("attempts") or 0) + 1
            event["last_error"] = "; ".join(errors)
            tx.update_outbox_event(event)

    def mark_published(self, event_id: str) -> dict[str, Any]:
        with self._store.begin(outbox_lock_key(event_id)) as tx:
            event = tx.get_outbox_event(event_id)
            if event is None:
                raise NotFoundError("outbox event not found", code="OUTBOX_EVENT_NOT_FOUND")
            if event.get("status") != "published":
                event["status"] = "published"
                event["published_at"] = utcnow().isoformat()
                event["attempts"] = int(event.get("attempts") or 0) + 1
                tx.update_outbox_event(event)
            return event
