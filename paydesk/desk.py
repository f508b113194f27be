from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from paydesk.audit import AuditTrail
from paydesk.collaborators import Collaborators, create_collaborators
from paydesk.config import Settings
from paydesk.domain import SYSTEM_ACTOR, Actor, utcnow
from paydesk.ledger import PaymentLedger
from paydesk.lifecycle import CaseLifecycle
from paydesk.outbox import OutboxRelay, build_consumers
from paydesk.retention import run_retention_sweep
from paydesk.store import InMemoryStore
from paydesk.unique_code import UniqueCodeAllocator


@dataclass
class Desk:
    """One wired set of services over a store; the HTTP app and scripts each build one."""

    settings: Settings
    store: InMemoryStore
    audit: AuditTrail
    lifecycle: CaseLifecycle
    ledger: PaymentLedger
    collaborators: Collaborators
    relay: OutboxRelay
    clock: Callable[[], datetime]

    def sweep_stale_drafts(self, *, now: datetime | None = None, actor: Actor = SYSTEM_ACTOR) -> dict[str, Any]:
        return run_retention_sweep(
            store=self.store,
            lifecycle=self.lifecycle,
            now=now or self.clock(),
            max_age=timedelta(hours=self.settings.draft_max_age_hours),
            actor=actor,
        )


def build_desk(
    *,
    store: InMemoryStore,
    settings: Settings | None = None,
    clock: Callable[[], datetime] = utcnow,
    allocator: UniqueCodeAllocator | None = None,
    collaborators: Collaborators | None = None,
) -> Desk:
    cfg = settings or Settings.from_env()
    audit = AuditTrail(store, clock=clock)
    wired = collaborators or create_collaborators(cfg)
    return Desk(
        settings=cfg,
        store=store,
        audit=audit,
        lifecycle=CaseLifecycle(store, audit, clock=clock),
        ledger=PaymentLedger(store, audit, settings=cfg, allocator=allocator, clock=clock),
        collaborators=wired,
        relay=OutboxRelay(store, build_consumers(wired)),
        clock=clock,
    )
