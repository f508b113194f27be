from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from paydesk.domain import SYSTEM_ACTOR, Actor, Case, CaseStatus, PaymentStatus, utcnow
from paydesk.errors import ApiError

if TYPE_CHECKING:
    from paydesk.lifecycle import CaseLifecycle
    from paydesk.store import InMemoryStore

logger = logging.getLogger(__name__)

DEFAULT_DRAFT_MAX_AGE = timedelta(hours=24)


def should_cancel(case: Case, *, now: datetime, max_age: timedelta = DEFAULT_DRAFT_MAX_AGE) -> bool:
    """True for an unpaid draft strictly older than ``max_age``."""
    if case.status != CaseStatus.DRAFT or case.payment_status != PaymentStatus.PENDING:
        return False
    return now - case.created_at > max_age


def run_retention_sweep(
    *,
    store: InMemoryStore,
    lifecycle: CaseLifecycle,
    now: datetime | None = None,
    max_age: timedelta = DEFAULT_DRAFT_MAX_AGE,
    actor: Actor = SYSTEM_ACTOR,
) -> dict[str, Any]:
    current = now or utcnow()
    candidates = [
        case
        for case in store.list_cases(status=CaseStatus.DRAFT)
        if should_cancel(case, now=current, max_age=max_age)
    ]
    cancelled: list[str] = []
    errors: list[dict[str, Any]] = []
    for case in candidates:
        try:
            if lifecycle.cancel_stale_draft(actor, case.case_id, now=current, max_age=max_age):
                cancelled.append(case.case_id)
        except ApiError as exc:
            logger.warning("retention sweep failed case_id=%s code=%s error=%s", case.case_id, exc.code, exc.message)
            errors.append({"case_id": case.case_id, "code": exc.code, "message": exc.message})
        except Exception as exc:  # noqa: BLE001
            logger.exception("retention sweep crashed on case_id=%s", case.case_id)
            errors.append({"case_id": case.case_id, "code": "INTERNAL_ERROR", "message": str(exc)})
    logger.info(
        "retention sweep processed=%s cancelled=%s errors=%s",
        len(candidates),
        len(cancelled),
        len(errors),
    )
    return {
        "processed_count": len(candidates),
        "cancelled": cancelled,
        "errors": errors,
    }
