"""Role-tiered access decisions.

Everything here is a pure function of (actor, resource). List filtering and
single-item fetches share ``visibility_predicate`` so the two paths can never
disagree about which cases an actor may see.
"""

from __future__ import annotations

from collections.abc import Callable
from enum import StrEnum
from typing import Any

from paydesk.domain import Actor, Case, Role
from paydesk.errors import ForbiddenError


class Permission(StrEnum):
    CASE_READ_OWN = "case:read:own"
    CASE_READ_ASSIGNED = "case:read:assigned"
    CASE_READ_ALL = "case:read:all"
    CASE_CREATE = "case:create"
    CASE_UPDATE_STATUS = "case:update:status"
    CASE_ASSIGN = "case:assign"
    PAYMENT_CREATE = "payment:create"
    PAYMENT_RESOLVE = "payment:resolve"
    PAYMENT_REOPEN = "payment:reopen"
    AUDIT_READ = "audit:read"
    OPS_SWEEP = "ops:sweep"


ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.CUSTOMER: frozenset(
        {
            Permission.CASE_READ_OWN,
            Permission.CASE_CREATE,
            Permission.PAYMENT_CREATE,
        }
    ),
    Role.AGENT: frozenset(
        {
            Permission.CASE_READ_OWN,
            Permission.CASE_READ_ASSIGNED,
            Permission.CASE_UPDATE_STATUS,
            Permission.PAYMENT_CREATE,
            Permission.PAYMENT_RESOLVE,
            Permission.AUDIT_READ,
        }
    ),
    Role.ADMIN: frozenset(Permission),
}


def has_permission(actor: Actor, permission: Permission) -> bool:
    return permission in ROLE_PERMISSIONS.get(actor.role, frozenset())


def can_view_case(actor: Actor, case: Case) -> bool:
    if actor.role == Role.ADMIN:
        return True
    if actor.role == Role.AGENT:
        return case.assigned_operator_id is None or case.assigned_operator_id == actor.actor_id
    if actor.role == Role.CUSTOMER:
        return case.customer_id == actor.actor_id
    return False


def visibility_predicate(actor: Actor) -> Callable[[Case], bool]:
    return lambda case: can_view_case(actor, case)


def visibility_sql(actor: Actor) -> tuple[str, tuple[Any, ...]]:
    """WHERE fragment equivalent to ``can_view_case`` for the cases table."""
    if actor.role == Role.ADMIN:
        return "TRUE", ()
    if actor.role == Role.AGENT:
        return "(assigned_operator_id IS NULL OR assigned_operator_id = %s)", (actor.actor_id,)
    if actor.role == Role.CUSTOMER:
        return "customer_id = %s", (actor.actor_id,)
    return "FALSE", ()


def can_transition(actor: Actor, case: Case) -> bool:
    if not has_permission(actor, Permission.CASE_UPDATE_STATUS):
        return False
    return can_view_case(actor, case)


def can_assign(actor: Actor) -> bool:
    return has_permission(actor, Permission.CASE_ASSIGN)


def can_create_payment(actor: Actor, case: Case) -> bool:
    if not has_permission(actor, Permission.PAYMENT_CREATE):
        return False
    if actor.role == Role.CUSTOMER:
        return case.customer_id == actor.actor_id
    return True


def can_resolve_payment(actor: Actor) -> bool:
    return has_permission(actor, Permission.PAYMENT_RESOLVE)


def can_reopen_payment(actor: Actor) -> bool:
    return has_permission(actor, Permission.PAYMENT_REOPEN)


def can_view_audit(actor: Actor, case: Case) -> bool:
    return has_permission(actor, Permission.AUDIT_READ) and can_view_case(actor, case)


def require(allowed: bool, message: str = "operation not permitted") -> None:
    if not allowed:
        raise ForbiddenError(message)
