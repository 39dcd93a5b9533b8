"""
Authorization policy gate.

A decision table keyed by transition. Each row lists the roles that may
perform the transition on any reservation, and the relations (owner,
assigned driver) that grant it regardless of role. The gate itself is a
pure function, `authorize` only adds the raise.
"""
import enum
from typing import Iterable

from fleetbook.core.entities import APPROVER_ROLES, REQUESTER_ROLES, Actor, Reservation, RoleName
from fleetbook.core.errors import ForbiddenError


class Transition(str, enum.Enum):
    CREATE     = "create"
    RESCHEDULE = "reschedule"
    APPROVE    = "approve"
    REJECT     = "reject"
    CANCEL     = "cancel"
    CHECK_IN   = "check in"
    CHECK_OUT  = "check out"
    VIEW       = "view"


class Relation(str, enum.Enum):
    OWNER           = "OWNER"
    ASSIGNED_DRIVER = "ASSIGNED_DRIVER"


_NOBODY = frozenset()

# transition -> (roles allowed on any reservation, relations allowed for any role)
POLICY: dict[Transition, tuple[frozenset, frozenset]] = {
    Transition.CREATE:     (REQUESTER_ROLES, _NOBODY),
    Transition.APPROVE:    (APPROVER_ROLES,  _NOBODY),
    Transition.REJECT:     (APPROVER_ROLES,  _NOBODY),
    Transition.CANCEL:     (APPROVER_ROLES,  frozenset({Relation.OWNER})),
    Transition.RESCHEDULE: (APPROVER_ROLES,  frozenset({Relation.OWNER})),
    Transition.CHECK_IN:   (_NOBODY,         frozenset({Relation.OWNER, Relation.ASSIGNED_DRIVER})),
    Transition.CHECK_OUT:  (_NOBODY,         frozenset({Relation.OWNER, Relation.ASSIGNED_DRIVER})),
    Transition.VIEW:       (APPROVER_ROLES,  frozenset({Relation.OWNER, Relation.ASSIGNED_DRIVER})),
}


def relations_of(actor: Actor, reservation: Reservation | None) -> frozenset:
    if reservation is None:
        return _NOBODY
    found = set()
    if reservation.requesterId == actor.id:
        found.add(Relation.OWNER)
    if reservation.driverId is not None and reservation.driverId == actor.id:
        found.add(Relation.ASSIGNED_DRIVER)
    return frozenset(found)


def is_permitted(role: RoleName, relations: Iterable[Relation], transition: Transition) -> bool:
    roles, granting_relations = POLICY[transition]
    if role in roles:
        return True
    return bool(granting_relations & frozenset(relations))


def authorize(actor: Actor, reservation: Reservation | None, transition: Transition) -> None:
    """Raise ForbiddenError unless `actor` may perform `transition`."""
    if not is_permitted(actor.role, relations_of(actor, reservation), transition):
        raise ForbiddenError(f"Role {actor.role.value} may not {transition.value} this reservation")
