"""Home-visit dispatch lifecycle.

pending -> assigned -> en_route -> arrived -> completed, with ``cancelled``
reachable from every non-terminal status. Reception/admin dispatch and may
cancel at any point; the assigned driver drives the trip and may only cancel
before leaving.
"""
from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Any, Mapping, NamedTuple

from .errors import AuthorizationDenied, InvalidTransition, ValidationError
from .models import (
    ADMIN_ROLES,
    Driver,
    HomeVisit,
    HomeVisitCreate,
    HomeVisitStatus,
    Role,
    SessionContext,
    WireModel,
)
from .schedule import normalize_time


class HomeVisitAction(str, Enum):
    ASSIGN = "assign"
    START_TRIP = "start"
    ARRIVE = "arrived"
    COMPLETE = "complete"
    CANCEL = "cancel"


V = HomeVisitStatus

DISPATCHERS = frozenset({Role.RECEPTION, *ADMIN_ROLES})
TERMINAL_STATUSES = frozenset({V.COMPLETED, V.CANCELLED})

# Trip steps only the assigned driver performs
DRIVER_STEPS: dict[HomeVisitAction, tuple[HomeVisitStatus, HomeVisitStatus]] = {
    HomeVisitAction.START_TRIP: (V.ASSIGNED, V.EN_ROUTE),
    HomeVisitAction.ARRIVE: (V.EN_ROUTE, V.ARRIVED),
    HomeVisitAction.COMPLETE: (V.ARRIVED, V.COMPLETED),
}


class HomeVisitPayload(WireModel):
    driver_id: str | None = None
    reason: str | None = None


class DriverEffect(NamedTuple):
    """Busy marker change the backend must persist with the visit."""

    driver_id: str
    busy: bool


def coerce_action(action: HomeVisitAction | str) -> HomeVisitAction:
    try:
        return HomeVisitAction(action)
    except ValueError:
        raise InvalidTransition(f"Unknown home visit action {action!r}") from None


def coerce_payload(payload: HomeVisitPayload | Mapping[str, Any] | None) -> HomeVisitPayload:
    if payload is None:
        return HomeVisitPayload()
    if isinstance(payload, HomeVisitPayload):
        return payload
    return HomeVisitPayload.model_validate(dict(payload))


def _is_assigned_driver(visit: HomeVisit, actor: SessionContext) -> bool:
    return actor.role is Role.DRIVER and visit.driver_id is not None and visit.driver_id == actor.profile_id


def next_state(
    visit: HomeVisit,
    action: HomeVisitAction | str,
    actor: SessionContext,
    payload: HomeVisitPayload | Mapping[str, Any] | None = None,
    driver: Driver | None = None,
) -> HomeVisitStatus:
    """Status ``action`` leads to. ``driver`` is the candidate for ``assign``."""
    action = coerce_action(action)
    current = visit.status
    if current in TERMINAL_STATUSES:
        raise InvalidTransition(f"Home visit {visit.id} is already {current.value}")

    if action is HomeVisitAction.ASSIGN:
        if current is not V.PENDING:
            raise InvalidTransition(f"Cannot assign a home visit that is {current.value}")
        if actor.role not in DISPATCHERS:
            raise AuthorizationDenied("Only reception or admin can assign drivers")
        data = coerce_payload(payload)
        driver_id = data.driver_id or (driver.id if driver else None)
        if not driver_id:
            raise ValidationError("driver_id is required to assign a home visit")
        if driver is None or driver.id != driver_id:
            raise ValidationError(f"Driver {driver_id} was not found")
        if not driver.dispatchable:
            raise ValidationError(f"Driver {driver_id} is not available")
        return V.ASSIGNED

    if action is HomeVisitAction.CANCEL:
        if actor.role in DISPATCHERS:
            return V.CANCELLED
        if _is_assigned_driver(visit, actor):
            if current is V.ASSIGNED:
                return V.CANCELLED
            raise AuthorizationDenied(f"Driver cannot cancel a visit that is {current.value}")
        raise AuthorizationDenied("Only reception, admin or the assigned driver can cancel")

    source, target = DRIVER_STEPS[action]
    if current is not source:
        raise InvalidTransition(f"Cannot {action.value} a home visit that is {current.value}")
    if not _is_assigned_driver(visit, actor):
        raise AuthorizationDenied(f"Only the assigned driver can {action.value} this visit")
    return target


def apply_transition(
    visit: HomeVisit,
    action: HomeVisitAction | str,
    actor: SessionContext,
    payload: HomeVisitPayload | Mapping[str, Any] | None = None,
    driver: Driver | None = None,
    now: dt.datetime | None = None,
) -> tuple[HomeVisit, DriverEffect | None]:
    """Return the transitioned copy plus the driver busy-marker change, if any."""
    target = next_state(visit, action, actor, payload, driver)
    action = HomeVisitAction(action)
    data = coerce_payload(payload)

    changes: dict[str, Any] = {"status": target, "updated_at": now or dt.datetime.now(dt.timezone.utc)}
    effect = None
    if action is HomeVisitAction.ASSIGN:
        changes["driver_id"] = driver.id
        effect = DriverEffect(driver.id, busy=True)
    elif target in TERMINAL_STATUSES and visit.driver_id:
        effect = DriverEffect(visit.driver_id, busy=False)
    if action is HomeVisitAction.CANCEL and data.reason:
        changes["cancel_reason"] = data.reason.strip()
    return visit.model_copy(update=changes), effect


def build_home_visit(
    data: HomeVisitCreate,
    actor: SessionContext,
    visit_id: str,
    now: dt.datetime | None = None,
) -> HomeVisit:
    if actor.role not in DISPATCHERS:
        raise AuthorizationDenied("Only reception or admin can create home visits")
    if not data.address.strip():
        raise ValidationError("Address is required for a home visit")
    return HomeVisit(
        id=visit_id,
        patient_id=data.patient_id,
        address=data.address.strip(),
        scheduled_date=data.scheduled_date,
        scheduled_time=normalize_time(data.scheduled_time),
        status=V.PENDING,
        notes=data.notes,
        created_at=now or dt.datetime.now(dt.timezone.utc),
    )
