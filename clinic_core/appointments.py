"""Appointment lifecycle.

pending -> confirmed -> in_progress -> completed is the happy path; pending can
be rejected, pending/confirmed can be cancelled, confirmed can end as a no-show.
``completed``, ``cancelled``, ``rejected`` and ``no_show`` are sinks.
"""
from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Any, Iterable, Mapping, NamedTuple

from .errors import AuthorizationDenied, InvalidTransition, SlotUnavailable, ValidationError
from .models import (
    ADMIN_ROLES,
    Appointment,
    AppointmentCreate,
    AppointmentStatus,
    DoctorSchedule,
    Role,
    SessionContext,
    WireModel,
)
from .schedule import compute_slots, is_slot_bookable, normalize_time


class AppointmentAction(str, Enum):
    CONFIRM = "confirm"
    REJECT = "reject"
    CANCEL = "cancel"
    START = "start"
    COMPLETE = "complete"
    NO_SHOW = "no_show"


class Rule(NamedTuple):
    sources: frozenset
    target: AppointmentStatus
    actors: frozenset


S = AppointmentStatus

TRANSITIONS: dict[AppointmentAction, Rule] = {
    AppointmentAction.CONFIRM: Rule(frozenset({S.PENDING}), S.CONFIRMED, frozenset({Role.DOCTOR})),
    AppointmentAction.REJECT: Rule(frozenset({S.PENDING}), S.REJECTED, frozenset({Role.DOCTOR})),
    AppointmentAction.CANCEL: Rule(
        frozenset({S.PENDING, S.CONFIRMED}),
        S.CANCELLED,
        frozenset({Role.PATIENT, Role.RECEPTION, *ADMIN_ROLES}),
    ),
    AppointmentAction.START: Rule(frozenset({S.CONFIRMED}), S.IN_PROGRESS, frozenset({Role.DOCTOR, Role.RECEPTION})),
    AppointmentAction.COMPLETE: Rule(frozenset({S.CONFIRMED, S.IN_PROGRESS}), S.COMPLETED, frozenset({Role.DOCTOR})),
    AppointmentAction.NO_SHOW: Rule(frozenset({S.CONFIRMED}), S.NO_SHOW, frozenset({Role.RECEPTION})),
}

TERMINAL_STATUSES = frozenset({S.COMPLETED, S.CANCELLED, S.REJECTED, S.NO_SHOW})

CREATOR_ROLES = frozenset({Role.PATIENT, Role.RECEPTION})

# Actions after which the patient hears from the clinic
NOTIFY_PATIENT_ON = frozenset({AppointmentAction.CONFIRM, AppointmentAction.REJECT})


class AppointmentPayload(WireModel):
    reason: str | None = None
    doctor_notes: str | None = None


def _coerce_action(action: AppointmentAction | str) -> AppointmentAction:
    try:
        return AppointmentAction(action)
    except ValueError:
        raise InvalidTransition(f"Unknown appointment action {action!r}") from None


def _coerce_payload(payload: AppointmentPayload | Mapping[str, Any] | None) -> AppointmentPayload:
    if payload is None:
        return AppointmentPayload()
    if isinstance(payload, AppointmentPayload):
        return payload
    return AppointmentPayload.model_validate(dict(payload))


def _check_owner(appointment: Appointment, actor: SessionContext) -> None:
    if actor.role is Role.PATIENT and appointment.patient_id != actor.user_id:
        raise AuthorizationDenied(f"Appointment {appointment.id} belongs to another patient")
    if actor.role is Role.DOCTOR and appointment.doctor_id != actor.profile_id:
        raise AuthorizationDenied(f"Appointment {appointment.id} is in another doctor's queue")


def next_state(
    appointment: Appointment,
    action: AppointmentAction | str,
    actor: SessionContext,
    payload: AppointmentPayload | Mapping[str, Any] | None = None,
) -> AppointmentStatus:
    """Status ``action`` leads to, or raise without touching ``appointment``."""
    action = _coerce_action(action)
    current = appointment.status
    if current in TERMINAL_STATUSES:
        raise InvalidTransition(f"Appointment {appointment.id} is already {current.value}")

    rule = TRANSITIONS[action]
    if current not in rule.sources:
        raise InvalidTransition(f"Cannot {action.value} an appointment that is {current.value}")
    if actor.role not in rule.actors:
        role = actor.role.value if actor.role else "anonymous"
        raise AuthorizationDenied(f"Role {role} cannot {action.value} appointments")
    _check_owner(appointment, actor)

    data = _coerce_payload(payload)
    if action is AppointmentAction.REJECT and not (data.reason or "").strip():
        raise ValidationError("A reason is required to reject an appointment")
    return rule.target


def apply_transition(
    appointment: Appointment,
    action: AppointmentAction | str,
    actor: SessionContext,
    payload: AppointmentPayload | Mapping[str, Any] | None = None,
    now: dt.datetime | None = None,
) -> Appointment:
    """Return a transitioned copy; the original is left as it was."""
    target = next_state(appointment, action, actor, payload)
    action = AppointmentAction(action)
    data = _coerce_payload(payload)

    changes: dict[str, Any] = {"status": target, "updated_at": now or dt.datetime.now(dt.timezone.utc)}
    if action in (AppointmentAction.CANCEL, AppointmentAction.REJECT) and data.reason:
        changes["cancel_reason"] = data.reason.strip()
    if action is AppointmentAction.COMPLETE and data.doctor_notes:
        changes["doctor_notes"] = data.doctor_notes
    return appointment.model_copy(update=changes)


def available_actions(appointment: Appointment, actor: SessionContext) -> list[AppointmentAction]:
    """Actions the UI may offer ``actor``; everything else should be disabled."""
    allowed = []
    for action in AppointmentAction:
        payload = {"reason": "-"} if action is AppointmentAction.REJECT else None
        try:
            next_state(appointment, action, actor, payload)
        except (InvalidTransition, AuthorizationDenied):
            continue
        allowed.append(action)
    return allowed


def build_appointment(
    data: AppointmentCreate,
    actor: SessionContext,
    schedules: Iterable[DoctorSchedule],
    existing: Iterable[Appointment],
    appointment_id: str,
    now: dt.datetime | None = None,
) -> Appointment:
    """Validate a booking against fresh schedule data and return it as ``pending``."""
    if actor.role not in CREATOR_ROLES:
        role = actor.role.value if actor.role else "anonymous"
        raise AuthorizationDenied(f"Role {role} cannot book appointments")

    if actor.role is Role.PATIENT:
        if data.patient_id and data.patient_id != actor.user_id:
            raise AuthorizationDenied("Patients can only book for themselves")
        patient_id = actor.user_id
    else:
        patient_id = data.patient_id
    if not patient_id:
        raise ValidationError("patient_id is required when booking on a patient's behalf")

    time = normalize_time(data.time)
    slots = compute_slots(schedules, data.date, existing, data.doctor_id)
    if not is_slot_bookable(slots, time):
        raise SlotUnavailable(f"{data.date.isoformat()} {time} is not available for doctor {data.doctor_id}")

    return Appointment(
        id=appointment_id,
        patient_id=patient_id,
        doctor_id=data.doctor_id,
        date=data.date,
        time=time,
        status=AppointmentStatus.PENDING,
        reason=data.reason,
        created_at=now or dt.datetime.now(dt.timezone.utc),
    )
