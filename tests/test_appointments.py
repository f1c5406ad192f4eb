import asyncio
import datetime as dt

import pytest

from clinic_core.appointments import AppointmentAction, apply_transition, available_actions, next_state
from clinic_core.errors import AuthorizationDenied, InvalidTransition, NotFound, SlotUnavailable, ValidationError
from clinic_core.models import Appointment, AppointmentCreate, AppointmentStatus, Role, SessionContext

MONDAY = dt.date(2030, 1, 7)

PATIENT = SessionContext(is_authenticated=True, role=Role.PATIENT, user_id="u-patient")
DOCTOR = SessionContext(is_authenticated=True, role=Role.DOCTOR, user_id="u-doctor", profile_id="doc-1")
RECEPTION = SessionContext(is_authenticated=True, role=Role.RECEPTION, user_id="u-reception")
ADMIN = SessionContext(is_authenticated=True, role=Role.ADMIN, user_id="u-admin")


def _appt(status):
    return Appointment(id="a-1", patient_id="u-patient", doctor_id="doc-1", date=MONDAY, time="09:00", status=status)


# State machine ------------------------------------------------------------

@pytest.mark.parametrize(
    "status,action,actor,target",
    [
        (AppointmentStatus.PENDING, AppointmentAction.CONFIRM, DOCTOR, AppointmentStatus.CONFIRMED),
        (AppointmentStatus.PENDING, AppointmentAction.CANCEL, PATIENT, AppointmentStatus.CANCELLED),
        (AppointmentStatus.CONFIRMED, AppointmentAction.CANCEL, RECEPTION, AppointmentStatus.CANCELLED),
        (AppointmentStatus.CONFIRMED, AppointmentAction.CANCEL, ADMIN, AppointmentStatus.CANCELLED),
        (AppointmentStatus.CONFIRMED, AppointmentAction.START, RECEPTION, AppointmentStatus.IN_PROGRESS),
        (AppointmentStatus.CONFIRMED, AppointmentAction.COMPLETE, DOCTOR, AppointmentStatus.COMPLETED),
        (AppointmentStatus.IN_PROGRESS, AppointmentAction.COMPLETE, DOCTOR, AppointmentStatus.COMPLETED),
        (AppointmentStatus.CONFIRMED, AppointmentAction.NO_SHOW, RECEPTION, AppointmentStatus.NO_SHOW),
    ],
)
def test_allowed_transitions(status, action, actor, target):
    assert next_state(_appt(status), action, actor) is target


@pytest.mark.parametrize(
    "status",
    [AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED, AppointmentStatus.REJECTED, AppointmentStatus.NO_SHOW],
)
@pytest.mark.parametrize("action", list(AppointmentAction))
def test_terminal_states_are_sinks(status, action):
    for actor in (PATIENT, DOCTOR, RECEPTION, ADMIN):
        with pytest.raises(InvalidTransition):
            next_state(_appt(status), action, actor, {"reason": "x"})


def test_wrong_source_state_is_invalid():
    with pytest.raises(InvalidTransition):
        next_state(_appt(AppointmentStatus.PENDING), AppointmentAction.START, DOCTOR)
    with pytest.raises(InvalidTransition):
        next_state(_appt(AppointmentStatus.IN_PROGRESS), AppointmentAction.NO_SHOW, RECEPTION)
    with pytest.raises(InvalidTransition):
        next_state(_appt(AppointmentStatus.PENDING), "reschedule", DOCTOR)


def test_wrong_actor_is_denied():
    with pytest.raises(AuthorizationDenied):
        next_state(_appt(AppointmentStatus.PENDING), AppointmentAction.CONFIRM, RECEPTION)
    with pytest.raises(AuthorizationDenied):
        next_state(_appt(AppointmentStatus.CONFIRMED), AppointmentAction.NO_SHOW, DOCTOR)
    other_patient = PATIENT.model_copy(update={"user_id": "u-patient-2"})
    with pytest.raises(AuthorizationDenied):
        next_state(_appt(AppointmentStatus.PENDING), AppointmentAction.CANCEL, other_patient)
    other_doctor = DOCTOR.model_copy(update={"profile_id": "doc-2"})
    with pytest.raises(AuthorizationDenied):
        next_state(_appt(AppointmentStatus.PENDING), AppointmentAction.CONFIRM, other_doctor)


def test_reject_requires_reason_and_records_it():
    pending = _appt(AppointmentStatus.PENDING)
    with pytest.raises(ValidationError):
        next_state(pending, AppointmentAction.REJECT, DOCTOR, {"reason": "  "})

    rejected = apply_transition(pending, AppointmentAction.REJECT, DOCTOR, {"reason": "On leave"})
    assert rejected.status is AppointmentStatus.REJECTED
    assert rejected.cancel_reason == "On leave"
    assert pending.status is AppointmentStatus.PENDING


def test_complete_keeps_doctor_notes():
    done = apply_transition(_appt(AppointmentStatus.IN_PROGRESS), "complete", DOCTOR, {"doctorNotes": "Rest"})
    assert done.doctor_notes == "Rest"
    assert done.updated_at is not None


def test_available_actions():
    assert available_actions(_appt(AppointmentStatus.PENDING), DOCTOR) == [
        AppointmentAction.CONFIRM,
        AppointmentAction.REJECT,
    ]
    assert available_actions(_appt(AppointmentStatus.CONFIRMED), RECEPTION) == [
        AppointmentAction.CANCEL,
        AppointmentAction.START,
        AppointmentAction.NO_SHOW,
    ]
    assert available_actions(_appt(AppointmentStatus.COMPLETED), ADMIN) == []


# Workflow over the in-memory backend --------------------------------------

@pytest.mark.asyncio
async def test_booking_scenario(workflows, sessions, backend):
    slots = await workflows.compute_slots("doc-1", MONDAY)
    assert [(s.time, s.is_available) for s in slots] == [("08:00", True), ("09:00", True)]

    appt = await workflows.create_appointment(
        sessions["patient"], AppointmentCreate(doctor_id="doc-1", date=MONDAY, time="09:00", reason="Headache")
    )
    assert appt.status is AppointmentStatus.PENDING
    assert appt.patient_id == "u-patient"

    slots = await workflows.compute_slots("doc-1", MONDAY)
    assert [(s.time, s.is_available) for s in slots] == [("08:00", True), ("09:00", False)]

    confirmed = await workflows.confirm_appointment(sessions["doctor"], appt.id)
    assert confirmed.status is AppointmentStatus.CONFIRMED

    completed = await workflows.complete_appointment(sessions["doctor"], appt.id, "All good")
    assert completed.status is AppointmentStatus.COMPLETED

    with pytest.raises(InvalidTransition) as info:
        await workflows.complete_appointment(sessions["doctor"], appt.id)
    assert info.value.current.status is AppointmentStatus.COMPLETED

    await workflows.notifications.drain()
    assert [n.title for n in backend.notifications] == ["Appointment confirmed"]
    assert backend.notifications[0].user_id == "u-patient"


@pytest.mark.asyncio
async def test_concurrent_bookings_for_one_slot(workflows, sessions, backend, monkeypatch):
    data = AppointmentCreate(doctor_id="doc-1", date=MONDAY, time="08:00")
    writes = []
    create = backend.create_appointment

    async def counted_create(actor, payload):
        writes.append(actor.user_id)
        return await create(actor, payload)

    monkeypatch.setattr(backend, "create_appointment", counted_create)
    results = await asyncio.gather(
        workflows.create_appointment(sessions["patient"], data),
        workflows.create_appointment(sessions["other_patient"], data),
        return_exceptions=True,
    )
    booked = [r for r in results if isinstance(r, Appointment)]
    refused = [r for r in results if isinstance(r, SlotUnavailable)]
    assert len(booked) == 1
    assert len(refused) == 1
    # the loser gets fresh slots to reselect from
    assert [(s.time, s.is_available) for s in refused[0].current] == [("08:00", False), ("09:00", True)]
    assert len(backend.appointments) == 1
    # both passed the local check, the backend refused the second write
    assert sorted(writes) == ["u-patient", "u-patient-2"]


@pytest.mark.asyncio
async def test_backend_rechecks_slot_at_write_time(sessions, backend):
    data = AppointmentCreate(doctor_id="doc-1", date=MONDAY, time="08:00")
    await backend.create_appointment(sessions["patient"], data)
    with pytest.raises(SlotUnavailable):
        await backend.create_appointment(sessions["other_patient"], data)


@pytest.mark.asyncio
async def test_time_outside_schedule_is_unavailable(workflows, sessions):
    with pytest.raises(SlotUnavailable):
        await workflows.create_appointment(
            sessions["patient"], AppointmentCreate(doctor_id="doc-1", date=MONDAY, time="10:00")
        )
    with pytest.raises(SlotUnavailable):
        await workflows.create_appointment(
            sessions["patient"], AppointmentCreate(doctor_id="doc-1", date=MONDAY + dt.timedelta(days=1), time="08:00")
        )


@pytest.mark.asyncio
async def test_cancel_frees_the_slot(workflows, sessions):
    data = AppointmentCreate(doctor_id="doc-1", date=MONDAY, time="08:00")
    appt = await workflows.create_appointment(sessions["patient"], data)
    cancelled = await workflows.cancel_appointment(sessions["patient"], appt.id, "Feeling better")
    assert cancelled.cancel_reason == "Feeling better"

    again = await workflows.create_appointment(sessions["other_patient"], data)
    assert again.status is AppointmentStatus.PENDING


@pytest.mark.asyncio
async def test_reception_books_on_behalf_of_patient(workflows, sessions):
    with pytest.raises(ValidationError):
        await workflows.create_appointment(
            sessions["reception"], AppointmentCreate(doctor_id="doc-1", date=MONDAY, time="08:00")
        )
    appt = await workflows.create_appointment(
        sessions["reception"], AppointmentCreate(doctor_id="doc-1", date=MONDAY, time="08:00", patient_id="u-patient")
    )
    assert appt.patient_id == "u-patient"

    with pytest.raises(AuthorizationDenied):
        await workflows.create_appointment(
            sessions["patient"],
            AppointmentCreate(doctor_id="doc-1", date=MONDAY, time="09:00", patient_id="u-patient-2"),
        )


@pytest.mark.asyncio
async def test_doctor_cannot_book_and_gate_redirects(workflows, sessions):
    with pytest.raises(AuthorizationDenied) as info:
        await workflows.create_appointment(
            sessions["doctor"], AppointmentCreate(doctor_id="doc-1", date=MONDAY, time="08:00")
        )
    assert info.value.redirect_to == "/doctor/dashboard"

    with pytest.raises(AuthorizationDenied) as info:
        await workflows.create_appointment(
            SessionContext(), AppointmentCreate(doctor_id="doc-1", date=MONDAY, time="08:00")
        )
    assert info.value.redirect_to == "/auth/login"


@pytest.mark.asyncio
async def test_refused_transition_leaves_state_untouched(workflows, sessions, backend):
    appt = await workflows.create_appointment(
        sessions["patient"], AppointmentCreate(doctor_id="doc-1", date=MONDAY, time="08:00")
    )
    with pytest.raises(AuthorizationDenied):
        await workflows.confirm_appointment(sessions["other_doctor"], appt.id)
    with pytest.raises(InvalidTransition):
        await workflows.mark_no_show(sessions["reception"], appt.id)
    assert backend.appointments[appt.id].status is AppointmentStatus.PENDING

    rejected = await workflows.reject_appointment(sessions["doctor"], appt.id, "Fully booked")
    assert rejected.status is AppointmentStatus.REJECTED
    await workflows.notifications.drain()
    assert "Fully booked" in backend.notifications[-1].message


@pytest.mark.asyncio
async def test_notification_failure_does_not_roll_back(sessions, backend):
    from clinic_core.notifications import NotificationDispatcher
    from clinic_core.service import ClinicWorkflows

    async def broken_sender(notification):
        raise RuntimeError("push service down")

    workflows = ClinicWorkflows(backend, NotificationDispatcher(broken_sender))
    appt = await workflows.create_appointment(
        sessions["patient"], AppointmentCreate(doctor_id="doc-1", date=MONDAY, time="08:00")
    )
    confirmed = await workflows.confirm_appointment(sessions["doctor"], appt.id)
    await workflows.notifications.drain()
    assert confirmed.status is AppointmentStatus.CONFIRMED
    assert backend.appointments[appt.id].status is AppointmentStatus.CONFIRMED


@pytest.mark.asyncio
async def test_booking_for_unknown_patient_is_not_found(workflows, sessions, backend):
    with pytest.raises(NotFound):
        await workflows.create_appointment(
            sessions["reception"],
            AppointmentCreate(doctor_id="doc-1", date=MONDAY, time="08:00", patient_id="u-nobody"),
        )
    assert backend.appointments == {}
