"""The API client driven against the offline server in-process."""
import datetime as dt

import httpx
import pytest

from clinic_core.api import create_app
from clinic_core.client import ClinicApiClient
from clinic_core.errors import AuthorizationDenied, InvalidTransition, SlotUnavailable
from clinic_core.models import (
    AppointmentCreate,
    AppointmentStatus,
    HomeVisitCreate,
    HomeVisitStatus,
    Role,
    RoleRequestCreate,
    RoleRequestStatus,
    RoleReview,
    SessionContext,
)
from clinic_core.service import ClinicWorkflows

MONDAY = dt.date(2030, 1, 7)
BASE = "http://offline"


@pytest.fixture
def transport(backend):
    return httpx.ASGITransport(app=create_app(backend))


@pytest.fixture
def client_for(transport):
    def make(session):
        return ClinicApiClient(session, base_url=BASE, read_retries=0, transport=transport)

    return make


@pytest.fixture
def online(client_for):
    """Workflows for one session, going through HTTP."""

    def make(session):
        return ClinicWorkflows(client_for(session))

    return make


@pytest.mark.asyncio
async def test_booking_through_http(online, sessions, backend):
    patient = online(sessions["patient"])
    appt = await patient.create_appointment(
        sessions["patient"], AppointmentCreate(doctor_id="doc-1", date=MONDAY, time="09:00", reason="Checkup")
    )
    assert appt.status is AppointmentStatus.PENDING
    assert backend.appointments[appt.id].reason == "Checkup"

    other = online(sessions["other_patient"])
    with pytest.raises(SlotUnavailable) as info:
        await other.create_appointment(
            sessions["other_patient"], AppointmentCreate(doctor_id="doc-1", date=MONDAY, time="09:00")
        )
    assert [(s.time, s.is_available) for s in info.value.current] == [("08:00", True), ("09:00", False)]

    doctor = online(sessions["doctor"])
    confirmed = await doctor.confirm_appointment(sessions["doctor"], appt.id)
    assert confirmed.status is AppointmentStatus.CONFIRMED
    await doctor.notifications.drain()
    assert [n.title for n in backend.notifications] == ["Appointment confirmed"]


@pytest.mark.asyncio
async def test_server_refusal_carries_current_state(client_for, sessions, backend):
    appt = await backend.create_appointment(
        sessions["patient"], AppointmentCreate(doctor_id="doc-1", date=MONDAY, time="08:00")
    )
    await backend.transition_appointment(sessions["doctor"], appt.id, "confirm")

    client = client_for(sessions["doctor"])
    with pytest.raises(InvalidTransition) as info:
        await client.transition_appointment(sessions["doctor"], appt.id, "confirm")
    assert info.value.current["status"] == "confirmed"


@pytest.mark.asyncio
async def test_server_enforces_roles(client_for, sessions):
    client = client_for(sessions["doctor"])
    with pytest.raises(AuthorizationDenied) as info:
        await client.create_appointment(
            sessions["doctor"], AppointmentCreate(doctor_id="doc-1", date=MONDAY, time="08:00")
        )
    assert info.value.redirect_to == "/doctor/dashboard"


@pytest.mark.asyncio
async def test_missing_token_sends_to_login(client_for):
    with pytest.raises(AuthorizationDenied) as info:
        await client_for(SessionContext()).list_available_drivers()
    assert info.value.redirect_to == "/auth/login"


@pytest.mark.asyncio
async def test_malformed_body_is_a_validation_error(transport, sessions):
    async with httpx.AsyncClient(transport=transport, base_url=BASE) as http:
        resp = await http.post(
            "/appointments",
            json={"appointmentDate": "2030-01-07"},
            headers={"Authorization": f"Bearer {sessions['patient'].access_token}"},
        )
    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert body["error"] == "ValidationError"


@pytest.mark.asyncio
async def test_available_slots_endpoint(transport):
    async with httpx.AsyncClient(transport=transport, base_url=BASE) as http:
        resp = await http.get("/doctors/doc-1/available-slots", params={"date": "2030-01-07"})
    assert resp.status_code == 200
    assert resp.json()["data"] == [
        {"time": "08:00", "isAvailable": True},
        {"time": "09:00", "isAvailable": True},
    ]


@pytest.mark.asyncio
async def test_role_elevation_through_http(online, sessions, backend):
    patient = online(sessions["patient"])
    request = await patient.submit_role_request(
        sessions["patient"],
        RoleRequestCreate(
            requested_role=Role.DOCTOR,
            reason="Pediatrician",
            additional_data={"categoryId": "kids", "specialization": "pediatrics"},
        ),
    )
    mine = await patient.backend.list_role_requests(sessions["patient"].user_id)
    assert [r.id for r in mine] == [request.id]

    admin = online(sessions["admin"])
    reviewed = await admin.review_role_request(
        sessions["admin"], request.id, RoleReview(status=RoleRequestStatus.APPROVED)
    )
    assert reviewed.status is RoleRequestStatus.APPROVED
    assert backend.users["u-patient"].role is Role.DOCTOR
    assert any(d.user_id == "u-patient" for d in backend.doctors.values())
    await admin.notifications.drain()


@pytest.mark.asyncio
async def test_home_visit_dispatch_through_http(online, sessions, backend):
    reception = online(sessions["reception"])
    visit = await reception.create_home_visit(
        sessions["reception"],
        HomeVisitCreate(patient_id="u-patient", address="Mirobod 1", scheduled_date=MONDAY, scheduled_time="12:00"),
    )
    visit = await reception.assign_driver(sessions["reception"], visit.id, "drv-1")
    assert visit.driver_id == "drv-1"
    assert backend.drivers["drv-1"].is_busy

    driver = online(sessions["driver"])
    visit = await driver.transition_home_visit(sessions["driver"], visit.id, "start")
    assert visit.status is HomeVisitStatus.EN_ROUTE
    with pytest.raises(AuthorizationDenied) as info:
        await driver.transition_home_visit(sessions["driver"], visit.id, "cancel")
    assert info.value.current.status is HomeVisitStatus.EN_ROUTE

    visit = await reception.transition_home_visit(sessions["reception"], visit.id, "cancel", {"reason": "Rescheduled"})
    assert visit.status is HomeVisitStatus.CANCELLED
    assert not backend.drivers["drv-1"].is_busy
    await reception.notifications.drain()
    await driver.notifications.drain()


def test_workflows_for_picks_backend_by_mode(monkeypatch, sessions):
    from clinic_core import service
    from clinic_core.memory import InMemoryBackend

    monkeypatch.setattr(service, "OFFLINE_MODE", True)
    assert isinstance(service.workflows_for(sessions["patient"]).backend, InMemoryBackend)

    monkeypatch.setattr(service, "OFFLINE_MODE", False)
    live = service.workflows_for(sessions["patient"]).backend
    assert isinstance(live, ClinicApiClient)
    assert live.session is sessions["patient"]
