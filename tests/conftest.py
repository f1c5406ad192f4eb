import pytest

from clinic_core.memory import InMemoryBackend
from clinic_core.models import DayOfWeek, DoctorSchedule, Role
from clinic_core.service import ClinicWorkflows

USERS = {
    "patient": ("u-patient", Role.PATIENT),
    "other_patient": ("u-patient-2", Role.PATIENT),
    "doctor": ("u-doctor", Role.DOCTOR),
    "other_doctor": ("u-doctor-2", Role.DOCTOR),
    "reception": ("u-reception", Role.RECEPTION),
    "admin": ("u-admin", Role.ADMIN),
    "driver": ("u-driver", Role.DRIVER),
    "other_driver": ("u-driver-2", Role.DRIVER),
}


@pytest.fixture
def backend():
    """Doctor doc-1 works Mondays 08:00-10:00 in 60 minute slots."""
    b = InMemoryBackend()
    users = {name: b.add_user(role, user_id=uid) for name, (uid, role) in USERS.items()}
    b.add_doctor(users["doctor"], doctor_id="doc-1")
    b.add_doctor(users["other_doctor"], doctor_id="doc-2")
    b.add_schedule(
        DoctorSchedule(
            doctor_id="doc-1",
            day_of_week=DayOfWeek.MONDAY,
            start_time="08:00",
            end_time="10:00",
            slot_duration=60,
        )
    )
    b.add_driver(users["driver"], driver_id="drv-1", vehicle_number="01A123BC")
    b.add_driver(users["other_driver"], driver_id="drv-2")
    return b


@pytest.fixture
def sessions(backend):
    return {name: backend.session_for(uid) for name, (uid, _) in USERS.items()}


@pytest.fixture
def workflows(backend):
    return ClinicWorkflows(backend)
