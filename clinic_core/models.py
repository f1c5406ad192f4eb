from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def _now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Role(str, Enum):
    PATIENT = "patient"
    DOCTOR = "doctor"
    RECEPTION = "reception"
    DRIVER = "driver"
    LAB_TECHNICIAN = "lab_technician"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"

    @classmethod
    def _missing_(cls, value):
        # the backend still sends "user" for plain patient accounts
        if value == "user":
            return cls.PATIENT
        return None


ADMIN_ROLES = frozenset({Role.ADMIN, Role.SUPER_ADMIN})


class DayOfWeek(str, Enum):
    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"

    @classmethod
    def _missing_(cls, value):
        # some endpoints send "MONDAY"
        if isinstance(value, str):
            for member in cls:
                if member.value == value.lower():
                    return member
        return None

    @classmethod
    def for_date(cls, day: dt.date) -> "DayOfWeek":
        return list(cls)[day.weekday()]


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    BLOCKED = "blocked"


class User(WireModel):
    id: str
    phone: str = ""
    name: str | None = None
    role: Role = Role.PATIENT
    status: UserStatus = UserStatus.ACTIVE


class SessionContext(WireModel):
    """Who is acting. Passed explicitly to the gate and every workflow call."""

    is_authenticated: bool = False
    role: Role | None = None
    user_id: str | None = None
    # Doctor or driver profile id for those roles
    profile_id: str | None = None
    access_token: str | None = Field(default=None, exclude=True)
    refresh_token: str | None = Field(default=None, exclude=True)

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


# Schedules ---------------------------------------------------------------

class DoctorSchedule(WireModel):
    id: str | None = None
    doctor_id: str
    day_of_week: DayOfWeek
    start_time: str  # HH:MM
    end_time: str
    slot_duration: int = 30  # minutes
    is_active: bool = True


class AvailableSlot(WireModel):
    time: str
    is_available: bool


# Appointments ------------------------------------------------------------

class AppointmentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    NO_SHOW = "no_show"


# Statuses that no longer hold their slot
RELEASED_STATUSES = frozenset({AppointmentStatus.CANCELLED, AppointmentStatus.REJECTED})


class Appointment(WireModel):
    id: str
    patient_id: str
    doctor_id: str
    date: dt.date = Field(alias="appointmentDate")
    time: str = Field(alias="appointmentTime")
    status: AppointmentStatus = AppointmentStatus.PENDING
    reason: str | None = None
    doctor_notes: str | None = None
    cancel_reason: str | None = None
    created_at: dt.datetime = Field(default_factory=_now)
    updated_at: dt.datetime | None = None

    @property
    def holds_slot(self) -> bool:
        return self.status not in RELEASED_STATUSES


class AppointmentCreate(WireModel):
    doctor_id: str
    date: dt.date = Field(alias="appointmentDate")
    time: str = Field(alias="appointmentTime")
    reason: str | None = None
    # Required when reception books on a patient's behalf
    patient_id: str | None = None


# Home visits -------------------------------------------------------------

class HomeVisitStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    EN_ROUTE = "en_route"
    ARRIVED = "arrived"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class HomeVisit(WireModel):
    id: str
    patient_id: str = Field(alias="userId")
    driver_id: str | None = None
    address: str
    scheduled_date: dt.date
    scheduled_time: str
    status: HomeVisitStatus = HomeVisitStatus.PENDING
    notes: str | None = None
    cancel_reason: str | None = None
    created_at: dt.datetime = Field(default_factory=_now)
    updated_at: dt.datetime | None = None


class HomeVisitCreate(WireModel):
    patient_id: str = Field(alias="userId")
    address: str
    scheduled_date: dt.date
    scheduled_time: str
    notes: str | None = None


class Driver(WireModel):
    id: str
    user_id: str
    vehicle_number: str | None = None
    vehicle_model: str | None = None
    license_number: str | None = None
    # Driver toggles this from their dashboard
    is_available: bool = True
    # Bound to an open visit
    is_busy: bool = False

    @property
    def dispatchable(self) -> bool:
        return self.is_available and not self.is_busy


# Role elevation ----------------------------------------------------------

class RoleRequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class RoleRequest(WireModel):
    id: str
    user_id: str
    current_role: Role
    requested_role: Role
    reason: str
    additional_data: dict[str, Any] = Field(default_factory=dict)
    status: RoleRequestStatus = RoleRequestStatus.PENDING
    reviewed_by: str | None = None
    review_note: str | None = None
    reviewed_at: dt.datetime | None = None
    created_at: dt.datetime = Field(default_factory=_now)
    updated_at: dt.datetime | None = None


class RoleRequestCreate(WireModel):
    requested_role: Role
    reason: str
    additional_data: dict[str, Any] | None = None


class RoleReview(WireModel):
    status: RoleRequestStatus
    review_note: str | None = None


class DoctorProfile(WireModel):
    id: str
    user_id: str
    category_id: str
    specialization: str
    experience: int = 0
    consultation_price: int = 0
    bio: str | None = None


# Wire envelope -----------------------------------------------------------

class ApiEnvelope(BaseModel):
    """Uniform ``{success, message, data}`` body of the command/query API."""

    success: bool
    message: str = ""
    data: Any = None
    # Error class name on failures, see errors.error_for_code
    error: str | None = None


# Notifications -----------------------------------------------------------

class NotificationType(str, Enum):
    APPOINTMENT = "appointment"
    REMINDER = "reminder"
    SYSTEM = "system"


class Notification(WireModel):
    user_id: str
    title: str
    message: str
    type: NotificationType = NotificationType.APPOINTMENT
    data: dict[str, Any] | None = None
