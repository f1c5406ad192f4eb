"""The command/query surface the workflows talk to.

``ClinicApiClient`` reaches a live server over HTTP, ``InMemoryBackend`` keeps
everything in process for offline mode and tests. Both enforce the write-time
invariants: slot uniqueness, transitions checked against stored state and
atomic approval.
"""
from __future__ import annotations

import datetime as dt
from typing import Any, Mapping, Protocol

from .models import (
    Appointment,
    AppointmentCreate,
    DoctorSchedule,
    Driver,
    HomeVisit,
    HomeVisitCreate,
    Notification,
    RoleRequest,
    RoleRequestCreate,
    RoleReview,
    SessionContext,
    User,
)


class ClinicBackend(Protocol):
    # Queries, safe to retry
    async def get_doctor_schedules(self, doctor_id: str) -> list[DoctorSchedule]: ...

    async def list_doctor_appointments(self, doctor_id: str, day: dt.date) -> list[Appointment]: ...

    async def get_appointment(self, appointment_id: str) -> Appointment: ...

    async def get_home_visit(self, visit_id: str) -> HomeVisit: ...

    async def get_driver(self, driver_id: str) -> Driver: ...

    async def list_available_drivers(self) -> list[Driver]: ...

    async def get_role_request(self, request_id: str) -> RoleRequest: ...

    async def list_role_requests(self, user_id: str) -> list[RoleRequest]: ...

    async def get_user(self, user_id: str) -> User: ...

    # Commands, sent once
    async def create_appointment(self, actor: SessionContext, data: AppointmentCreate) -> Appointment: ...

    async def transition_appointment(
        self, actor: SessionContext, appointment_id: str, action: str, payload: Mapping[str, Any] | None = None
    ) -> Appointment: ...

    async def create_home_visit(self, actor: SessionContext, data: HomeVisitCreate) -> HomeVisit: ...

    async def transition_home_visit(
        self, actor: SessionContext, visit_id: str, action: str, payload: Mapping[str, Any] | None = None
    ) -> HomeVisit: ...

    async def set_driver_availability(
        self, actor: SessionContext, is_available: bool, driver_id: str | None = None
    ) -> Driver: ...

    async def submit_role_request(self, actor: SessionContext, data: RoleRequestCreate) -> RoleRequest: ...

    async def review_role_request(self, actor: SessionContext, request_id: str, review: RoleReview) -> RoleRequest: ...

    async def withdraw_role_request(self, actor: SessionContext, request_id: str) -> None: ...

    async def send_notification(self, notification: Notification) -> None: ...
