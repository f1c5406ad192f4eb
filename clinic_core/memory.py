"""In-process backend for offline mode and tests.

Plays the server's part: every command re-runs the state machine against the
stored entity under one ``asyncio.Lock``, so concurrent bookings of a slot
resolve to one winner and approvals commit the role change and the profile
together.
"""
from __future__ import annotations

import asyncio
import datetime as dt
import secrets
import uuid
from typing import Any, Mapping

from . import appointments as appointment_flow
from . import home_visits as visit_flow
from . import role_requests as role_flow
from .errors import AuthorizationDenied, ClinicError, NotFound, ProfileMaterializationError
from .logger import get_module_logger
from .models import (
    ADMIN_ROLES,
    Appointment,
    AppointmentCreate,
    DoctorProfile,
    DoctorSchedule,
    Driver,
    HomeVisit,
    HomeVisitCreate,
    Notification,
    Role,
    RoleRequest,
    RoleRequestCreate,
    RoleRequestStatus,
    RoleReview,
    SessionContext,
    User,
)

logger = get_module_logger(__name__)


def _new_id() -> str:
    return uuid.uuid4().hex


def _refused_with(current: Any, func, *args):
    """Run a transition, attaching the stored entity to any refusal."""
    try:
        return func(*args)
    except ClinicError as exc:
        if exc.current is None:
            exc.current = current
        raise


class InMemoryBackend:
    def __init__(self):
        self.users: dict[str, User] = {}
        self.doctors: dict[str, DoctorProfile] = {}
        self.schedules: list[DoctorSchedule] = []
        self.appointments: dict[str, Appointment] = {}
        self.drivers: dict[str, Driver] = {}
        self.home_visits: dict[str, HomeVisit] = {}
        self.role_requests: dict[str, RoleRequest] = {}
        self.notifications: list[Notification] = []
        # bearer token -> session, used by the offline API server
        self.sessions: dict[str, SessionContext] = {}
        self._lock = asyncio.Lock()

    # Seeding -------------------------------------------------------------

    def add_user(self, role: Role = Role.PATIENT, user_id: str | None = None, **fields: Any) -> User:
        user = User(id=user_id or _new_id(), role=role, **fields)
        self.users[user.id] = user
        return user

    def add_doctor(self, user: User, category_id: str = "general", specialization: str = "therapist",
                   doctor_id: str | None = None) -> DoctorProfile:
        profile = DoctorProfile(
            id=doctor_id or _new_id(), user_id=user.id, category_id=category_id, specialization=specialization
        )
        self.doctors[profile.id] = profile
        return profile

    def add_schedule(self, schedule: DoctorSchedule) -> DoctorSchedule:
        if schedule.id is None:
            schedule = schedule.model_copy(update={"id": _new_id()})
        self.schedules.append(schedule)
        return schedule

    def add_driver(self, user: User, driver_id: str | None = None, **fields: Any) -> Driver:
        driver = Driver(id=driver_id or _new_id(), user_id=user.id, **fields)
        self.drivers[driver.id] = driver
        return driver

    def session_for(self, user_id: str) -> SessionContext:
        """Open a session for a stored user and register its bearer token."""
        user = self._user(user_id)
        profile_id = None
        if user.role is Role.DOCTOR:
            profile_id = next((d.id for d in self.doctors.values() if d.user_id == user.id), None)
        elif user.role is Role.DRIVER:
            profile_id = next((d.id for d in self.drivers.values() if d.user_id == user.id), None)
        session = SessionContext(
            is_authenticated=True,
            role=user.role,
            user_id=user.id,
            profile_id=profile_id,
            access_token=secrets.token_urlsafe(16),
        )
        self.sessions[session.access_token] = session
        return session

    # Lookups -------------------------------------------------------------

    def _user(self, user_id: str) -> User:
        try:
            return self.users[user_id]
        except KeyError:
            raise NotFound(f"User {user_id} not found") from None

    def _appointment(self, appointment_id: str) -> Appointment:
        try:
            return self.appointments[appointment_id]
        except KeyError:
            raise NotFound(f"Appointment {appointment_id} not found") from None

    def _visit(self, visit_id: str) -> HomeVisit:
        try:
            return self.home_visits[visit_id]
        except KeyError:
            raise NotFound(f"Home visit {visit_id} not found") from None

    def _driver(self, driver_id: str) -> Driver:
        try:
            return self.drivers[driver_id]
        except KeyError:
            raise NotFound(f"Driver {driver_id} not found") from None

    def _role_request(self, request_id: str) -> RoleRequest:
        try:
            return self.role_requests[request_id]
        except KeyError:
            raise NotFound(f"Role request {request_id} not found") from None

    # Queries -------------------------------------------------------------

    async def get_doctor_schedules(self, doctor_id: str) -> list[DoctorSchedule]:
        # yield like a real read so concurrent callers interleave
        await asyncio.sleep(0)
        return [s for s in self.schedules if s.doctor_id == doctor_id]

    async def list_doctor_appointments(self, doctor_id: str, day: dt.date) -> list[Appointment]:
        found = [a for a in self.appointments.values() if a.doctor_id == doctor_id and a.date == day]
        return sorted(found, key=lambda a: a.time)

    async def get_appointment(self, appointment_id: str) -> Appointment:
        return self._appointment(appointment_id)

    async def get_home_visit(self, visit_id: str) -> HomeVisit:
        return self._visit(visit_id)

    async def get_driver(self, driver_id: str) -> Driver:
        return self._driver(driver_id)

    async def list_available_drivers(self) -> list[Driver]:
        return [d for d in self.drivers.values() if d.dispatchable]

    async def get_role_request(self, request_id: str) -> RoleRequest:
        return self._role_request(request_id)

    async def list_role_requests(self, user_id: str) -> list[RoleRequest]:
        found = [r for r in self.role_requests.values() if r.user_id == user_id]
        return sorted(found, key=lambda r: r.created_at, reverse=True)

    async def get_user(self, user_id: str) -> User:
        return self._user(user_id)

    # Commands ------------------------------------------------------------

    async def create_appointment(self, actor: SessionContext, data: AppointmentCreate) -> Appointment:
        async with self._lock:
            if data.doctor_id not in self.doctors:
                raise NotFound(f"Doctor {data.doctor_id} not found")
            if data.patient_id:
                self._user(data.patient_id)
            schedules = await self.get_doctor_schedules(data.doctor_id)
            existing = await self.list_doctor_appointments(data.doctor_id, data.date)
            appointment = appointment_flow.build_appointment(data, actor, schedules, existing, _new_id())
            self.appointments[appointment.id] = appointment
        logger.info(
            f"Appointment {appointment.id} booked: doctor {appointment.doctor_id} {appointment.date} {appointment.time}"
        )
        return appointment

    async def transition_appointment(self, actor: SessionContext, appointment_id: str, action: str,
                                     payload: Mapping[str, Any] | None = None) -> Appointment:
        async with self._lock:
            current = self._appointment(appointment_id)
            updated = _refused_with(current, appointment_flow.apply_transition, current, action, actor, payload)
            self.appointments[appointment_id] = updated
        logger.info(f"Appointment {appointment_id} transitioned: {current.status.value} → {updated.status.value}")
        return updated

    async def create_home_visit(self, actor: SessionContext, data: HomeVisitCreate) -> HomeVisit:
        async with self._lock:
            self._user(data.patient_id)
            visit = visit_flow.build_home_visit(data, actor, _new_id())
            self.home_visits[visit.id] = visit
        logger.info(f"Home visit {visit.id} created for patient {visit.patient_id}")
        return visit

    async def transition_home_visit(self, actor: SessionContext, visit_id: str, action: str,
                                    payload: Mapping[str, Any] | None = None) -> HomeVisit:
        async with self._lock:
            current = self._visit(visit_id)
            driver_id = (payload or {}).get("driverId") or (payload or {}).get("driver_id")
            driver = self.drivers.get(driver_id) if driver_id else None
            updated, effect = _refused_with(current, visit_flow.apply_transition, current, action, actor, payload, driver)
            self.home_visits[visit_id] = updated
            if effect is not None and effect.driver_id in self.drivers:
                self.drivers[effect.driver_id] = self.drivers[effect.driver_id].model_copy(
                    update={"is_busy": effect.busy}
                )
        logger.info(f"Home visit {visit_id} transitioned: {current.status.value} → {updated.status.value}")
        return updated

    async def set_driver_availability(self, actor: SessionContext, is_available: bool,
                                      driver_id: str | None = None) -> Driver:
        async with self._lock:
            if actor.role is Role.DRIVER:
                if driver_id and driver_id != actor.profile_id:
                    raise AuthorizationDenied("Drivers can only change their own availability")
                driver_id = actor.profile_id
            elif actor.role not in ADMIN_ROLES:
                raise AuthorizationDenied("Only drivers or admins can change driver availability")
            driver = self._driver(driver_id or "")
            driver = driver.model_copy(update={"is_available": is_available})
            self.drivers[driver.id] = driver
        return driver

    async def submit_role_request(self, actor: SessionContext, data: RoleRequestCreate) -> RoleRequest:
        async with self._lock:
            # the stored role decides, a session may predate an approval
            stored_role = self._user(actor.user_id or "").role
            existing = await self.list_role_requests(actor.user_id or "")
            request = role_flow.build_role_request(
                data, actor.model_copy(update={"role": stored_role}), existing, _new_id()
            )
            self.role_requests[request.id] = request
        logger.info(f"Role request {request.id}: {request.user_id} asks for {request.requested_role.value}")
        return request

    async def review_role_request(self, actor: SessionContext, request_id: str, review: RoleReview) -> RoleRequest:
        async with self._lock:
            request = self._role_request(request_id)
            reviewed = _refused_with(request, role_flow.apply_review, request, actor, review)
            if reviewed.status is RoleRequestStatus.APPROVED:
                self._commit_approval(reviewed)
            else:
                self.role_requests[request_id] = reviewed
        logger.info(f"Role request {request_id} {reviewed.status.value} by {actor.user_id}")
        return reviewed

    def _commit_approval(self, reviewed: RoleRequest) -> None:
        """Role change, profile and review record land together or not at all."""
        user = self._user(reviewed.user_id)
        snapshot = (dict(self.users), dict(self.doctors), dict(self.drivers), dict(self.role_requests))
        open_sessions = [s for s in self.sessions.values() if s.user_id == user.id]
        session_snapshot = [(s, s.role, s.profile_id) for s in open_sessions]
        try:
            profile = role_flow.materialize_profile(reviewed, _new_id())
            if profile is not None:
                self._store_profile(profile)
            self.users[user.id] = user.model_copy(update={"role": reviewed.requested_role})
            self.role_requests[reviewed.id] = reviewed
            # sessions already handed out follow the new role without a new login
            for session in open_sessions:
                session.role = reviewed.requested_role
                session.profile_id = profile.id if profile is not None else None
        except Exception as exc:
            self.users, self.doctors, self.drivers, self.role_requests = snapshot
            for session, role, profile_id in session_snapshot:
                session.role = role
                session.profile_id = profile_id
            logger.error(f"Approval of role request {reviewed.id} rolled back: {exc}")
            if isinstance(exc, ProfileMaterializationError):
                raise
            raise ProfileMaterializationError(f"Approval of role request {reviewed.id} failed: {exc}") from exc

    def _store_profile(self, profile: DoctorProfile | Driver) -> None:
        if isinstance(profile, DoctorProfile):
            self.doctors[profile.id] = profile
        else:
            self.drivers[profile.id] = profile

    async def withdraw_role_request(self, actor: SessionContext, request_id: str) -> None:
        async with self._lock:
            request = self._role_request(request_id)
            role_flow.check_withdraw(request, actor)
            del self.role_requests[request_id]
        logger.info(f"Role request {request_id} withdrawn by {actor.user_id}")

    async def send_notification(self, notification: Notification) -> None:
        self.notifications.append(notification)
