"""Operations the UI shell calls.

Each entry point runs the access gate first, reads the entity fresh,
re-validates the transition locally and only then sends the command. When a
command fails, the entity is read again and attached to the error as
``error.current`` so the caller never keeps acting on stale state.
"""
from __future__ import annotations

import datetime as dt
from typing import Any, Awaitable, Callable, Mapping

from . import api as offline_api
from . import appointments as appointment_flow
from . import home_visits as visit_flow
from . import role_requests as role_flow
from .access import ACTIONS, AccessDecision, RouteRequirement, authorize, ensure_allowed, requirement_for_path
from .appointments import AppointmentAction
from .backend import ClinicBackend
from .client import ClinicApiClient
from .config import OFFLINE_MODE
from .errors import ClinicError, SlotUnavailable
from .home_visits import HomeVisitAction
from .logger import get_module_logger
from .models import (
    Appointment,
    AppointmentCreate,
    AvailableSlot,
    Driver,
    HomeVisit,
    HomeVisitCreate,
    RoleRequest,
    RoleRequestCreate,
    RoleReview,
    SessionContext,
)
from .notifications import NotificationDispatcher, appointment_notice, home_visit_notice, role_review_notice
from .schedule import compute_slots

logger = get_module_logger(__name__)


class ClinicWorkflows:
    def __init__(self, backend: ClinicBackend, dispatcher: NotificationDispatcher | None = None):
        self.backend = backend
        self.notifications = dispatcher or NotificationDispatcher(backend.send_notification)

    # Gate ----------------------------------------------------------------

    def authorize(self, session: SessionContext, target: str | RouteRequirement) -> AccessDecision:
        """Decide for a view path, an action name from ``ACTIONS`` or an explicit requirement."""
        if isinstance(target, RouteRequirement):
            requirement = target
        elif target in ACTIONS:
            requirement = ACTIONS[target]
        else:
            requirement = requirement_for_path(target)
        return authorize(session, requirement)

    async def _refetch(self, exc: ClinicError, fetch: Callable[[str], Awaitable[Any]], entity_id: str) -> None:
        try:
            exc.current = await fetch(entity_id)
        except ClinicError as refetch_error:
            logger.warning(f"Could not refresh {entity_id} after failed command: {refetch_error.message}")

    # Slots ---------------------------------------------------------------

    async def compute_slots(self, doctor_id: str, day: dt.date) -> list[AvailableSlot]:
        """Recomputed from fresh schedule and appointment reads on every call."""
        schedules = await self.backend.get_doctor_schedules(doctor_id)
        existing = await self.backend.list_doctor_appointments(doctor_id, day)
        return compute_slots(schedules, day, existing, doctor_id)

    # Appointments --------------------------------------------------------

    async def create_appointment(self, session: SessionContext, data: AppointmentCreate) -> Appointment:
        ensure_allowed(session, ACTIONS["appointment.create"], "booking")
        schedules = await self.backend.get_doctor_schedules(data.doctor_id)
        existing = await self.backend.list_doctor_appointments(data.doctor_id, data.date)
        try:
            # local check narrows the race window, the backend re-checks on write
            appointment_flow.build_appointment(data, session, schedules, existing, appointment_id="draft")
            appointment = await self.backend.create_appointment(session, data)
        except SlotUnavailable as exc:
            logger.info(f"Slot {data.date} {data.time} for doctor {data.doctor_id} unavailable: {exc.message}")
            try:
                exc.current = await self.compute_slots(data.doctor_id, data.date)
            except ClinicError as refetch_error:
                logger.warning(f"Could not refresh slots after conflict: {refetch_error.message}")
            raise
        logger.info(f"Appointment {appointment.id} created by {session.role.value} {session.user_id}")
        return appointment

    async def transition_appointment(
        self,
        session: SessionContext,
        appointment_id: str,
        action: AppointmentAction | str,
        payload: Mapping[str, Any] | None = None,
    ) -> Appointment:
        ensure_allowed(session, ACTIONS["appointment.transition"], f"appointment {action}")
        current = await self.backend.get_appointment(appointment_id)
        try:
            appointment_flow.next_state(current, action, session, payload)
        except ClinicError as exc:
            exc.current = current
            logger.warning(f"Refused {action} on appointment {appointment_id}: {exc.message}")
            raise

        action = AppointmentAction(action)
        try:
            updated = await self.backend.transition_appointment(session, appointment_id, action.value, payload)
        except ClinicError as exc:
            logger.warning(f"{action.value} on appointment {appointment_id} failed: {exc.message}")
            await self._refetch(exc, self.backend.get_appointment, appointment_id)
            raise

        notice = appointment_notice(updated, action) if action in appointment_flow.NOTIFY_PATIENT_ON else None
        if notice is not None:
            self.notifications.dispatch(notice)
        return updated

    async def confirm_appointment(self, session: SessionContext, appointment_id: str) -> Appointment:
        return await self.transition_appointment(session, appointment_id, AppointmentAction.CONFIRM)

    async def reject_appointment(self, session: SessionContext, appointment_id: str, reason: str) -> Appointment:
        return await self.transition_appointment(session, appointment_id, AppointmentAction.REJECT, {"reason": reason})

    async def cancel_appointment(self, session: SessionContext, appointment_id: str,
                                 reason: str | None = None) -> Appointment:
        payload = {"reason": reason} if reason else None
        return await self.transition_appointment(session, appointment_id, AppointmentAction.CANCEL, payload)

    async def start_appointment(self, session: SessionContext, appointment_id: str) -> Appointment:
        return await self.transition_appointment(session, appointment_id, AppointmentAction.START)

    async def complete_appointment(self, session: SessionContext, appointment_id: str,
                                   doctor_notes: str | None = None) -> Appointment:
        payload = {"doctorNotes": doctor_notes} if doctor_notes else None
        return await self.transition_appointment(session, appointment_id, AppointmentAction.COMPLETE, payload)

    async def mark_no_show(self, session: SessionContext, appointment_id: str) -> Appointment:
        return await self.transition_appointment(session, appointment_id, AppointmentAction.NO_SHOW)

    # Home visits ---------------------------------------------------------

    async def create_home_visit(self, session: SessionContext, data: HomeVisitCreate) -> HomeVisit:
        ensure_allowed(session, ACTIONS["home_visit.create"], "home visit creation")
        visit_flow.build_home_visit(data, session, visit_id="draft")
        return await self.backend.create_home_visit(session, data)

    async def list_available_drivers(self, session: SessionContext) -> list[Driver]:
        ensure_allowed(session, ACTIONS["home_visit.create"], "driver listing")
        return await self.backend.list_available_drivers()

    async def transition_home_visit(
        self,
        session: SessionContext,
        visit_id: str,
        action: HomeVisitAction | str,
        payload: Mapping[str, Any] | None = None,
    ) -> HomeVisit:
        ensure_allowed(session, ACTIONS["home_visit.transition"], f"home visit {action}")
        current = await self.backend.get_home_visit(visit_id)
        try:
            action = visit_flow.coerce_action(action)
            driver = None
            if action is HomeVisitAction.ASSIGN:
                driver_id = visit_flow.coerce_payload(payload).driver_id
                driver = await self.backend.get_driver(driver_id) if driver_id else None
            visit_flow.next_state(current, action, session, payload, driver)
        except ClinicError as exc:
            exc.current = current
            logger.warning(f"Refused {action} on home visit {visit_id}: {exc.message}")
            raise

        try:
            updated = await self.backend.transition_home_visit(session, visit_id, action.value, payload)
        except ClinicError as exc:
            logger.warning(f"{action.value} on home visit {visit_id} failed: {exc.message}")
            await self._refetch(exc, self.backend.get_home_visit, visit_id)
            raise

        notice = home_visit_notice(updated, action)
        if notice is not None:
            self.notifications.dispatch(notice)
        return updated

    async def assign_driver(self, session: SessionContext, visit_id: str, driver_id: str) -> HomeVisit:
        return await self.transition_home_visit(session, visit_id, HomeVisitAction.ASSIGN, {"driverId": driver_id})

    async def set_driver_availability(self, session: SessionContext, is_available: bool,
                                      driver_id: str | None = None) -> Driver:
        ensure_allowed(session, ACTIONS["driver.availability"], "driver availability")
        return await self.backend.set_driver_availability(session, is_available, driver_id)

    # Role elevation ------------------------------------------------------

    async def submit_role_request(self, session: SessionContext, data: RoleRequestCreate) -> RoleRequest:
        ensure_allowed(session, ACTIONS["role_request.submit"], "role request")
        existing = await self.backend.list_role_requests(session.user_id)
        role_flow.build_role_request(data, session, existing, request_id="draft")
        request = await self.backend.submit_role_request(session, data)
        logger.info(f"Role request {request.id} submitted by {session.user_id} for {request.requested_role.value}")
        return request

    async def review_role_request(self, session: SessionContext, request_id: str, review: RoleReview) -> RoleRequest:
        ensure_allowed(session, ACTIONS["role_request.review"], "role request review")
        current = await self.backend.get_role_request(request_id)
        try:
            role_flow.check_review(current, session, review)
        except ClinicError as exc:
            exc.current = current
            raise

        try:
            reviewed = await self.backend.review_role_request(session, request_id, review)
        except ClinicError as exc:
            logger.warning(f"Review of role request {request_id} failed: {exc.message}")
            await self._refetch(exc, self.backend.get_role_request, request_id)
            raise

        self.notifications.dispatch(role_review_notice(reviewed))
        return reviewed

    async def withdraw_role_request(self, session: SessionContext, request_id: str) -> None:
        ensure_allowed(session, ACTIONS["role_request.withdraw"], "role request withdrawal")
        await self.backend.withdraw_role_request(session, request_id)


def workflows_for(session: SessionContext) -> ClinicWorkflows:
    """Workflows over the live API for ``session``, or the offline server's backend."""
    if OFFLINE_MODE:
        return ClinicWorkflows(offline_api.app.state.backend)
    return ClinicWorkflows(ClinicApiClient(session))
