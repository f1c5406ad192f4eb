"""Fire-and-forget notifications triggered by workflow transitions.

Delivery runs in a background task; a failed delivery is logged and never
undoes the transition that triggered it.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from .appointments import AppointmentAction
from .home_visits import HomeVisitAction
from .logger import get_module_logger
from .models import (
    Appointment,
    HomeVisit,
    Notification,
    NotificationType,
    RoleRequest,
    RoleRequestStatus,
)

logger = get_module_logger(__name__)

Sender = Callable[[Notification], Awaitable[None]]


class NotificationDispatcher:
    def __init__(self, send: Sender):
        self._send = send
        self._pending: set[asyncio.Task] = set()

    def dispatch(self, notification: Notification) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._deliver(notification))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _deliver(self, notification: Notification) -> None:
        try:
            await self._send(notification)
        except Exception:
            logger.exception(f"Notification '{notification.title}' to user {notification.user_id} failed")
        else:
            logger.debug(f"Notification '{notification.title}' sent to user {notification.user_id}")

    async def drain(self) -> None:
        """Wait for deliveries still in flight (shutdown, tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending))


def appointment_notice(appointment: Appointment, action: AppointmentAction) -> Notification | None:
    when = f"{appointment.date.isoformat()} {appointment.time}"
    data = {"appointmentId": appointment.id, "status": appointment.status.value}
    if action is AppointmentAction.CONFIRM:
        return Notification(
            user_id=appointment.patient_id,
            title="Appointment confirmed",
            message=f"Your appointment on {when} was confirmed.",
            data=data,
        )
    if action is AppointmentAction.REJECT:
        reason = f" Reason: {appointment.cancel_reason}" if appointment.cancel_reason else ""
        return Notification(
            user_id=appointment.patient_id,
            title="Appointment rejected",
            message=f"Your appointment on {when} was rejected.{reason}",
            data=data,
        )
    return None


def home_visit_notice(visit: HomeVisit, action: HomeVisitAction) -> Notification | None:
    data = {"homeVisitId": visit.id, "status": visit.status.value}
    if action is HomeVisitAction.ASSIGN:
        return Notification(
            user_id=visit.patient_id,
            title="Driver assigned",
            message=f"A driver was assigned to your home visit on {visit.scheduled_date.isoformat()} {visit.scheduled_time}.",
            data=data,
        )
    if action is HomeVisitAction.START_TRIP:
        return Notification(
            user_id=visit.patient_id,
            title="Driver on the way",
            message=f"Your driver is on the way to {visit.address}.",
            data=data,
        )
    return None


def role_review_notice(request: RoleRequest) -> Notification:
    approved = request.status is RoleRequestStatus.APPROVED
    note = f" {request.review_note}" if request.review_note else ""
    return Notification(
        user_id=request.user_id,
        title="Role request approved" if approved else "Role request rejected",
        message=f"Your request to become {request.requested_role.value} was {request.status.value}.{note}",
        type=NotificationType.SYSTEM,
        data={"roleRequestId": request.id, "status": request.status.value},
    )
