"""Offline command/query API served from the in-memory backend.

Speaks the same ``{success, message, data}`` envelope and paths as the live
clinic server so ``ClinicApiClient`` can run against it with ``OFFLINE_MODE=1``
or inside tests.
"""
from __future__ import annotations

import datetime as dt
from typing import Any, Optional

from fastapi import Body, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .access import ACTIONS, LOGIN_PATH, AccessDecision, ensure_allowed
from .errors import AuthorizationDenied, ClinicError, NotFound
from .logger import get_module_logger
from .memory import InMemoryBackend
from .models import (
    ADMIN_ROLES,
    ApiEnvelope,
    AppointmentCreate,
    HomeVisitCreate,
    Notification,
    Role,
    RoleRequestCreate,
    RoleReview,
    SessionContext,
)
from .schedule import compute_slots

logger = get_module_logger(__name__)

# HTTPBearer so Swagger-UI can attach the Authorization header globally
auth_scheme = HTTPBearer(auto_error=False)


def _ok(data: Any = None, message: str = "OK") -> dict:
    if hasattr(data, "to_wire"):
        data = data.to_wire()
    elif isinstance(data, list):
        data = [item.to_wire() if hasattr(item, "to_wire") else item for item in data]
    return ApiEnvelope(success=True, message=message, data=data).model_dump()


def _backend(request: Request) -> InMemoryBackend:
    return request.app.state.backend


def current_session(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
) -> SessionContext:
    """Resolve the bearer token to a session issued by the backend."""
    backend = _backend(request)
    if credentials is None or credentials.scheme.lower() != "bearer" or credentials.credentials not in backend.sessions:
        raise AuthorizationDenied(
            "Authentication required", decision=AccessDecision.REDIRECT_TO_LOGIN, redirect_to=LOGIN_PATH
        )
    return backend.sessions[credentials.credentials]


def create_app(backend: InMemoryBackend | None = None) -> FastAPI:
    app = FastAPI(title="Clinic Workflow Offline API")
    app.state.backend = backend or InMemoryBackend()

    @app.exception_handler(ClinicError)
    async def clinic_error_handler(request: Request, exc: ClinicError):
        status_code = exc.status_code
        logger.warning(f"{request.method} {request.url.path} failed with {exc.error_code}: {exc.message}")
        if isinstance(exc, AuthorizationDenied) and exc.decision is AccessDecision.REDIRECT_TO_LOGIN:
            status_code = 401
        current = exc.current.to_wire() if hasattr(exc.current, "to_wire") else None
        body = ApiEnvelope(success=False, message=exc.message, data=current, error=exc.error_code)
        return JSONResponse(status_code=status_code, content=body.model_dump())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        message = f"{'.'.join(str(p) for p in first.get('loc', ()))}: {first.get('msg', 'invalid input')}"
        body = ApiEnvelope(success=False, message=message, error="ValidationError")
        return JSONResponse(status_code=400, content=body.model_dump())

    # Doctors -----------------------------------------------------------

    @app.get("/doctors/{doctor_id}/schedule")
    async def doctor_schedule(doctor_id: str, request: Request):
        return _ok(await _backend(request).get_doctor_schedules(doctor_id))

    @app.get("/doctors/{doctor_id}/available-slots")
    async def available_slots(doctor_id: str, request: Request, date: dt.date = Query(...)):
        backend = _backend(request)
        schedules = await backend.get_doctor_schedules(doctor_id)
        existing = await backend.list_doctor_appointments(doctor_id, date)
        return _ok(compute_slots(schedules, date, existing, doctor_id))

    # Appointments ------------------------------------------------------

    @app.get("/appointments")
    async def list_appointments(
        request: Request,
        doctor_id: str = Query(..., alias="doctorId"),
        date: dt.date = Query(...),
        session: SessionContext = Depends(current_session),
    ):
        return _ok(await _backend(request).list_doctor_appointments(doctor_id, date))

    @app.get("/appointments/{appointment_id}")
    async def get_appointment(appointment_id: str, request: Request, session: SessionContext = Depends(current_session)):
        appointment = await _backend(request).get_appointment(appointment_id)
        if session.role is Role.PATIENT and appointment.patient_id != session.user_id:
            raise NotFound(f"Appointment {appointment_id} not found")
        return _ok(appointment)

    @app.post("/appointments", status_code=201)
    async def create_appointment(data: AppointmentCreate, request: Request,
                                 session: SessionContext = Depends(current_session)):
        ensure_allowed(session, ACTIONS["appointment.create"], "booking")
        return _ok(await _backend(request).create_appointment(session, data), "Appointment created")

    @app.patch("/appointments/{appointment_id}/{action}")
    async def transition_appointment(
        appointment_id: str,
        action: str,
        request: Request,
        payload: Optional[dict] = Body(None),
        session: SessionContext = Depends(current_session),
    ):
        ensure_allowed(session, ACTIONS["appointment.transition"], f"appointment {action}")
        return _ok(await _backend(request).transition_appointment(session, appointment_id, action, payload))

    # Drivers and home visits -------------------------------------------

    @app.get("/driver/available")
    async def available_drivers(request: Request, session: SessionContext = Depends(current_session)):
        ensure_allowed(session, ACTIONS["home_visit.create"], "driver listing")
        return _ok(await _backend(request).list_available_drivers())

    @app.patch("/driver/availability")
    async def driver_availability(
        request: Request,
        is_available: bool = Body(..., alias="isAvailable", embed=True),
        driver_id: Optional[str] = Body(None, alias="driverId", embed=True),
        session: SessionContext = Depends(current_session),
    ):
        ensure_allowed(session, ACTIONS["driver.availability"], "driver availability")
        return _ok(await _backend(request).set_driver_availability(session, is_available, driver_id))

    @app.get("/driver/home-visits/{visit_id}")
    async def get_home_visit(visit_id: str, request: Request, session: SessionContext = Depends(current_session)):
        return _ok(await _backend(request).get_home_visit(visit_id))

    @app.post("/driver/home-visits", status_code=201)
    async def create_home_visit(data: HomeVisitCreate, request: Request,
                                session: SessionContext = Depends(current_session)):
        ensure_allowed(session, ACTIONS["home_visit.create"], "home visit creation")
        return _ok(await _backend(request).create_home_visit(session, data), "Home visit created")

    @app.patch("/driver/home-visits/{visit_id}/assign")
    async def assign_driver(
        visit_id: str,
        request: Request,
        payload: Optional[dict] = Body(None),
        session: SessionContext = Depends(current_session),
    ):
        ensure_allowed(session, ACTIONS["home_visit.transition"], "driver assignment")
        return _ok(await _backend(request).transition_home_visit(session, visit_id, "assign", payload))

    @app.patch("/driver/visit/{visit_id}/{action}")
    async def transition_home_visit(
        visit_id: str,
        action: str,
        request: Request,
        payload: Optional[dict] = Body(None),
        session: SessionContext = Depends(current_session),
    ):
        ensure_allowed(session, ACTIONS["home_visit.transition"], f"home visit {action}")
        return _ok(await _backend(request).transition_home_visit(session, visit_id, action, payload))

    @app.get("/driver/{driver_id}")
    async def get_driver(driver_id: str, request: Request, session: SessionContext = Depends(current_session)):
        return _ok(await _backend(request).get_driver(driver_id))

    # Role requests -----------------------------------------------------

    @app.post("/role-requests", status_code=201)
    async def submit_role_request(data: RoleRequestCreate, request: Request,
                                  session: SessionContext = Depends(current_session)):
        ensure_allowed(session, ACTIONS["role_request.submit"], "role request")
        return _ok(await _backend(request).submit_role_request(session, data), "Role request submitted")

    @app.get("/role-requests/my")
    async def my_role_requests(request: Request, session: SessionContext = Depends(current_session)):
        return _ok(await _backend(request).list_role_requests(session.user_id))

    @app.delete("/role-requests/{request_id}")
    async def withdraw_role_request(request_id: str, request: Request,
                                    session: SessionContext = Depends(current_session)):
        await _backend(request).withdraw_role_request(session, request_id)
        return _ok(message="Role request withdrawn")

    @app.get("/admin/role-requests/{request_id}")
    async def get_role_request(request_id: str, request: Request, session: SessionContext = Depends(current_session)):
        role_request = await _backend(request).get_role_request(request_id)
        if session.role not in ADMIN_ROLES and role_request.user_id != session.user_id:
            raise NotFound(f"Role request {request_id} not found")
        return _ok(role_request)

    @app.patch("/admin/role-requests/{request_id}/review")
    async def review_role_request(request_id: str, review: RoleReview, request: Request,
                                  session: SessionContext = Depends(current_session)):
        ensure_allowed(session, ACTIONS["role_request.review"], "role request review")
        return _ok(await _backend(request).review_role_request(session, request_id, review))

    # Users and notifications -------------------------------------------

    @app.get("/users/{user_id}")
    async def get_user(user_id: str, request: Request, session: SessionContext = Depends(current_session)):
        if user_id != session.user_id and session.role is Role.PATIENT:
            raise NotFound(f"User {user_id} not found")
        return _ok(await _backend(request).get_user(user_id))

    @app.post("/notifications", status_code=201)
    async def create_notification(notification: Notification, request: Request,
                                  session: SessionContext = Depends(current_session)):
        await _backend(request).send_notification(notification)
        return _ok(message="Notification queued")

    @app.get("/")
    async def root():
        return {"message": "Clinic workflow offline API"}

    return app


app = create_app()
