"""Async client for the clinic command/query API.

Every response is a ``{success, message, data}`` envelope. Calls carry the
session's bearer token; a 401 triggers one refresh through ``/auth/refresh``.
Reads are retried on network failure, commands are sent exactly once.
"""
from __future__ import annotations

import datetime as dt
from typing import Any, Mapping

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .access import LOGIN_PATH, AccessDecision, role_home
from .config import CLINIC_API_TIMEOUT, CLINIC_API_URL, CLINIC_HTTP2, CLINIC_READ_RETRIES
from .errors import (
    AuthorizationDenied,
    ClinicError,
    NetworkFailure,
    RequestTimeout,
    ValidationError,
    error_for_code,
)
from .logger import get_module_logger
from .models import (
    ApiEnvelope,
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

logger = get_module_logger(__name__)


def _items(data: Any) -> list[dict]:
    """List endpoints answer either a bare list or a paginated ``{data: [...]}``."""
    if data is None:
        return []
    if isinstance(data, list):
        return data
    return data.get("data") or data.get("items") or []


def _parse(model: type[BaseModel], data: Any) -> Any:
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(
            f"Unexpected {model.__name__} payload from server: {exc.error_count()} invalid field(s)"
        ) from exc


class ClinicApiClient:
    def __init__(
        self,
        session: SessionContext,
        base_url: str = CLINIC_API_URL,
        timeout: float = CLINIC_API_TIMEOUT,
        read_retries: int = CLINIC_READ_RETRIES,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.read_retries = max(read_retries, 0)
        self._transport = transport

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url, http2=CLINIC_HTTP2, timeout=self.timeout, transport=self._transport
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.session.access_token:
            headers["Authorization"] = f"Bearer {self.session.access_token}"
        return headers

    async def _refresh_token(self) -> bool:
        """Swap the refresh token for a new pair; False when there is none or it was refused."""
        if not self.session.refresh_token:
            return False
        try:
            async with self._http() as client:
                resp = await client.post("/auth/refresh", json={"refreshToken": self.session.refresh_token})
        except httpx.TimeoutException as exc:
            raise RequestTimeout(f"Token refresh timed out after {self.timeout}s") from exc
        except httpx.TransportError as exc:
            raise NetworkFailure(f"Token refresh failed: {exc}") from exc
        if resp.status_code >= 400:
            logger.warning(f"Token refresh refused with HTTP {resp.status_code}")
            return False
        try:
            body = resp.json()
        except ValueError:
            body = None
        tokens = body.get("data") if isinstance(body, dict) and isinstance(body.get("data"), dict) else body
        if not isinstance(tokens, dict) or not tokens.get("accessToken"):
            logger.warning("Token refresh answered without an access token")
            return False
        self.session.access_token = tokens["accessToken"]
        self.session.refresh_token = tokens.get("refreshToken", self.session.refresh_token)
        return True

    def _raise_for_envelope(self, resp: httpx.Response) -> Any:
        try:
            envelope = ApiEnvelope.model_validate(resp.json())
        except ValueError:
            if resp.status_code >= 400:
                raise error_for_code(None, resp.status_code)(f"HTTP {resp.status_code}") from None
            raise ClinicError(f"Malformed response from {resp.request.url.path}") from None

        if resp.status_code < 400 and envelope.success:
            return envelope.data

        cls = error_for_code(envelope.error, resp.status_code)
        message = envelope.message or f"HTTP {resp.status_code}"
        if issubclass(cls, AuthorizationDenied):
            if resp.status_code == 401:
                raise cls(message, decision=AccessDecision.REDIRECT_TO_LOGIN, redirect_to=LOGIN_PATH)
            raise cls(
                message,
                decision=AccessDecision.REDIRECT_TO_ROLE_HOME,
                redirect_to=role_home(self.session.role),
            )
        raise cls(message, current=envelope.data)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Mapping[str, Any] | None = None,
        idempotent: bool = False,
    ) -> Any:
        attempts = 1 + (self.read_retries if idempotent else 0)
        refreshed = False
        attempt = 0
        while True:
            attempt += 1
            try:
                async with self._http() as client:
                    resp = await client.request(method, path, json=json, params=params, headers=self._headers())
            except httpx.TimeoutException as exc:
                error: NetworkFailure = RequestTimeout(f"{method} {path} timed out after {self.timeout}s")
                cause: Exception = exc
            except httpx.TransportError as exc:
                error = NetworkFailure(f"{method} {path} failed: {exc}")
                cause = exc
            else:
                # 401 means the call never ran, so replaying it after a refresh is safe
                if resp.status_code == 401 and not refreshed and await self._refresh_token():
                    refreshed = True
                    attempt -= 1
                    continue
                return self._raise_for_envelope(resp)

            if attempt < attempts:
                logger.warning(f"{error.message}; retrying ({attempt}/{attempts - 1})")
                continue
            logger.error(error.message)
            raise error from cause

    async def _get(self, path: str, params: Mapping[str, Any] | None = None) -> Any:
        return await self._request("GET", path, params=params, idempotent=True)

    # Queries -------------------------------------------------------------

    async def get_doctor_schedules(self, doctor_id: str) -> list[DoctorSchedule]:
        data = await self._get(f"/doctors/{doctor_id}/schedule")
        return [_parse(DoctorSchedule, {"doctorId": doctor_id, **row}) for row in _items(data)]

    async def list_doctor_appointments(self, doctor_id: str, day: dt.date) -> list[Appointment]:
        data = await self._get("/appointments", params={"doctorId": doctor_id, "date": day.isoformat()})
        return [_parse(Appointment, row) for row in _items(data)]

    async def get_appointment(self, appointment_id: str) -> Appointment:
        return _parse(Appointment, await self._get(f"/appointments/{appointment_id}"))

    async def get_home_visit(self, visit_id: str) -> HomeVisit:
        return _parse(HomeVisit, await self._get(f"/driver/home-visits/{visit_id}"))

    async def get_driver(self, driver_id: str) -> Driver:
        return _parse(Driver, await self._get(f"/driver/{driver_id}"))

    async def list_available_drivers(self) -> list[Driver]:
        return [_parse(Driver, row) for row in _items(await self._get("/driver/available"))]

    async def get_role_request(self, request_id: str) -> RoleRequest:
        return _parse(RoleRequest, await self._get(f"/admin/role-requests/{request_id}"))

    async def list_role_requests(self, user_id: str) -> list[RoleRequest]:
        # the server scopes /my to the bearer token's user
        return [_parse(RoleRequest, row) for row in _items(await self._get("/role-requests/my"))]

    async def get_user(self, user_id: str) -> User:
        return _parse(User, await self._get(f"/users/{user_id}"))

    # Commands ------------------------------------------------------------

    async def create_appointment(self, actor: SessionContext, data: AppointmentCreate) -> Appointment:
        return _parse(Appointment, await self._request("POST", "/appointments", json=data.to_wire()))

    async def transition_appointment(self, actor: SessionContext, appointment_id: str, action: str,
                                     payload: Mapping[str, Any] | None = None) -> Appointment:
        data = await self._request("PATCH", f"/appointments/{appointment_id}/{action}", json=dict(payload or {}))
        return _parse(Appointment, data)

    async def create_home_visit(self, actor: SessionContext, data: HomeVisitCreate) -> HomeVisit:
        return _parse(HomeVisit, await self._request("POST", "/driver/home-visits", json=data.to_wire()))

    async def transition_home_visit(self, actor: SessionContext, visit_id: str, action: str,
                                    payload: Mapping[str, Any] | None = None) -> HomeVisit:
        if action == "assign":
            path = f"/driver/home-visits/{visit_id}/assign"
        else:
            path = f"/driver/visit/{visit_id}/{action}"
        return _parse(HomeVisit, await self._request("PATCH", path, json=dict(payload or {})))

    async def set_driver_availability(self, actor: SessionContext, is_available: bool,
                                      driver_id: str | None = None) -> Driver:
        body = {"isAvailable": is_available}
        if driver_id:
            body["driverId"] = driver_id
        return _parse(Driver, await self._request("PATCH", "/driver/availability", json=body))

    async def submit_role_request(self, actor: SessionContext, data: RoleRequestCreate) -> RoleRequest:
        return _parse(RoleRequest, await self._request("POST", "/role-requests", json=data.to_wire()))

    async def review_role_request(self, actor: SessionContext, request_id: str, review: RoleReview) -> RoleRequest:
        data = await self._request("PATCH", f"/admin/role-requests/{request_id}/review", json=review.to_wire())
        return _parse(RoleRequest, data)

    async def withdraw_role_request(self, actor: SessionContext, request_id: str) -> None:
        await self._request("DELETE", f"/role-requests/{request_id}")

    async def send_notification(self, notification: Notification) -> None:
        await self._request("POST", "/notifications", json=notification.to_wire())
