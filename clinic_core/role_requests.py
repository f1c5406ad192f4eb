"""Role elevation: a patient asks to become staff, an administrator decides.

A request is ``pending`` until exactly one review closes it. Approval changes
the requester's role and materializes the role profile from
``additional_data``; the backend commits both writes together or neither.
"""
from __future__ import annotations

import datetime as dt
from typing import Any, Iterable

from pydantic import ValidationError as PydanticValidationError

from .errors import (
    AuthorizationDenied,
    DuplicatePendingRequest,
    InvalidTransition,
    ProfileMaterializationError,
    ValidationError,
)
from .models import (
    ADMIN_ROLES,
    DoctorProfile,
    Driver,
    Role,
    RoleRequest,
    RoleRequestCreate,
    RoleRequestStatus,
    RoleReview,
    SessionContext,
)

ELEVATABLE_ROLES = frozenset({Role.DOCTOR, Role.RECEPTION, Role.DRIVER, Role.LAB_TECHNICIAN})

REQUIRED_DATA: dict[Role, tuple[str, ...]] = {
    Role.DOCTOR: ("categoryId", "specialization"),
}


def _pick(data: dict[str, Any], camel: str) -> Any:
    """Read a camelCase key, accepting its snake_case spelling too."""
    if camel in data:
        return data[camel]
    snake = "".join(f"_{c.lower()}" if c.isupper() else c for c in camel)
    return data.get(snake)


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def pending_request_for(requests: Iterable[RoleRequest], user_id: str) -> RoleRequest | None:
    for request in requests:
        if request.user_id == user_id and request.status is RoleRequestStatus.PENDING:
            return request
    return None


def build_role_request(
    data: RoleRequestCreate,
    actor: SessionContext,
    existing: Iterable[RoleRequest],
    request_id: str,
    now: dt.datetime | None = None,
) -> RoleRequest:
    if actor.role is not Role.PATIENT or not actor.user_id:
        raise AuthorizationDenied("Only patient accounts can request a role change")
    if data.requested_role not in ELEVATABLE_ROLES:
        raise ValidationError(f"Role {data.requested_role.value} cannot be requested")
    if _blank(data.reason):
        raise ValidationError("A reason is required")

    extra = dict(data.additional_data or {})
    missing = [key for key in REQUIRED_DATA.get(data.requested_role, ()) if _blank(_pick(extra, key))]
    if missing:
        raise ValidationError(f"Missing {', '.join(missing)} for a {data.requested_role.value} request")

    pending = pending_request_for(existing, actor.user_id)
    if pending is not None:
        raise DuplicatePendingRequest(f"Request {pending.id} is still pending review", current=pending)

    return RoleRequest(
        id=request_id,
        user_id=actor.user_id,
        current_role=actor.role,
        requested_role=data.requested_role,
        reason=data.reason.strip(),
        additional_data=extra,
        status=RoleRequestStatus.PENDING,
        created_at=now or dt.datetime.now(dt.timezone.utc),
    )


def check_review(request: RoleRequest, actor: SessionContext, review: RoleReview) -> RoleRequestStatus:
    if actor.role not in ADMIN_ROLES:
        raise AuthorizationDenied("Only administrators can review role requests")
    if request.user_id == actor.user_id:
        raise AuthorizationDenied("Requesters cannot review their own request")
    if request.status is not RoleRequestStatus.PENDING:
        raise InvalidTransition(f"Role request {request.id} is already {request.status.value}")
    if review.status is RoleRequestStatus.PENDING:
        raise ValidationError("A review must approve or reject")
    return review.status


def apply_review(
    request: RoleRequest,
    actor: SessionContext,
    review: RoleReview,
    now: dt.datetime | None = None,
) -> RoleRequest:
    status = check_review(request, actor, review)
    stamp = now or dt.datetime.now(dt.timezone.utc)
    return request.model_copy(
        update={
            "status": status,
            "reviewed_by": actor.user_id,
            "review_note": review.review_note,
            "reviewed_at": stamp,
            "updated_at": stamp,
        }
    )


def materialize_profile(request: RoleRequest, profile_id: str) -> DoctorProfile | Driver | None:
    """Build the profile record an approval creates; roles without one return None."""
    data = request.additional_data or {}
    try:
        if request.requested_role is Role.DOCTOR:
            return DoctorProfile(
                id=profile_id,
                user_id=request.user_id,
                category_id=_pick(data, "categoryId"),
                specialization=_pick(data, "specialization"),
                experience=_pick(data, "experience") or 0,
                consultation_price=_pick(data, "consultationPrice") or 0,
                bio=_pick(data, "bio"),
            )
        if request.requested_role is Role.DRIVER:
            return Driver(
                id=profile_id,
                user_id=request.user_id,
                vehicle_number=_pick(data, "carNumber"),
                vehicle_model=_pick(data, "carModel"),
                license_number=_pick(data, "licenseNumber"),
            )
    except PydanticValidationError as exc:
        raise ProfileMaterializationError(
            f"Cannot create {request.requested_role.value} profile for request {request.id}: {exc.error_count()} invalid field(s)"
        ) from exc
    return None


def check_withdraw(request: RoleRequest, actor: SessionContext) -> None:
    if request.user_id != actor.user_id:
        raise AuthorizationDenied("Only the requester can withdraw a role request")
    if request.status is not RoleRequestStatus.PENDING:
        raise InvalidTransition(f"Role request {request.id} is already {request.status.value}")
