"""Access gate: (session, requirement) -> allow / redirect.

``authorize`` is pure. It decides for role-scoped views and, through the
``ACTIONS`` table, for every workflow entry point before a transition is
attempted.
"""
from __future__ import annotations

from enum import Enum

from pydantic import BaseModel

from .errors import AuthorizationDenied
from .models import ADMIN_ROLES, Role, SessionContext

LOGIN_PATH = "/auth/login"

ROLE_HOME: dict[Role, str] = {
    Role.PATIENT: "/",
    Role.DOCTOR: "/doctor/dashboard",
    Role.RECEPTION: "/reception/today",
    Role.DRIVER: "/driver/dashboard",
    Role.LAB_TECHNICIAN: "/laboratory/dashboard",
    Role.ADMIN: "/admin/analytics/dashboard",
    Role.SUPER_ADMIN: "/admin/analytics/dashboard",
}


class AccessDecision(str, Enum):
    ALLOW = "allow"
    REDIRECT_TO_LOGIN = "redirect_to_login"
    REDIRECT_TO_ROLE_HOME = "redirect_to_role_home"


class RouteRequirement(BaseModel):
    requires_authentication: bool = True
    # Empty means any authenticated role
    allowed_roles: frozenset[Role] = frozenset()


def authorize(session: SessionContext, requirement: RouteRequirement) -> AccessDecision:
    if not requirement.requires_authentication:
        return AccessDecision.ALLOW
    if not session.is_authenticated or session.role is None:
        return AccessDecision.REDIRECT_TO_LOGIN
    if requirement.allowed_roles and session.role not in requirement.allowed_roles:
        return AccessDecision.REDIRECT_TO_ROLE_HOME
    return AccessDecision.ALLOW


def role_home(role: Role | None) -> str:
    return ROLE_HOME.get(role, "/") if role else "/"


def redirect_target(session: SessionContext, decision: AccessDecision) -> str | None:
    if decision is AccessDecision.REDIRECT_TO_LOGIN:
        return LOGIN_PATH
    if decision is AccessDecision.REDIRECT_TO_ROLE_HOME:
        return role_home(session.role)
    return None


def ensure_allowed(session: SessionContext, requirement: RouteRequirement, what: str = "") -> None:
    """Raise ``AuthorizationDenied`` carrying the redirect when the gate refuses."""
    decision = authorize(session, requirement)
    if decision is not AccessDecision.ALLOW:
        raise AuthorizationDenied(
            f"{what or 'action'} not allowed for role {session.role.value if session.role else 'anonymous'}",
            decision=decision,
            redirect_to=redirect_target(session, decision),
        )


def _roles(*roles: Role) -> RouteRequirement:
    return RouteRequirement(allowed_roles=frozenset(roles))


ANY_USER = RouteRequirement()
PUBLIC = RouteRequirement(requires_authentication=False)

# View prefixes, longest match first
ROUTES: dict[str, RouteRequirement] = {
    "/admin": _roles(*ADMIN_ROLES),
    "/doctor": _roles(Role.DOCTOR),
    "/reception": _roles(Role.RECEPTION, *ADMIN_ROLES),
    "/driver": _roles(Role.DRIVER, *ADMIN_ROLES),
    "/laboratory": _roles(Role.LAB_TECHNICIAN, *ADMIN_ROLES),
    "/appointments": ANY_USER,
    "/notifications": ANY_USER,
    "/profile": ANY_USER,
    "/settings": ANY_USER,
    "/auth": PUBLIC,
    "/doctors": PUBLIC,
    "/services": PUBLIC,
}


def requirement_for_path(path: str) -> RouteRequirement:
    for prefix in sorted(ROUTES, key=len, reverse=True):
        if path == prefix or path.startswith(prefix + "/"):
            return ROUTES[prefix]
    return PUBLIC


# Entry points of the workflows. Finer rules (ownership, per-transition actors)
# live in the state machines themselves.
ACTIONS: dict[str, RouteRequirement] = {
    "slots.view": PUBLIC,
    "appointment.create": _roles(Role.PATIENT, Role.RECEPTION),
    "appointment.transition": _roles(Role.PATIENT, Role.DOCTOR, Role.RECEPTION, *ADMIN_ROLES),
    "home_visit.create": _roles(Role.RECEPTION, *ADMIN_ROLES),
    "home_visit.transition": _roles(Role.DRIVER, Role.RECEPTION, *ADMIN_ROLES),
    "driver.availability": _roles(Role.DRIVER, *ADMIN_ROLES),
    "role_request.submit": _roles(Role.PATIENT),
    "role_request.withdraw": ANY_USER,
    "role_request.review": _roles(*ADMIN_ROLES),
}


def has_admin_access(role: Role | None) -> bool:
    return role in ADMIN_ROLES


def has_doctor_access(role: Role | None) -> bool:
    return role is Role.DOCTOR or has_admin_access(role)


def has_reception_access(role: Role | None) -> bool:
    return role is Role.RECEPTION or has_admin_access(role)


def has_driver_access(role: Role | None) -> bool:
    return role is Role.DRIVER or has_admin_access(role)
