"""Typed failures shared by the workflows, the API client and the offline server.

Every error carries a stable ``error_code`` (sent in the envelope's ``error``
field) and the HTTP status the offline server answers with, so both sides of
the wire map the same taxonomy.
"""
from __future__ import annotations

from typing import Any


class ClinicError(Exception):
    error_code = "ClinicError"
    status_code = 500
    retryable = False

    def __init__(self, message: str = "", *, current: Any = None):
        super().__init__(message or self.error_code)
        self.message = message or self.error_code
        # Last known server state of the entity, filled in after a failed mutation
        self.current = current


class ValidationError(ClinicError):
    """Malformed input: surfaced as a form-level message, never retried."""

    error_code = "ValidationError"
    status_code = 400


class ConfigurationError(ClinicError):
    """Schedule data that cannot produce slots (bad duration, duplicate active day)."""

    error_code = "ConfigurationError"
    status_code = 422


class SlotUnavailable(ClinicError):
    """Expected outcome of a booking race; the user reselects a slot."""

    error_code = "SlotUnavailable"
    status_code = 409


class InvalidTransition(ClinicError):
    error_code = "InvalidTransition"
    status_code = 409


class DuplicatePendingRequest(ClinicError):
    error_code = "DuplicatePendingRequest"
    status_code = 409


class AuthorizationDenied(ClinicError):
    """Raised by the access gate; callers redirect instead of showing it."""

    error_code = "AuthorizationDenied"
    status_code = 403

    def __init__(self, message: str = "", *, decision: Any = None, redirect_to: str | None = None, current: Any = None):
        super().__init__(message, current=current)
        self.decision = decision
        self.redirect_to = redirect_to


class NotFound(ClinicError):
    error_code = "NotFound"
    status_code = 404


class ProfileMaterializationError(ClinicError):
    """Approval could not create the role profile; nothing was committed."""

    error_code = "ProfileMaterializationError"
    status_code = 422


class NetworkFailure(ClinicError):
    error_code = "NetworkFailure"
    status_code = 503
    retryable = True


class RequestTimeout(NetworkFailure):
    error_code = "RequestTimeout"
    status_code = 504


_BY_CODE: dict[str, type[ClinicError]] = {
    cls.error_code: cls
    for cls in (
        ClinicError,
        ValidationError,
        ConfigurationError,
        SlotUnavailable,
        InvalidTransition,
        DuplicatePendingRequest,
        AuthorizationDenied,
        NotFound,
        ProfileMaterializationError,
        NetworkFailure,
        RequestTimeout,
    )
}

_BY_STATUS: dict[int, type[ClinicError]] = {
    400: ValidationError,
    401: AuthorizationDenied,
    403: AuthorizationDenied,
    404: NotFound,
    409: InvalidTransition,
    422: ValidationError,
    502: NetworkFailure,
    503: NetworkFailure,
    504: RequestTimeout,
}


def error_for_code(code: str | None, status_code: int | None = None) -> type[ClinicError]:
    """Resolve the error class named in an envelope, falling back to the HTTP status."""
    if code and code in _BY_CODE:
        return _BY_CODE[code]
    if status_code in _BY_STATUS:
        return _BY_STATUS[status_code]
    return ClinicError
