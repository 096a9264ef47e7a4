"""
Error taxonomy for identity operations.

Every domain error carries a stable `code` (used by the web adapter for the
JSON error body and status mapping) and a short message suitable for display
beside the form that triggered it.

Identity-provider failures arrive as `ProviderError(code)` and are translated
per login surface by `map_provider_error`, because the same provider code
(e.g. `user_not_found`) reads differently on the admin form than on the
student form.
"""

from __future__ import annotations

from typing import Dict, Optional


class AuthError(Exception):
    code = "auth_error"
    default_message = "Authentication failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class DuplicateEmail(AuthError):
    code = "duplicate_email"
    default_message = "An account with this email already exists"


class InvalidEmail(AuthError):
    code = "invalid_email"
    default_message = "Invalid email address"


class WeakPassword(AuthError):
    code = "weak_password"
    default_message = "Password is too weak. Use at least 6 characters"


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    default_message = "Invalid email or password"


class AccountDisabled(AuthError):
    code = "account_disabled"
    default_message = "This account has been disabled"


class TooManyAttempts(AuthError):
    code = "too_many_attempts"
    default_message = "Too many failed attempts. Please try again later"


class AccessDenied(AuthError):
    code = "access_denied"
    default_message = "Access denied. Admin privileges required."


class DriverNotFound(AuthError):
    code = "driver_not_found"
    default_message = "No driver account found with this Driver ID"


class DriverIdTaken(AuthError):
    code = "driver_id_taken"
    default_message = "A driver with this Driver ID already exists"


class ProvisioningFailed(AuthError):
    code = "provisioning_failed"
    default_message = "Failed to create authentication account. Please contact support."


class IncorrectPassword(AuthError):
    code = "incorrect_password"
    default_message = "Current password is incorrect"


class NotAuthenticated(AuthError):
    code = "not_authenticated"
    default_message = "No user logged in"


class NotDriver(AuthError):
    code = "not_driver"
    default_message = "User not logged in or not a driver"


class NotFound(AuthError):
    code = "not_found"
    default_message = "User profile not found"


class OperationNotAllowed(AuthError):
    code = "operation_not_allowed"
    default_message = "Email/password accounts are not enabled"


class ServiceUnavailable(AuthError):
    code = "service_unavailable"
    default_message = "Service temporarily unavailable. Please try again later"


class ProviderError(Exception):
    """Failure reported by the identity provider, normalized to a short code.

    Known codes: email_in_use, invalid_email, weak_password,
    invalid_credentials, user_not_found, wrong_password, user_disabled,
    too_many_requests, operation_not_allowed, unavailable.
    """

    def __init__(self, code: str, detail: Optional[str] = None):
        super().__init__(code)
        self.code = code
        self.detail = detail


class DocumentStoreError(Exception):
    def __init__(self, code: str, detail: Optional[str] = None):
        super().__init__(code)
        self.code = code
        self.detail = detail


# Per-surface translation tables: provider code -> (error class, message).
_SIGN_UP: Dict[str, tuple[type[AuthError], str]] = {
    "email_in_use": (DuplicateEmail, "An account with this email already exists"),
    "invalid_email": (InvalidEmail, "Invalid email address"),
    "weak_password": (WeakPassword, "Password is too weak. Use at least 6 characters"),
    "operation_not_allowed": (OperationNotAllowed, "Email/password accounts are not enabled"),
    "too_many_requests": (TooManyAttempts, "Too many requests. Please try again later"),
}

_STUDENT: Dict[str, tuple[type[AuthError], str]] = {
    "invalid_credentials": (InvalidCredentials, "Invalid email or password"),
    "user_not_found": (InvalidCredentials, "No account found with this email"),
    "wrong_password": (InvalidCredentials, "Incorrect password"),
    "invalid_email": (InvalidEmail, "Invalid email address"),
    "too_many_requests": (TooManyAttempts, "Too many failed attempts. Please try again later"),
    "user_disabled": (AccountDisabled, "This account has been disabled"),
}

_ADMIN: Dict[str, tuple[type[AuthError], str]] = {
    "invalid_credentials": (InvalidCredentials, "Invalid email or password"),
    "user_not_found": (InvalidCredentials, "No admin account found with this email"),
    "wrong_password": (InvalidCredentials, "Incorrect password"),
    "invalid_email": (InvalidEmail, "Invalid email address"),
    "too_many_requests": (TooManyAttempts, "Too many failed attempts. Please try again later"),
    "user_disabled": (AccountDisabled, "This account has been disabled"),
}

_SURFACES = {
    "sign_up": (_SIGN_UP, "Failed to create account"),
    "student": (_STUDENT, "Failed to sign in"),
    "admin": (_ADMIN, "Failed to sign in as admin"),
}


def map_provider_error(exc: ProviderError, surface: str) -> AuthError:
    """Translate a provider failure into the domain error shown on `surface`.

    Unknown codes fall back to a generic `AuthError` with the surface's
    default message; `unavailable` always maps to `ServiceUnavailable`.
    """
    if exc.code == "unavailable":
        return ServiceUnavailable()
    table, fallback = _SURFACES[surface]
    hit = table.get(exc.code)
    if hit is None:
        return AuthError(fallback)
    cls, message = hit
    return cls(message)


__all__ = [
    "AccessDenied",
    "AccountDisabled",
    "AuthError",
    "DocumentStoreError",
    "DriverIdTaken",
    "DriverNotFound",
    "DuplicateEmail",
    "IncorrectPassword",
    "InvalidCredentials",
    "InvalidEmail",
    "NotAuthenticated",
    "NotDriver",
    "NotFound",
    "OperationNotAllowed",
    "ProviderError",
    "ProvisioningFailed",
    "ServiceUnavailable",
    "TooManyAttempts",
    "WeakPassword",
    "map_provider_error",
]
