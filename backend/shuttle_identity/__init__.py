"""Shuttle identity package

Session resolution for the shuttle tracker: guest, student, driver and admin
sessions reconciled against one identity-provider session, plus the driver
account directory that feeds the driver sign-in flow.
"""

from .domain import (
    AdminSession,
    DriverAccount,
    DriverSession,
    GuestSession,
    Session,
    SessionState,
    StudentSession,
)
from .errors import AuthError
from .resolver import SessionResolver

__all__ = [
    "AdminSession",
    "AuthError",
    "DriverAccount",
    "DriverSession",
    "GuestSession",
    "Session",
    "SessionResolver",
    "SessionState",
    "StudentSession",
]
