"""
Identity domain types and constants for the shuttle tracker.

Why:
- Keep role names, storage keys and collection names in one place so the
  resolver, the driver directory and the web layer cannot drift apart.
- Model each role's session as its own variant instead of one record with
  optional fields that mean different things per role.

Serialization uses camelCase keys because the same dicts are persisted in the
document store and in per-browser local storage.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, Optional
import re
import secrets
import string

# Only these login surfaces may remember credentials. Admin never does.
REMEMBER_SURFACES = frozenset({"student", "driver"})
DRIVER_STATUSES = frozenset({"available", "on_trip", "offline", "maintenance"})

USERS_COLLECTION = "users"
DRIVERS_COLLECTION = "drivers"
ADMINS_COLLECTION = "admins"

STORAGE_PREFIX = "shuttle"
GUEST_STORAGE_KEY = f"{STORAGE_PREFIX}-guest"

GUEST_ID_PREFIX = "guest-"
GUEST_EMAIL = "guest@knust.edu.gh"
GUEST_DISPLAY_NAME = "Guest User"

SYNTHETIC_DRIVER_PREFIX = "driver_"
_BASE36 = string.digits + string.ascii_lowercase
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def credentials_storage_key(surface: str) -> str:
    """Return the local-storage key holding remembered credentials for a surface."""
    if surface not in REMEMBER_SURFACES:
        raise ValueError("invalid_surface")
    return f"{STORAGE_PREFIX}-{surface}-credentials"


def normalize_email(value: str) -> str:
    return (value or "").strip().lower()


def is_valid_email(value: str) -> bool:
    return bool(_EMAIL_RE.match(normalize_email(value)))


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def now_ms() -> int:
    return int(now_utc().timestamp() * 1000)


def synthetic_driver_id(timestamp_ms: Optional[int] = None) -> str:
    """Build a document id marking a driver without an identity-provider account."""
    ts = now_ms() if timestamp_ms is None else timestamp_ms
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"{SYNTHETIC_DRIVER_PREFIX}{ts}_{suffix}"


def is_synthetic_driver_id(value: str) -> bool:
    return str(value or "").startswith(SYNTHETIC_DRIVER_PREFIX)


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class SessionState(str, Enum):
    UNRESOLVED = "unresolved"
    GUEST = "guest"
    AUTHENTICATED = "authenticated"
    SIGNED_OUT = "signed_out"


@dataclass(frozen=True)
class Session:
    """Resolved identity for one browser context."""

    id: str
    email: str
    display_name: str

    role: ClassVar[str] = ""

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"role": self.role}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None and f.name not in ("id", "email", "display_name"):
                continue
            data[_camel(f.name)] = value
        return data

    def with_changes(self, changes: Mapping[str, Any]) -> "Session":
        """Return a copy with camelCase profile keys applied (unknown keys ignored)."""
        known = {_camel(f.name): f.name for f in fields(self)}
        known["name"] = "display_name"
        kwargs = {known[k]: v for k, v in changes.items() if k in known}
        return replace(self, **kwargs)


@dataclass(frozen=True)
class StudentSession(Session):
    role: ClassVar[str] = "student"

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    student_id: Optional[str] = None
    department: Optional[str] = None
    level: Optional[str] = None


@dataclass(frozen=True)
class GuestSession(Session):
    role: ClassVar[str] = "guest"

    @classmethod
    def new(cls, timestamp_ms: Optional[int] = None) -> "GuestSession":
        ts = now_ms() if timestamp_ms is None else timestamp_ms
        return cls(id=f"{GUEST_ID_PREFIX}{ts}", email=GUEST_EMAIL, display_name=GUEST_DISPLAY_NAME)


@dataclass(frozen=True)
class DriverSession(Session):
    role: ClassVar[str] = "driver"

    driver_id: Optional[str] = None
    phone: Optional[str] = None
    vehicle_number: Optional[str] = None
    route: Optional[str] = None

    @classmethod
    def from_account(cls, account: "DriverAccount") -> "DriverSession":
        return cls(
            id=account.id,
            email=account.email,
            display_name=account.name,
            driver_id=account.driver_id,
            phone=account.phone,
            vehicle_number=account.vehicle_number,
            route=account.route,
        )


@dataclass(frozen=True)
class AdminSession(Session):
    role: ClassVar[str] = "admin"


SESSION_TYPES: Dict[str, type] = {
    cls.role: cls for cls in (StudentSession, GuestSession, DriverSession, AdminSession)
}


def session_from_dict(data: Mapping[str, Any], *, default_id: Optional[str] = None) -> Session:
    """Build the session variant for `data["role"]`.

    Accepts both serialized sessions (`displayName`) and profile documents
    (`name`). Raises ValueError for unknown roles or a missing id.
    """
    role = str(data.get("role") or "")
    cls = SESSION_TYPES.get(role)
    if cls is None:
        raise ValueError("invalid_role")
    sid = str(data.get("id") or default_id or "")
    if not sid:
        raise ValueError("missing_id")
    name = data.get("displayName")
    if name is None:
        name = data.get("name")
    kwargs: Dict[str, Any] = {
        "id": sid,
        "email": str(data.get("email") or ""),
        "display_name": str(name or ""),
    }
    for f in fields(cls):
        if f.name in kwargs:
            continue
        key = _camel(f.name)
        if key in data and data[key] is not None:
            kwargs[f.name] = data[key]
    return cls(**kwargs)


@dataclass(frozen=True)
class DriverAccount:
    """Driver record as stored in the `drivers` collection.

    `key` is the storage key of the document and never changes. `id` starts
    out synthetic and is rewritten to the identity-provider uid on first
    successful sign-in.
    """

    key: str
    id: str
    driver_id: str
    email: str
    name: str
    password: str
    phone: Optional[str] = None
    vehicle_number: Optional[str] = None
    route: Optional[str] = None
    is_active: bool = True
    current_status: str = "available"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_login: Optional[datetime] = None

    @property
    def is_provisioned(self) -> bool:
        return not is_synthetic_driver_id(self.id)

    def to_document(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "driverId": self.driver_id,
            "email": self.email,
            "name": self.name,
            "password": self.password,
            "phone": self.phone,
            "vehicleNumber": self.vehicle_number,
            "route": self.route,
            "isActive": self.is_active,
            "currentStatus": self.current_status,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "lastLogin": _iso(self.last_login),
        }

    def public_dict(self) -> Dict[str, Any]:
        """Document without the password field (for admin listings)."""
        data = self.to_document()
        data.pop("password", None)
        return data

    @classmethod
    def from_document(cls, key: str, doc: Mapping[str, Any]) -> "DriverAccount":
        return cls(
            key=key,
            id=str(doc.get("id") or key),
            driver_id=str(doc.get("driverId") or ""),
            email=str(doc.get("email") or ""),
            name=str(doc.get("name") or ""),
            password=str(doc.get("password") or ""),
            phone=doc.get("phone"),
            vehicle_number=doc.get("vehicleNumber"),
            route=doc.get("route"),
            is_active=bool(doc.get("isActive", True)),
            current_status=str(doc.get("currentStatus") or "available"),
            created_at=_parse_dt(doc.get("createdAt")),
            updated_at=_parse_dt(doc.get("updatedAt")),
            last_login=_parse_dt(doc.get("lastLogin")),
        )


@dataclass(frozen=True)
class AdminAccount:
    id: str
    email: str
    name: str
    permissions: list[str] = field(default_factory=list)

    @classmethod
    def from_document(cls, key: str, doc: Mapping[str, Any]) -> "AdminAccount":
        perms = doc.get("permissions") or []
        return cls(
            id=str(doc.get("id") or key),
            email=str(doc.get("email") or ""),
            name=str(doc.get("name") or ""),
            permissions=[str(p) for p in perms] if isinstance(perms, list) else [],
        )


@dataclass(frozen=True)
class RememberedCredential:
    """Minimal fields needed to re-populate a login form."""

    password: str
    email: Optional[str] = None
    driver_id: Optional[str] = None

    def to_dict(self) -> Dict[str, str]:
        data = {"password": self.password}
        if self.email is not None:
            data["email"] = self.email
        if self.driver_id is not None:
            data["driverId"] = self.driver_id
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RememberedCredential":
        password = data.get("password")
        if not isinstance(password, str):
            raise ValueError("invalid_credentials_record")
        return cls(password=password, email=data.get("email"), driver_id=data.get("driverId"))


__all__ = [
    "ADMINS_COLLECTION",
    "AdminAccount",
    "AdminSession",
    "DRIVERS_COLLECTION",
    "DRIVER_STATUSES",
    "DriverAccount",
    "DriverSession",
    "GUEST_STORAGE_KEY",
    "GuestSession",
    "REMEMBER_SURFACES",
    "RememberedCredential",
    "Session",
    "SessionState",
    "StudentSession",
    "USERS_COLLECTION",
    "credentials_storage_key",
    "is_synthetic_driver_id",
    "is_valid_email",
    "normalize_email",
    "session_from_dict",
    "synthetic_driver_id",
]
