"""
Driver account directory and lazy identity provisioning.

Why:
- Admins create drivers out-of-band: a driver record with a `driverId`,
  email and password exists long before any identity-provider account does.
- The first successful driver sign-in provisions that account and rewrites
  the record's `id` from the synthetic placeholder to the provider uid.

Provisioning is one idempotent operation: the profile write and the driver id
rewrite run in a single store transaction, and a retry after a partial
failure ("email already in use") signs in to the existing provider account
and completes the same writes.
"""
from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

import structlog

from .domain import (
    DRIVER_STATUSES,
    DRIVERS_COLLECTION,
    USERS_COLLECTION,
    DriverAccount,
    is_valid_email,
    normalize_email,
    now_utc,
    synthetic_driver_id,
)
from .errors import (
    DocumentStoreError,
    DriverIdTaken,
    DuplicateEmail,
    InvalidEmail,
    NotFound,
    ProviderError,
    ProvisioningFailed,
    WeakPassword,
)
from .passwords import MIN_PASSWORD_LENGTH
from .ports import DocumentStore, IdentityProvider, PasswordHasher, ProviderUser

logger = structlog.get_logger("shuttle_identity.drivers")

# Patch keys an admin may change; `password` is hashed before storage.
UPDATABLE_FIELDS = frozenset(
    {"driverId", "email", "name", "password", "phone", "vehicleNumber", "route", "isActive", "currentStatus"}
)


def _validate_password(password: str) -> None:
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise WeakPassword()


def _validate_status(status: str) -> None:
    if status not in DRIVER_STATUSES:
        raise ValueError("invalid_status")


class DriverDirectory:
    def __init__(
        self,
        documents: DocumentStore,
        hasher: PasswordHasher,
        *,
        clock: Callable[[], datetime] = now_utc,
    ):
        self._documents = documents
        self._hasher = hasher
        self._clock = clock

    # --- lookups -----------------------------------------------------------

    def _one(self, **equals: Any) -> Optional[DriverAccount]:
        hits = self._documents.query(DRIVERS_COLLECTION, **equals)
        if not hits:
            return None
        if len(hits) > 1:
            logger.warning("driver_lookup_ambiguous", fields=sorted(equals))
        return DriverAccount.from_document(hits[0].key, hits[0].data)

    def get_by_driver_id(self, driver_id: str) -> Optional[DriverAccount]:
        return self._one(driverId=(driver_id or "").strip())

    def get_by_email(self, email: str) -> Optional[DriverAccount]:
        return self._one(email=normalize_email(email))

    def find_active(self, driver_id: str) -> Optional[DriverAccount]:
        return self._one(driverId=(driver_id or "").strip(), isActive=True)

    def list_drivers(self, limit: int = 50) -> List[DriverAccount]:
        accounts = [DriverAccount.from_document(d.key, d.data) for d in self._documents.query(DRIVERS_COLLECTION)]
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        accounts.sort(key=lambda a: a.created_at or epoch, reverse=True)
        return accounts[: max(0, int(limit))]

    def _require(self, driver_id: str) -> DriverAccount:
        account = self.get_by_driver_id(driver_id)
        if account is None:
            raise NotFound("Driver not found")
        return account

    # --- admin operations --------------------------------------------------

    def create_driver(
        self,
        *,
        driver_id: str,
        email: str,
        name: str,
        password: str,
        phone: Optional[str] = None,
        vehicle_number: Optional[str] = None,
        route: Optional[str] = None,
        is_active: bool = True,
    ) -> DriverAccount:
        driver_id = (driver_id or "").strip()
        email = normalize_email(email)
        if not driver_id:
            raise ValueError("invalid_driver_id")
        if not is_valid_email(email):
            raise InvalidEmail()
        _validate_password(password)
        if self.get_by_driver_id(driver_id) is not None:
            raise DriverIdTaken()
        if self.get_by_email(email) is not None:
            raise DuplicateEmail("A driver with this email already exists")
        now = self._clock()
        key = synthetic_driver_id(int(now.timestamp() * 1000))
        account = DriverAccount(
            key=key,
            id=key,
            driver_id=driver_id,
            email=email,
            name=(name or "").strip(),
            password=self._hasher.hash(password),
            phone=phone,
            vehicle_number=vehicle_number,
            route=route,
            is_active=bool(is_active),
            created_at=now,
            updated_at=now,
        )
        self._documents.set(DRIVERS_COLLECTION, key, account.to_document())
        logger.info("driver_created", driver_id=driver_id)
        return account

    def update_driver(self, driver_id: str, patch: Mapping[str, Any]) -> DriverAccount:
        account = self._require(driver_id)
        unknown = set(patch) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError("invalid_fields")
        changes: Dict[str, Any] = dict(patch)
        if "driverId" in changes:
            new_id = str(changes["driverId"] or "").strip()
            if not new_id:
                raise ValueError("invalid_driver_id")
            other = self.get_by_driver_id(new_id)
            if other is not None and other.key != account.key:
                raise DriverIdTaken()
            changes["driverId"] = new_id
        if "email" in changes:
            new_email = normalize_email(changes["email"])
            if not is_valid_email(new_email):
                raise InvalidEmail()
            other = self.get_by_email(new_email)
            if other is not None and other.key != account.key:
                raise DuplicateEmail("A driver with this email already exists")
            changes["email"] = new_email
        if "password" in changes:
            _validate_password(changes["password"])
            changes["password"] = self._hasher.hash(changes["password"])
        if "currentStatus" in changes:
            _validate_status(changes["currentStatus"])
        if "isActive" in changes:
            changes["isActive"] = bool(changes["isActive"])
        changes["updatedAt"] = self._clock().isoformat()
        self._documents.set(DRIVERS_COLLECTION, account.key, changes, merge=True)
        updated = self._documents.get(DRIVERS_COLLECTION, account.key) or {}
        return DriverAccount.from_document(account.key, updated)

    def delete_driver(self, driver_id: str) -> None:
        account = self._require(driver_id)
        self._documents.delete(DRIVERS_COLLECTION, account.key)
        logger.info("driver_deleted", driver_id=account.driver_id)

    def toggle_active(self, driver_id: str) -> DriverAccount:
        account = self._require(driver_id)
        return self.update_driver(account.driver_id, {"isActive": not account.is_active})

    def set_status(self, driver_id: str, status: str) -> DriverAccount:
        _validate_status(status)
        return self.update_driver(driver_id, {"currentStatus": status})

    def set_password(self, driver_id: str, password: str) -> DriverAccount:
        return self.update_driver(driver_id, {"password": password})

    # --- sign-in support ---------------------------------------------------

    def verify_password(self, account: DriverAccount, password: str) -> bool:
        return self._hasher.verify(password, account.password)

    def record_login(self, account: DriverAccount, password: str) -> DriverAccount:
        """Stamp `lastLogin` and replace legacy or weak hashes."""
        now = self._clock()
        changes: Dict[str, Any] = {"lastLogin": now.isoformat()}
        if self._hasher.needs_rehash(account.password):
            try:
                changes["password"] = self._hasher.hash(password)
            except ValueError as exc:
                # Legacy plaintext beyond bcrypt's input limit stays as stored.
                logger.warning("driver_password_rehash_skipped", driver_id=account.driver_id, reason=str(exc))
            else:
                changes["updatedAt"] = now.isoformat()
                logger.info("driver_password_rehashed", driver_id=account.driver_id)
        self._documents.set(DRIVERS_COLLECTION, account.key, changes, merge=True)
        return replace(account, last_login=now, password=changes.get("password", account.password))

    def provision_identity(
        self, account: DriverAccount, password: str, provider: IdentityProvider
    ) -> DriverAccount:
        """Give a not-yet-provisioned driver a provider account.

        On success the provider is signed in as the driver, `users/<uid>`
        exists with role driver, and the driver record's `id` equals the uid.
        Raises ProvisioningFailed otherwise.
        """
        created = True
        try:
            user = provider.create_account(account.email, password)
        except ProviderError as exc:
            if exc.code != "email_in_use":
                logger.warning("driver_provisioning_failed", driver_id=account.driver_id, code=exc.code)
                raise ProvisioningFailed() from exc
            created = False
            try:
                user = provider.sign_in(account.email, password)
            except ProviderError as exc2:
                logger.warning("driver_provisioning_signin_failed", driver_id=account.driver_id, code=exc2.code)
                raise ProvisioningFailed("Authentication failed. Please contact support.") from exc2

        if created:
            try:
                provider.update_display_name(account.name)
            except ProviderError as exc:
                logger.warning("driver_display_name_failed", driver_id=account.driver_id, code=exc.code)

        try:
            self._migrate(account, user)
        except DocumentStoreError as exc:
            logger.error("driver_migration_failed", driver_id=account.driver_id, code=exc.code)
            provider.sign_out()
            raise ProvisioningFailed() from exc

        logger.info("driver_provisioned", driver_id=account.driver_id, retried=not created)
        return replace(account, id=user.uid)

    def _migrate(self, account: DriverAccount, user: ProviderUser) -> None:
        now = self._clock().isoformat()
        existing = self._documents.get(USERS_COLLECTION, user.uid)
        profile: Dict[str, Any] = {
            "id": user.uid,
            "email": account.email,
            "name": account.name,
            "role": "driver",
            "updatedAt": now,
        }
        if existing is None:
            profile["createdAt"] = now
        with self._documents.transaction():
            self._documents.set(USERS_COLLECTION, user.uid, profile, merge=True)
            self._documents.set(DRIVERS_COLLECTION, account.key, {"id": user.uid, "updatedAt": now}, merge=True)
