"""
Session resolver: one authoritative session per browser context.

Why:
- Three signals compete for the session: the identity provider's auth-state
  events, the persisted guest record, and explicit user actions. The resolver
  reconciles them as a small state machine:

      UNRESOLVED -> GUEST | AUTHENTICATED(role) | SIGNED_OUT

- An authenticated provider session always wins over a guest record; the
  guest record is cleared first on every signed-in event.
- Explicit sign-in flows (sign-up, admin, driver) own their transition. While
  one runs, signed-in events only clear the guest record so a valid non-admin
  credential never resolves as a student halfway through an admin sign-in.

Thread-safety: one RLock per resolver serializes listener callbacks and
operations (provider events are delivered synchronously on the caller's
thread, so the lock is re-entered there).
"""
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, Mapping, Optional
import threading

import structlog

from .domain import (
    ADMINS_COLLECTION,
    REMEMBER_SURFACES,
    USERS_COLLECTION,
    AdminAccount,
    AdminSession,
    DriverAccount,
    DriverSession,
    GuestSession,
    RememberedCredential,
    Session,
    SessionState,
    normalize_email,
    now_utc,
    session_from_dict,
)
from .drivers import DriverDirectory
from .errors import (
    AccessDenied,
    DocumentStoreError,
    DriverNotFound,
    IncorrectPassword,
    InvalidCredentials,
    NotAuthenticated,
    NotDriver,
    NotFound,
    ProviderError,
    ServiceUnavailable,
    WeakPassword,
    map_provider_error,
)
from .passwords import BcryptHasher, MIN_PASSWORD_LENGTH
from .ports import AuthEvent, AuthEventKind, DocumentStore, IdentityProvider, LocalStore, PasswordHasher, ProviderUser
from .stores import CredentialStore, GuestStore

logger = structlog.get_logger("shuttle_identity.resolver")

# Fields a signed-in user may change on their own profile document.
PROFILE_FIELDS = frozenset({"name", "firstName", "lastName", "studentId", "department", "level", "email"})
DRIVER_PROFILE_FIELDS = frozenset({"name", "email", "phone", "vehicleNumber", "route", "currentStatus"})


class SessionResolver:
    def __init__(
        self,
        provider: IdentityProvider,
        documents: DocumentStore,
        local: LocalStore,
        *,
        hasher: Optional[PasswordHasher] = None,
        drivers: Optional[DriverDirectory] = None,
        clock: Callable[[], datetime] = now_utc,
    ):
        self._provider = provider
        self._documents = documents
        self._guests = GuestStore(local)
        self._credentials = CredentialStore(local)
        self._clock = clock
        self.drivers = drivers or DriverDirectory(documents, hasher or BcryptHasher(), clock=clock)

        self._lock = threading.RLock()
        self._state = SessionState.UNRESOLVED
        self._session: Optional[Session] = None
        self._loading = False
        self._initial_guest_handled = False
        self._provider_event_seen = False
        self._explicit_flow = 0
        self._last_failure: Optional[str] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    # --- read-only view ----------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def is_loading(self) -> bool:
        return self._loading

    @property
    def is_authenticated(self) -> bool:
        return self._state is SessionState.AUTHENTICATED

    @property
    def is_guest(self) -> bool:
        return self._state is SessionState.GUEST

    def _has_role(self, role: str) -> bool:
        return self.is_authenticated and self._session is not None and self._session.role == role

    @property
    def is_student(self) -> bool:
        return self._has_role("student")

    @property
    def is_driver(self) -> bool:
        return self._has_role("driver")

    @property
    def is_admin(self) -> bool:
        return self._has_role("admin")

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "state": self._state.value,
                "isLoading": self._loading,
                "session": self._session.to_dict() if self._session else None,
            }

    # --- lifecycle ---------------------------------------------------------

    def resolve(self) -> "SessionResolver":
        """Run the initial guest restore once, then follow provider events."""
        with self._lock:
            if self._unsubscribe is not None:
                return self
            self._restore_initial_guest()
            self._unsubscribe = self._provider.subscribe(self._on_auth_event)
            return self

    def close(self) -> None:
        with self._lock:
            if self._unsubscribe is not None:
                self._unsubscribe()
                self._unsubscribe = None

    def _restore_initial_guest(self) -> None:
        if self._initial_guest_handled or self._provider_event_seen:
            return
        self._initial_guest_handled = True
        guest = self._guests.load()
        if guest is not None:
            self._set(SessionState.GUEST, guest)
            logger.debug("guest_restored")

    # --- state transitions -------------------------------------------------

    def _set(self, state: SessionState, session: Optional[Session]) -> None:
        self._state = state
        self._session = session
        self._loading = False

    def _resolve_signed_out(self) -> None:
        guest = self._guests.load()
        if guest is not None:
            self._set(SessionState.GUEST, guest)
        else:
            self._set(SessionState.SIGNED_OUT, None)

    def _authenticate(self, session: Session) -> None:
        self._guests.clear()
        self._set(SessionState.AUTHENTICATED, session)

    def _on_auth_event(self, event: AuthEvent) -> None:
        with self._lock:
            self._provider_event_seen = True
            self._initial_guest_handled = True
            if event.kind is AuthEventKind.SIGNED_IN and event.user is not None:
                # Authenticated identity always wins over a guest record.
                self._guests.clear()
                if self._explicit_flow:
                    return
                self._resolve_profile(event.user)
                return
            if self._explicit_flow:
                return
            self._resolve_signed_out()

    def _resolve_profile(self, user: ProviderUser) -> None:
        self._loading = True
        self._last_failure = None
        try:
            profile = self._documents.get(USERS_COLLECTION, user.uid)
        except DocumentStoreError as exc:
            logger.error("profile_fetch_failed", uid=user.uid, code=exc.code)
            self._last_failure = "store_unavailable"
            self._set(SessionState.SIGNED_OUT, None)
            return
        if profile is None:
            logger.warning("profile_missing", uid=user.uid)
            self._last_failure = "profile_missing"
            self._set(SessionState.SIGNED_OUT, None)
            return
        try:
            session = self._session_from_profile(user, profile)
        except ValueError:
            logger.warning("profile_invalid", uid=user.uid)
            self._last_failure = "profile_missing"
            self._set(SessionState.SIGNED_OUT, None)
            return
        self._authenticate(session)

    def _session_from_profile(self, user: ProviderUser, profile: Mapping[str, Any]) -> Session:
        data = dict(profile)
        data["id"] = user.uid
        data.setdefault("email", user.email)
        if data.get("role") == "driver":
            account = self.drivers.get_by_email(data.get("email") or user.email)
            if account is not None:
                return DriverSession.from_account(replace(account, id=user.uid))
        return session_from_dict(data)

    def _reconcile(self) -> None:
        """Bring state back in line with the provider after a failed flow."""
        try:
            user = self._provider.current_user()
        except ProviderError:
            user = None
        if user is None:
            if self._state is SessionState.AUTHENTICATED and self._session is not None:
                if self._session.role == "driver":
                    # Fallback driver sessions are not backed by the provider.
                    return
                self._resolve_signed_out()
            elif self._state is SessionState.GUEST and not self._guests.exists():
                self._resolve_signed_out()
            return
        if self._session is None or self._session.id != user.uid:
            self._resolve_profile(user)

    @contextmanager
    def _explicit(self, name: str) -> Iterator[None]:
        with self._lock:
            self._explicit_flow += 1
            try:
                yield
            except BaseException as exc:
                self._explicit_flow -= 1
                logger.info("auth_flow_failed", flow=name, error=getattr(exc, "code", type(exc).__name__))
                self._reconcile()
                raise
            else:
                self._explicit_flow -= 1
            finally:
                self._loading = False

    # --- account flows -----------------------------------------------------

    def sign_up(self, email: str, password: str, profile: Optional[Mapping[str, Any]] = None) -> str:
        """Register a student account; the caller must sign in afterwards.

        Returns the new provider uid. Driver and admin accounts are never
        self-registered.
        """
        profile = dict(profile or {})
        if (profile.get("role") or "student") != "student":
            raise ValueError("invalid_role")
        first = str(profile.get("firstName") or "").strip()
        last = str(profile.get("lastName") or "").strip()
        name = str(profile.get("name") or f"{first} {last}").strip()
        with self._explicit("sign_up"):
            try:
                user = self._provider.create_account(email, password)
            except ProviderError as exc:
                raise map_provider_error(exc, "sign_up") from exc
            try:
                try:
                    self._provider.update_display_name(name)
                except ProviderError as exc:
                    logger.warning("display_name_update_failed", uid=user.uid, code=exc.code)
                now = self._clock().isoformat()
                doc = {k: v for k, v in profile.items() if k in PROFILE_FIELDS}
                doc.update(
                    {
                        "id": user.uid,
                        "email": user.email,
                        "name": name,
                        "role": "student",
                        "createdAt": now,
                        "updatedAt": now,
                    }
                )
                self._documents.set(USERS_COLLECTION, user.uid, doc)
            finally:
                self._provider.sign_out()
            self._resolve_signed_out()
        logger.info("account_registered", uid=user.uid)
        return user.uid

    def sign_in(self, email: str, password: str, remember: bool = False) -> Session:
        with self._lock:
            self._last_failure = None
            try:
                self._provider.sign_in(email, password)
            except ProviderError as exc:
                raise map_provider_error(exc, "student") from exc
            user = self._provider.current_user()
            stale = self._session is None or (user is not None and self._session.id != user.uid)
            if user is not None and stale and self._last_failure is None:
                # Same provider user as before: no event fired.
                self._resolve_profile(user)
            if not self.is_authenticated or self._session is None:
                failure = self._last_failure
                self._provider.sign_out()
                self._resolve_signed_out()
                if failure == "store_unavailable":
                    raise ServiceUnavailable()
                raise NotFound("User profile not found")
            if remember:
                self.save_credentials("student", RememberedCredential(email=email, password=password))
            else:
                self.clear_credentials("student")
            logger.info("signed_in", role=self._session.role)
            return self._session

    def admin_sign_in(self, email: str, password: str) -> AdminSession:
        with self._explicit("admin_sign_in"):
            try:
                user = self._provider.sign_in(email, password)
            except ProviderError as exc:
                raise map_provider_error(exc, "admin") from exc
            self._loading = True
            hits = self._documents.query(ADMINS_COLLECTION, email=normalize_email(email))
            if not hits:
                logger.warning("admin_access_denied")
                self._provider.sign_out()
                self._resolve_signed_out()
                raise AccessDenied()
            admin = AdminAccount.from_document(hits[0].key, hits[0].data)
            session = AdminSession(id=user.uid, email=admin.email or user.email, display_name=admin.name)
            self._authenticate(session)
        logger.info("signed_in", role="admin")
        return session

    def driver_sign_in(self, driver_id: str, password: str, remember: bool = False) -> DriverSession:
        with self._explicit("driver_sign_in"):
            account = self.drivers.find_active(driver_id)
            if account is None:
                raise DriverNotFound()
            if not self.drivers.verify_password(account, password):
                raise InvalidCredentials("Invalid Driver ID or password")
            self._loading = True
            if account.is_provisioned:
                account = self._sign_in_provisioned(account, password)
            else:
                account = self.drivers.provision_identity(account, password, self._provider)
            try:
                account = self.drivers.record_login(account, password)
            except BaseException:
                self._abandon_provider_session(account)
                raise
            session = DriverSession.from_account(account)
            self._authenticate(session)
            if remember:
                self.save_credentials("driver", RememberedCredential(driver_id=account.driver_id, password=password))
            else:
                self.clear_credentials("driver")
        logger.info("signed_in", role="driver", driver_id=account.driver_id)
        return session

    def _sign_in_provisioned(self, account: DriverAccount, password: str) -> DriverAccount:
        try:
            self._provider.sign_in(account.email, password)
        except ProviderError as exc:
            # The driver record is the source of truth; grant the session anyway.
            logger.warning("driver_provider_signin_failed", driver_id=account.driver_id, code=exc.code)
            current = self._provider.current_user()
            if current is not None and current.uid != account.id:
                self._provider.sign_out()
        return account

    def _abandon_provider_session(self, account: DriverAccount) -> None:
        try:
            self._provider.sign_out()
        except ProviderError as exc:
            logger.warning("driver_signout_failed", driver_id=account.driver_id, code=exc.code)

    def continue_as_guest(self) -> GuestSession:
        with self._lock:
            if self._provider.current_user() is not None:
                self._explicit_flow += 1
                try:
                    self._provider.sign_out()
                finally:
                    self._explicit_flow -= 1
            guest = GuestSession.new()
            self._guests.save(guest)
            self._set(SessionState.GUEST, guest)
            logger.info("guest_started")
            return guest

    def sign_out(self) -> None:
        with self._lock:
            departed = self._session.role if self._session else None
            self._guests.clear()
            if departed in REMEMBER_SURFACES:
                self.clear_credentials(departed)
            self._explicit_flow += 1
            try:
                self._provider.sign_out()
            finally:
                self._explicit_flow -= 1
                self._set(SessionState.SIGNED_OUT, None)
            logger.info("signed_out", role=departed)

    # --- profile helpers ---------------------------------------------------

    def update_user_profile(self, patch: Mapping[str, Any]) -> Session:
        with self._lock:
            session = self._session
            if not self.is_authenticated or session is None or isinstance(session, GuestSession):
                raise NotAuthenticated()
            changes = {k: v for k, v in patch.items() if k in PROFILE_FIELDS}
            if len(changes) != len(patch):
                raise ValueError("invalid_fields")
            if "email" in changes:
                changes["email"] = normalize_email(changes["email"])
            doc = dict(changes, updatedAt=self._clock().isoformat())
            self._documents.set(USERS_COLLECTION, session.id, doc, merge=True)
            self._session = session.with_changes(changes)
            return self._session

    def _driver_account(self) -> tuple[DriverSession, DriverAccount]:
        session = self._session
        if not self.is_authenticated or not isinstance(session, DriverSession):
            raise NotDriver()
        account = self.drivers.get_by_email(session.email)
        if account is None:
            raise NotFound("Driver profile not found")
        return session, account

    def update_driver_profile(self, patch: Mapping[str, Any]) -> DriverSession:
        with self._lock:
            session, account = self._driver_account()
            changes = {k: v for k, v in patch.items() if k in DRIVER_PROFILE_FIELDS}
            if len(changes) != len(patch):
                raise ValueError("invalid_fields")
            updated = self.drivers.update_driver(account.driver_id, changes)
            shared = {k: getattr(updated, k) for k in ("name", "email") if k in changes}
            if shared and self._documents.get(USERS_COLLECTION, session.id) is not None:
                shared["updatedAt"] = self._clock().isoformat()
                self._documents.set(USERS_COLLECTION, session.id, shared, merge=True)
            self._session = DriverSession.from_account(replace(updated, id=session.id))
            return self._session

    def change_driver_password(self, current: str, new: str) -> None:
        with self._lock:
            _, account = self._driver_account()
            if not self.drivers.verify_password(account, current):
                raise IncorrectPassword()
            if len(new or "") < MIN_PASSWORD_LENGTH:
                raise WeakPassword()
            self.drivers.set_password(account.driver_id, new)
            logger.info("driver_password_changed", driver_id=account.driver_id)

    def get_driver_details(self, email: str) -> Optional[DriverAccount]:
        return self.drivers.get_by_email(email)

    # --- remember-me -------------------------------------------------------

    def save_credentials(self, surface: str, credential: RememberedCredential) -> None:
        self._credentials.save(surface, credential)

    def load_credentials(self, surface: str) -> Optional[RememberedCredential]:
        return self._credentials.load(surface)

    def clear_credentials(self, surface: str) -> None:
        self._credentials.clear(surface)

    def has_remembered_credentials(self, surface: str) -> bool:
        return self._credentials.has(surface)
