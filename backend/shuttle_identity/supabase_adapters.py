"""
Supabase adapters for the identity provider and the document store.

Identity: one Supabase client per browser context (the client holds the auth
session), wrapped so failures surface as `ProviderError(code)` and auth
events are delivered synchronously and only when the signed-in user changes.

Documents: each collection is a table with columns `id text primary key` and
`data jsonb`. Field filters use PostgREST's `data->>field` text accessor.
There is no multi-statement transaction over PostgREST, so `transaction()`
is a saga: every write records how to undo itself and a failure replays the
undo log in reverse.
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional
import threading

import httpx
import structlog
from supabase import (
    AuthApiError,
    AuthRetryableError,
    AuthWeakPasswordError,
    Client,
    ClientOptions,
    PostgrestAPIError,
    create_client,
)
from supabase import AuthError as SupabaseAuthError

from .errors import DocumentStoreError, ProviderError
from .ports import AuthEvent, AuthEventKind, AuthListener, ProviderUser, StoredDocument

logger = structlog.get_logger("shuttle_identity.supabase")

# Supabase Auth error codes -> provider codes understood by errors.map_provider_error
_AUTH_CODES = {
    "invalid_credentials": "invalid_credentials",
    "user_not_found": "user_not_found",
    "email_exists": "email_in_use",
    "user_already_exists": "email_in_use",
    "email_address_invalid": "invalid_email",
    "validation_failed": "invalid_email",
    "weak_password": "weak_password",
    "over_request_rate_limit": "too_many_requests",
    "over_email_send_rate_limit": "too_many_requests",
    "user_banned": "user_disabled",
    "signup_disabled": "operation_not_allowed",
    "email_provider_disabled": "operation_not_allowed",
}

_AUTH_MESSAGES = (
    ("already registered", "email_in_use"),
    ("invalid login credentials", "invalid_credentials"),
    ("rate limit", "too_many_requests"),
    ("password should be", "weak_password"),
    ("signups not allowed", "operation_not_allowed"),
    ("unable to validate email", "invalid_email"),
    ("banned", "user_disabled"),
)


def provider_error_from(exc: Exception) -> ProviderError:
    """Normalize a supabase/httpx exception into a ProviderError."""
    if isinstance(exc, (AuthRetryableError, httpx.HTTPError)):
        return ProviderError("unavailable", str(exc))
    if isinstance(exc, AuthWeakPasswordError):
        return ProviderError("weak_password", str(exc))
    code = getattr(exc, "code", None)
    if isinstance(exc, AuthApiError) and code in _AUTH_CODES:
        return ProviderError(_AUTH_CODES[code], str(exc))
    message = str(getattr(exc, "message", exc) or "").lower()
    for needle, mapped in _AUTH_MESSAGES:
        if needle in message:
            return ProviderError(mapped, str(exc))
    return ProviderError("unknown", str(exc))


def make_client(url: str, key: str, *, timeout: int = 30) -> Client:
    options = ClientOptions(
        postgrest_client_timeout=timeout,
        storage_client_timeout=timeout,
        auto_refresh_token=False,
        persist_session=False,
    )
    return create_client(url, key, options=options)


def _user(raw: Any) -> ProviderUser:
    meta = getattr(raw, "user_metadata", None) or {}
    return ProviderUser(uid=str(raw.id), email=str(raw.email or ""), display_name=meta.get("display_name"))


class SupabaseIdentityProvider:
    def __init__(self, client: Client):
        self._client = client
        self._current: Optional[ProviderUser] = None
        self._listeners: List[AuthListener] = []
        self._lock = threading.RLock()
        self._subscription = None

    def _event(self) -> AuthEvent:
        if self._current is None:
            return AuthEvent(kind=AuthEventKind.SIGNED_OUT)
        return AuthEvent(kind=AuthEventKind.SIGNED_IN, user=self._current)

    def _switch(self, user: Optional[ProviderUser]) -> None:
        with self._lock:
            before = self._current.uid if self._current else None
            self._current = user
            if (user.uid if user else None) == before:
                return
            event = self._event()
            listeners = list(self._listeners)
        for listener in listeners:
            listener(event)

    def _on_client_event(self, event: str, session: Any) -> None:
        if event == "SIGNED_OUT":
            self._switch(None)
        elif event == "SIGNED_IN" and session is not None and getattr(session, "user", None) is not None:
            self._switch(_user(session.user))

    def create_account(self, email: str, password: str) -> ProviderUser:
        try:
            res = self._client.auth.sign_up({"email": email, "password": password})
        except (SupabaseAuthError, httpx.HTTPError) as exc:
            raise provider_error_from(exc) from exc
        if res.user is None:
            raise ProviderError("unknown", "sign_up returned no user")
        user = _user(res.user)
        # Without a session the project requires email confirmation first.
        self._switch(user if res.session is not None else None)
        logger.info("supabase_account_created", uid=user.uid)
        return user

    def sign_in(self, email: str, password: str) -> ProviderUser:
        try:
            res = self._client.auth.sign_in_with_password({"email": email, "password": password})
        except (SupabaseAuthError, httpx.HTTPError) as exc:
            raise provider_error_from(exc) from exc
        if res.user is None or res.session is None:
            raise ProviderError("invalid_credentials", "sign_in returned no session")
        user = _user(res.user)
        self._switch(user)
        return user

    def sign_out(self) -> None:
        try:
            self._client.auth.sign_out()
        except (SupabaseAuthError, httpx.HTTPError) as exc:
            # The local session is dropped either way.
            logger.warning("supabase_sign_out_failed", error=type(exc).__name__)
        self._switch(None)

    def update_display_name(self, display_name: str) -> None:
        try:
            self._client.auth.update_user({"data": {"display_name": display_name}})
        except (SupabaseAuthError, httpx.HTTPError) as exc:
            raise provider_error_from(exc) from exc

    def current_user(self) -> Optional[ProviderUser]:
        return self._current

    def subscribe(self, listener: AuthListener) -> Callable[[], None]:
        with self._lock:
            if self._subscription is None:
                self._subscription = self._client.auth.on_auth_state_change(self._on_client_event)
            self._listeners.append(listener)
            event = self._event()
        listener(event)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
                if not self._listeners and self._subscription is not None:
                    self._subscription.unsubscribe()
                    self._subscription = None

        return _unsubscribe


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class SupabaseDocumentStore:
    def __init__(self, client: Client):
        self._client = client
        self._local = threading.local()

    @contextmanager
    def _errors(self, op: str, collection: str) -> Iterator[None]:
        try:
            yield
        except PostgrestAPIError as exc:
            logger.error("document_store_error", op=op, collection=collection, code=getattr(exc, "code", None))
            raise DocumentStoreError("store_error", getattr(exc, "message", None)) from exc
        except httpx.HTTPError as exc:
            logger.error("document_store_unavailable", op=op, collection=collection, error=type(exc).__name__)
            raise DocumentStoreError("unavailable", str(exc)) from exc

    def _journal(self) -> Optional[List[Callable[[], None]]]:
        return getattr(self._local, "journal", None)

    def _record_undo(self, collection: str, key: str) -> None:
        journal = self._journal()
        if journal is None:
            return
        previous = self.get(collection, key)
        if previous is None:
            journal.append(lambda: self._delete_raw(collection, key))
        else:
            journal.append(lambda: self._upsert(collection, key, previous))

    def _upsert(self, collection: str, key: str, data: Dict[str, Any]) -> None:
        with self._errors("upsert", collection):
            self._client.table(collection).upsert({"id": key, "data": data}).execute()

    def _delete_raw(self, collection: str, key: str) -> None:
        with self._errors("delete", collection):
            self._client.table(collection).delete().eq("id", key).execute()

    def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        with self._errors("get", collection):
            res = self._client.table(collection).select("id,data").eq("id", key).limit(1).execute()
        rows = res.data or []
        return dict(rows[0].get("data") or {}) if rows else None

    def set(self, collection: str, key: str, data: Dict[str, Any], *, merge: bool = False) -> None:
        self._record_undo(collection, key)
        if merge:
            current = self.get(collection, key) or {}
            current.update(data)
            data = current
        self._upsert(collection, key, data)

    def delete(self, collection: str, key: str) -> None:
        self._record_undo(collection, key)
        self._delete_raw(collection, key)

    def query(self, collection: str, **equals: Any) -> List[StoredDocument]:
        with self._errors("query", collection):
            q = self._client.table(collection).select("id,data")
            for field, value in equals.items():
                if value is None:
                    q = q.is_(f"data->>{field}", "null")
                else:
                    q = q.eq(f"data->>{field}", _as_text(value))
            res = q.execute()
        return [StoredDocument(key=str(row["id"]), data=dict(row.get("data") or {})) for row in res.data or []]

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if self._journal() is not None:
            yield
            return
        self._local.journal = []
        try:
            yield
        except BaseException:
            undo = self._local.journal
            self._local.journal = None
            for step in reversed(undo):
                try:
                    step()
                except DocumentStoreError as exc:
                    logger.error("document_store_undo_failed", code=exc.code)
            raise
        else:
            self._local.journal = None
