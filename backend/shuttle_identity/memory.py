"""
In-memory identity provider and document store.

Why: Development and tests run without a Supabase project. `InMemoryAccounts`
plays the role of the provider's user table and is shared by all browser
contexts; each context gets its own `InMemoryIdentityProvider` holding the
currently signed-in user, like one browser tab's auth session.
"""
from __future__ import annotations

from contextlib import contextmanager
from copy import deepcopy
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional
import secrets
import threading

from .domain import is_valid_email
from .errors import ProviderError
from .passwords import MIN_PASSWORD_LENGTH
from .ports import AuthEvent, AuthEventKind, AuthListener, ProviderUser, StoredDocument


@dataclass
class _Account:
    uid: str
    email: str
    password: str
    display_name: Optional[str] = None
    disabled: bool = False

    def user(self) -> ProviderUser:
        return ProviderUser(uid=self.uid, email=self.email, display_name=self.display_name)


class InMemoryAccounts:
    """Provider-side account table shared by all in-memory providers."""

    def __init__(self):
        self._by_email: Dict[str, _Account] = {}
        self._lock = threading.RLock()

    def create(self, email: str, password: str) -> _Account:
        email = (email or "").strip().lower()
        if not is_valid_email(email):
            raise ProviderError("invalid_email")
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise ProviderError("weak_password")
        with self._lock:
            if email in self._by_email:
                raise ProviderError("email_in_use")
            acc = _Account(uid=secrets.token_hex(14), email=email, password=password)
            self._by_email[email] = acc
            return acc

    def authenticate(self, email: str, password: str) -> _Account:
        email = (email or "").strip().lower()
        if not is_valid_email(email):
            raise ProviderError("invalid_email")
        with self._lock:
            acc = self._by_email.get(email)
        if acc is None or acc.password != password:
            raise ProviderError("invalid_credentials")
        if acc.disabled:
            raise ProviderError("user_disabled")
        return acc

    def by_uid(self, uid: str) -> Optional[_Account]:
        with self._lock:
            for acc in self._by_email.values():
                if acc.uid == uid:
                    return acc
        return None

    def by_email(self, email: str) -> Optional[ProviderUser]:
        with self._lock:
            acc = self._by_email.get((email or "").strip().lower())
        return acc.user() if acc else None

    def disable(self, email: str) -> None:
        with self._lock:
            acc = self._by_email[(email or "").strip().lower()]
            acc.disabled = True


class InMemoryIdentityProvider:
    """Auth session of one browser context over a shared account table."""

    def __init__(self, accounts: InMemoryAccounts):
        self._accounts = accounts
        self._current: Optional[str] = None
        self._listeners: List[AuthListener] = []

    def _emit(self) -> None:
        event = self._event()
        for listener in list(self._listeners):
            listener(event)

    def _event(self) -> AuthEvent:
        user = self.current_user()
        if user is None:
            return AuthEvent(kind=AuthEventKind.SIGNED_OUT)
        return AuthEvent(kind=AuthEventKind.SIGNED_IN, user=user)

    def _switch(self, uid: Optional[str]) -> None:
        changed = uid != self._current
        self._current = uid
        if changed:
            self._emit()

    def create_account(self, email: str, password: str) -> ProviderUser:
        acc = self._accounts.create(email, password)
        self._switch(acc.uid)
        return acc.user()

    def sign_in(self, email: str, password: str) -> ProviderUser:
        acc = self._accounts.authenticate(email, password)
        self._switch(acc.uid)
        return acc.user()

    def sign_out(self) -> None:
        self._switch(None)

    def update_display_name(self, display_name: str) -> None:
        if self._current is None:
            raise ProviderError("user_not_found")
        acc = self._accounts.by_uid(self._current)
        if acc is None:
            raise ProviderError("user_not_found")
        acc.display_name = display_name

    def current_user(self) -> Optional[ProviderUser]:
        if self._current is None:
            return None
        acc = self._accounts.by_uid(self._current)
        return acc.user() if acc else None

    def subscribe(self, listener: AuthListener) -> Callable[[], None]:
        self._listeners.append(listener)
        listener(self._event())

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe


class InMemoryDocumentStore:
    """Dict-backed document store with snapshot/rollback transactions."""

    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._depth = 0

    def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            doc = self._collections.get(collection, {}).get(key)
            return deepcopy(doc) if doc is not None else None

    def set(self, collection: str, key: str, data: Dict[str, Any], *, merge: bool = False) -> None:
        with self._lock:
            docs = self._collections.setdefault(collection, {})
            if merge and key in docs:
                docs[key].update(deepcopy(data))
            else:
                docs[key] = deepcopy(data)

    def delete(self, collection: str, key: str) -> None:
        with self._lock:
            self._collections.get(collection, {}).pop(key, None)

    def query(self, collection: str, **equals: Any) -> List[StoredDocument]:
        with self._lock:
            out = []
            for key, doc in self._collections.get(collection, {}).items():
                if all(doc.get(field) == value for field, value in equals.items()):
                    out.append(StoredDocument(key=key, data=deepcopy(doc)))
            return out

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            snapshot = deepcopy(self._collections) if self._depth == 0 else None
            self._depth += 1
            try:
                yield
            except BaseException:
                if snapshot is not None:
                    self._collections = snapshot
                raise
            finally:
                self._depth -= 1
