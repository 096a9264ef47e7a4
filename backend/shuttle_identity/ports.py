"""
Ports for the external collaborators of the session resolver.

The resolver only talks to these Protocols; in-memory implementations live in
`shuttle_identity.memory`, Supabase-backed ones in
`shuttle_identity.supabase_adapters`.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, ContextManager, Dict, List, Optional, Protocol


@dataclass(frozen=True)
class ProviderUser:
    uid: str
    email: str
    display_name: Optional[str] = None


class AuthEventKind(str, Enum):
    SIGNED_IN = "signed_in"
    SIGNED_OUT = "signed_out"


@dataclass(frozen=True)
class AuthEvent:
    kind: AuthEventKind
    user: Optional[ProviderUser] = None


AuthListener = Callable[[AuthEvent], None]


class IdentityProvider(Protocol):
    """Email/password identity provider bound to one browser context.

    Failures raise `shuttle_identity.errors.ProviderError`. `subscribe`
    delivers the current state to the listener immediately and then every
    change; it returns a callable that removes the listener.
    """

    def create_account(self, email: str, password: str) -> ProviderUser:
        ...

    def sign_in(self, email: str, password: str) -> ProviderUser:
        ...

    def sign_out(self) -> None:
        ...

    def update_display_name(self, display_name: str) -> None:
        ...

    def current_user(self) -> Optional[ProviderUser]:
        ...

    def subscribe(self, listener: AuthListener) -> Callable[[], None]:
        ...


@dataclass(frozen=True)
class StoredDocument:
    key: str
    data: Dict[str, Any]


class DocumentStore(Protocol):
    """Keyed JSON documents grouped in collections.

    `transaction()` returns a context manager; writes issued inside it are
    applied together or not at all (as far as the backend allows).
    Failures raise `shuttle_identity.errors.DocumentStoreError`.
    """

    def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        ...

    def set(self, collection: str, key: str, data: Dict[str, Any], *, merge: bool = False) -> None:
        ...

    def delete(self, collection: str, key: str) -> None:
        ...

    def query(self, collection: str, **equals: Any) -> List[StoredDocument]:
        ...

    def transaction(self) -> ContextManager[None]:
        ...


class LocalStore(Protocol):
    """String key/value storage scoped to one browser context."""

    def get_item(self, key: str) -> Optional[str]:
        ...

    def set_item(self, key: str, value: str) -> None:
        ...

    def remove_item(self, key: str) -> None:
        ...


class PasswordHasher(Protocol):
    def hash(self, password: str) -> str:
        ...

    def verify(self, password: str, stored: str) -> bool:
        ...

    def needs_rehash(self, stored: str) -> bool:
        ...
