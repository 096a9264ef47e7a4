"""
Pytest configuration for backend tests.

Why: Force AnyIO to use the asyncio backend to avoid sandbox restrictions
that can affect the Trio backend (e.g., socketpair permission errors), and
provide in-memory adapters so no test needs a Supabase project.
"""
import sys
from pathlib import Path

import pytest

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from shuttle_identity.domain import ADMINS_COLLECTION, USERS_COLLECTION  # noqa: E402
from shuttle_identity.drivers import DriverDirectory  # noqa: E402
from shuttle_identity.memory import (  # noqa: E402
    InMemoryAccounts,
    InMemoryDocumentStore,
    InMemoryIdentityProvider,
)
from shuttle_identity.passwords import BcryptHasher  # noqa: E402
from shuttle_identity.resolver import SessionResolver  # noqa: E402
from shuttle_identity.stores import MemoryLocalStore  # noqa: E402


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def hasher() -> BcryptHasher:
    # Lowest cost keeps the suite fast.
    return BcryptHasher(rounds=4)


@pytest.fixture
def accounts() -> InMemoryAccounts:
    return InMemoryAccounts()


@pytest.fixture
def documents() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def local() -> MemoryLocalStore:
    return MemoryLocalStore()


@pytest.fixture
def provider(accounts: InMemoryAccounts) -> InMemoryIdentityProvider:
    return InMemoryIdentityProvider(accounts)


@pytest.fixture
def drivers(documents, hasher) -> DriverDirectory:
    return DriverDirectory(documents, hasher)


@pytest.fixture
def make_resolver(accounts, documents, drivers):
    """Factory for started resolvers; each call is a fresh browser context."""
    created = []

    def _make(local=None, provider=None) -> SessionResolver:
        resolver = SessionResolver(
            provider or InMemoryIdentityProvider(accounts),
            documents,
            local if local is not None else MemoryLocalStore(),
            drivers=drivers,
        )
        created.append(resolver)
        return resolver.resolve()

    yield _make
    for resolver in created:
        resolver.close()


@pytest.fixture
def resolver(make_resolver, provider, local) -> SessionResolver:
    return make_resolver(local=local, provider=provider)


@pytest.fixture
def seed_student(accounts, documents):
    """Create a provider account plus `users/<uid>` profile; returns uid."""

    def _seed(email: str = "ama@st.knust.edu.gh", password: str = "secret123", **profile) -> str:
        setup = InMemoryIdentityProvider(accounts)
        user = setup.create_account(email, password)
        setup.sign_out()
        doc = {"id": user.uid, "email": user.email, "name": "Ama Mensah", "role": "student"}
        doc.update(profile)
        documents.set(USERS_COLLECTION, user.uid, doc)
        return user.uid

    return _seed


@pytest.fixture
def seed_admin(accounts, documents):
    def _seed(email: str = "ops@knust.edu.gh", password: str = "adminpass") -> str:
        setup = InMemoryIdentityProvider(accounts)
        user = setup.create_account(email, password)
        setup.sign_out()
        documents.set(USERS_COLLECTION, user.uid, {"id": user.uid, "email": email, "name": "Ops", "role": "admin"})
        documents.set(ADMINS_COLLECTION, user.uid, {"id": user.uid, "email": email, "name": "Ops", "role": "admin"})
        return user.uid

    return _seed
