"""
Driver sign-in and lazy identity provisioning tests.

Drivers are created by admins with a synthetic id. The first successful
sign-in creates the identity-provider account, writes `users/<uid>` and
rewrites the driver record's id in place. Retries after a partial failure
complete the same migration; other failures grant no session.
"""
from __future__ import annotations

import pytest

from shuttle_identity.domain import (
    DRIVERS_COLLECTION,
    GUEST_STORAGE_KEY,
    USERS_COLLECTION,
    DriverSession,
    SessionState,
    is_synthetic_driver_id,
)
from shuttle_identity.errors import (
    DocumentStoreError,
    DriverNotFound,
    InvalidCredentials,
    ProviderError,
    ProvisioningFailed,
)
from shuttle_identity.memory import InMemoryDocumentStore, InMemoryIdentityProvider
from shuttle_identity.passwords import is_bcrypt_hash


def _create_driver(drivers, **overrides):
    data = {
        "driver_id": "DRV-1",
        "email": "d1@x.edu",
        "name": "Yaw Driver",
        "password": "temp123",
        "phone": "+233200000000",
        "vehicle_number": "AS-1234-21",
        "route": "Campus Loop",
    }
    data.update(overrides)
    return drivers.create_driver(**data)


def test_first_sign_in_provisions_identity_and_rewrites_id(resolver, provider, documents, drivers):
    created = _create_driver(drivers)
    assert is_synthetic_driver_id(created.id)

    session = resolver.driver_sign_in("DRV-1", "temp123")

    stored = documents.get(DRIVERS_COLLECTION, created.key)
    assert not is_synthetic_driver_id(stored["id"])
    assert stored["id"] == provider.current_user().uid
    profile = documents.get(USERS_COLLECTION, stored["id"])
    assert profile["role"] == "driver"
    assert profile["email"] == "d1@x.edu"
    assert isinstance(session, DriverSession)
    assert session.id == stored["id"]
    assert session.driver_id == "DRV-1"
    assert session.vehicle_number == "AS-1234-21"
    assert resolver.is_driver
    assert stored["lastLogin"] is not None


def test_wrong_password_changes_nothing(resolver, local, documents, drivers):
    created = _create_driver(drivers)
    resolver.continue_as_guest()
    before = resolver.session

    with pytest.raises(InvalidCredentials) as exc:
        resolver.driver_sign_in("DRV-1", "wrong-pass")

    assert exc.value.message == "Invalid Driver ID or password"
    assert resolver.state is SessionState.GUEST
    assert resolver.session == before
    assert local.get_item(GUEST_STORAGE_KEY) is not None
    assert is_synthetic_driver_id(documents.get(DRIVERS_COLLECTION, created.key)["id"])


def test_unknown_or_inactive_driver_is_not_found(resolver, drivers):
    _create_driver(drivers, is_active=False)
    with pytest.raises(DriverNotFound) as exc:
        resolver.driver_sign_in("DRV-1", "temp123")
    assert exc.value.message == "No driver account found with this Driver ID"
    with pytest.raises(DriverNotFound):
        resolver.driver_sign_in("DRV-404", "temp123")


def test_retry_after_partial_provisioning_completes_migration(resolver, accounts, documents, drivers):
    created = _create_driver(drivers)
    # A previous attempt created the provider account, then crashed.
    setup = InMemoryIdentityProvider(accounts)
    existing = setup.create_account("d1@x.edu", "temp123")
    setup.sign_out()

    session = resolver.driver_sign_in("DRV-1", "temp123")

    assert session.id == existing.uid
    assert documents.get(DRIVERS_COLLECTION, created.key)["id"] == existing.uid
    assert documents.get(USERS_COLLECTION, existing.uid)["role"] == "driver"


def test_other_provisioning_failure_grants_no_session(make_resolver, accounts, documents, drivers):
    class SignupDisabled(InMemoryIdentityProvider):
        def create_account(self, email, password):
            raise ProviderError("operation_not_allowed")

    created = _create_driver(drivers)
    resolver = make_resolver(provider=SignupDisabled(accounts))

    with pytest.raises(ProvisioningFailed) as exc:
        resolver.driver_sign_in("DRV-1", "temp123")

    assert exc.value.message == "Failed to create authentication account. Please contact support."
    assert resolver.state is SessionState.SIGNED_OUT
    assert is_synthetic_driver_id(documents.get(DRIVERS_COLLECTION, created.key)["id"])


def test_migration_store_failure_rolls_back(accounts, hasher):
    from shuttle_identity.drivers import DriverDirectory
    from shuttle_identity.resolver import SessionResolver
    from shuttle_identity.stores import MemoryLocalStore

    class FlakyStore(InMemoryDocumentStore):
        def __init__(self):
            super().__init__()
            self.fail_on = None

        def set(self, collection, key, data, *, merge=False):
            super().set(collection, key, data, merge=merge)
            if collection == self.fail_on:
                raise DocumentStoreError("unavailable")

    store = FlakyStore()
    directory = DriverDirectory(store, hasher)
    created = _create_driver(directory)
    provider = InMemoryIdentityProvider(accounts)
    resolver = SessionResolver(provider, store, MemoryLocalStore(), drivers=directory).resolve()
    store.fail_on = DRIVERS_COLLECTION

    with pytest.raises(ProvisioningFailed):
        resolver.driver_sign_in("DRV-1", "temp123")

    assert is_synthetic_driver_id(store.get(DRIVERS_COLLECTION, created.key)["id"])
    assert store.query(USERS_COLLECTION) == []
    assert provider.current_user() is None
    assert resolver.state is SessionState.SIGNED_OUT

    # The provider account now exists; the next attempt takes the retry path.
    store.fail_on = None
    session = resolver.driver_sign_in("DRV-1", "temp123")
    assert not is_synthetic_driver_id(session.id)
    assert store.get(USERS_COLLECTION, session.id)["role"] == "driver"


def test_login_stamp_failure_signs_provider_out(accounts, hasher):
    from shuttle_identity.drivers import DriverDirectory
    from shuttle_identity.resolver import SessionResolver
    from shuttle_identity.stores import MemoryLocalStore

    class StampFailingStore(InMemoryDocumentStore):
        failing = False

        def set(self, collection, key, data, *, merge=False):
            if self.failing and collection == DRIVERS_COLLECTION and "lastLogin" in data:
                raise DocumentStoreError("unavailable")
            super().set(collection, key, data, merge=merge)

    store = StampFailingStore()
    directory = DriverDirectory(store, hasher)
    created = _create_driver(directory)
    provider = InMemoryIdentityProvider(accounts)
    resolver = SessionResolver(provider, store, MemoryLocalStore(), drivers=directory).resolve()
    store.failing = True

    with pytest.raises(DocumentStoreError):
        resolver.driver_sign_in("DRV-1", "temp123", remember=True)

    # Provisioning itself completed; only the session was abandoned.
    assert not is_synthetic_driver_id(store.get(DRIVERS_COLLECTION, created.key)["id"])
    assert provider.current_user() is None
    assert resolver.state is SessionState.SIGNED_OUT
    assert resolver.session is None
    assert not resolver.has_remembered_credentials("driver")

    store.failing = False
    session = resolver.driver_sign_in("DRV-1", "temp123")
    assert resolver.state is SessionState.AUTHENTICATED
    assert session.id == provider.current_user().uid


def test_provisioned_driver_signs_in_through_provider(resolver, provider, drivers):
    _create_driver(drivers)
    first = resolver.driver_sign_in("DRV-1", "temp123")
    resolver.sign_out()
    assert provider.current_user() is None

    second = resolver.driver_sign_in("DRV-1", "temp123")

    assert second.id == first.id
    assert provider.current_user().uid == first.id


def test_provider_outage_still_grants_driver_session(make_resolver, accounts, documents, drivers):
    _create_driver(drivers)
    make_resolver().driver_sign_in("DRV-1", "temp123")

    class Outage(InMemoryIdentityProvider):
        def sign_in(self, email, password):
            raise ProviderError("unavailable")

    resolver = make_resolver(provider=Outage(accounts))
    session = resolver.driver_sign_in("DRV-1", "temp123")

    account = drivers.get_by_driver_id("DRV-1")
    assert session.id == account.id
    assert resolver.is_driver


def test_legacy_plaintext_password_is_upgraded(resolver, documents, drivers):
    documents.set(
        DRIVERS_COLLECTION,
        "driver_1700000000000_abcdefghi",
        {
            "id": "driver_1700000000000_abcdefghi",
            "driverId": "DRV-7",
            "email": "d7@x.edu",
            "name": "Legacy Driver",
            "password": "plain77",
            "isActive": True,
            "currentStatus": "available",
        },
    )

    resolver.driver_sign_in("DRV-7", "plain77")

    stored = documents.get(DRIVERS_COLLECTION, "driver_1700000000000_abcdefghi")
    assert is_bcrypt_hash(stored["password"])
    assert drivers.verify_password(drivers.get_by_driver_id("DRV-7"), "plain77")


def test_legacy_password_too_long_to_hash_still_signs_in(resolver, documents, drivers):
    legacy = "x" * 80
    documents.set(
        DRIVERS_COLLECTION,
        "driver_1700000000000_longpassw",
        {
            "id": "driver_1700000000000_longpassw",
            "driverId": "DRV-9",
            "email": "d9@x.edu",
            "name": "Long Password",
            "password": legacy,
            "isActive": True,
            "currentStatus": "available",
        },
    )

    session = resolver.driver_sign_in("DRV-9", legacy)

    assert session.driver_id == "DRV-9"
    assert resolver.is_driver
    stored = documents.get(DRIVERS_COLLECTION, "driver_1700000000000_longpassw")
    assert stored["password"] == legacy
    assert stored["lastLogin"] is not None


def test_driver_sign_in_clears_guest_record(resolver, local, drivers):
    _create_driver(drivers)
    resolver.continue_as_guest()
    resolver.driver_sign_in("DRV-1", "temp123")
    assert local.get_item(GUEST_STORAGE_KEY) is None
    assert resolver.state is SessionState.AUTHENTICATED


def test_restarted_context_resolves_driver_from_profile(make_resolver, accounts, drivers):
    _create_driver(drivers)
    provider = InMemoryIdentityProvider(accounts)
    make_resolver(provider=provider).driver_sign_in("DRV-1", "temp123")

    # Same provider session, fresh resolver (page reload).
    reloaded = make_resolver(provider=provider)

    assert reloaded.is_driver
    assert reloaded.session.driver_id == "DRV-1"
    assert reloaded.session.route == "Campus Loop"


def test_end_to_end_driver_password_change(resolver, drivers):
    drivers.create_driver(driver_id="DRV-1", email="d1@x.edu", name="D One", password="temp123")

    session = resolver.driver_sign_in("DRV-1", "temp123", remember=True)
    assert resolver.state is SessionState.AUTHENTICATED
    assert session.role == "driver"
    assert session.email == "d1@x.edu"
    cred = resolver.load_credentials("driver")
    assert cred.to_dict() == {"driverId": "DRV-1", "password": "temp123"}

    resolver.change_driver_password("temp123", "newpass1")
    resolver.sign_out()

    with pytest.raises(InvalidCredentials):
        resolver.driver_sign_in("DRV-1", "temp123")
    again = resolver.driver_sign_in("DRV-1", "newpass1")
    assert again.email == "d1@x.edu"
    assert resolver.is_driver
