"""
Session resolver state machine tests.

Covers the optimistic guest restore at startup, the guest/authenticated/
signed-out transitions driven by provider events and explicit actions, and
the invariant that a guest record exists exactly while the state is GUEST.
"""
from __future__ import annotations

import json

import pytest

from shuttle_identity.domain import GUEST_STORAGE_KEY, USERS_COLLECTION, GuestSession, SessionState, StudentSession
from shuttle_identity.errors import (
    AccountDisabled,
    DuplicateEmail,
    InvalidCredentials,
    InvalidEmail,
    NotAuthenticated,
    NotFound,
    WeakPassword,
)
from shuttle_identity.memory import InMemoryIdentityProvider
from shuttle_identity.stores import MemoryLocalStore


def _guest_record(ts: int = 1700000000000) -> str:
    return json.dumps(GuestSession.new(ts).to_dict())


def _assert_guest_invariant(resolver, local) -> None:
    has_record = local.get_item(GUEST_STORAGE_KEY) is not None
    assert has_record == (resolver.state is SessionState.GUEST)


def test_startup_without_guest_or_provider_session_is_signed_out(make_resolver):
    resolver = make_resolver()
    assert resolver.state is SessionState.SIGNED_OUT
    assert resolver.session is None
    assert resolver.is_loading is False


def test_startup_restores_guest_record(make_resolver):
    local = MemoryLocalStore()
    local.set_item(GUEST_STORAGE_KEY, _guest_record(42))

    resolver = make_resolver(local=local)

    assert resolver.state is SessionState.GUEST
    assert resolver.is_guest
    assert isinstance(resolver.session, GuestSession)
    assert resolver.session.id == "guest-42"
    assert resolver.session.email == "guest@knust.edu.gh"
    assert resolver.session.display_name == "Guest User"


def test_unparsable_guest_record_is_deleted(make_resolver):
    local = MemoryLocalStore()
    local.set_item(GUEST_STORAGE_KEY, "{not json")

    resolver = make_resolver(local=local)

    assert resolver.state is SessionState.SIGNED_OUT
    assert local.get_item(GUEST_STORAGE_KEY) is None


def test_active_provider_session_supersedes_guest_record_at_startup(accounts, seed_student, make_resolver):
    uid = seed_student()
    provider = InMemoryIdentityProvider(accounts)
    provider.sign_in("ama@st.knust.edu.gh", "secret123")
    local = MemoryLocalStore()
    local.set_item(GUEST_STORAGE_KEY, _guest_record())

    resolver = make_resolver(local=local, provider=provider)

    assert resolver.state is SessionState.AUTHENTICATED
    assert resolver.session.id == uid
    assert local.get_item(GUEST_STORAGE_KEY) is None


def test_sign_in_while_guest_clears_guest_record(resolver, local, seed_student):
    uid = seed_student(studentId="20231234", department="Computer Science", level="300")
    resolver.continue_as_guest()
    assert local.get_item(GUEST_STORAGE_KEY) is not None

    session = resolver.sign_in("ama@st.knust.edu.gh", "secret123")

    assert local.get_item(GUEST_STORAGE_KEY) is None
    assert resolver.state is SessionState.AUTHENTICATED
    assert resolver.is_student
    assert isinstance(session, StudentSession)
    assert session.id == uid
    assert session.student_id == "20231234"
    assert session.department == "Computer Science"


def test_sign_in_with_missing_profile_signs_out(resolver, provider, accounts):
    setup = InMemoryIdentityProvider(accounts)
    setup.create_account("orphan@st.knust.edu.gh", "secret123")
    setup.sign_out()

    with pytest.raises(NotFound) as exc:
        resolver.sign_in("orphan@st.knust.edu.gh", "secret123")

    assert exc.value.message == "User profile not found"
    assert resolver.state is SessionState.SIGNED_OUT
    assert provider.current_user() is None


@pytest.mark.parametrize(
    "password,expected",
    [("wrong-pass", "Invalid email or password")],
)
def test_sign_in_wrong_password(resolver, seed_student, password, expected):
    seed_student()
    with pytest.raises(InvalidCredentials) as exc:
        resolver.sign_in("ama@st.knust.edu.gh", password)
    assert exc.value.message == expected
    assert resolver.state is SessionState.SIGNED_OUT


def test_sign_in_disabled_account(resolver, accounts, seed_student):
    seed_student()
    accounts.disable("ama@st.knust.edu.gh")
    with pytest.raises(AccountDisabled) as exc:
        resolver.sign_in("ama@st.knust.edu.gh", "secret123")
    assert exc.value.message == "This account has been disabled"


def test_continue_as_guest_from_authenticated_signs_provider_out(resolver, provider, local, seed_student):
    seed_student()
    resolver.sign_in("ama@st.knust.edu.gh", "secret123")

    guest = resolver.continue_as_guest()

    assert provider.current_user() is None
    assert resolver.state is SessionState.GUEST
    assert resolver.session == guest
    assert guest.id.startswith("guest-")
    _assert_guest_invariant(resolver, local)


def test_continue_as_guest_always_creates_fresh_record(resolver, local):
    local.set_item(GUEST_STORAGE_KEY, _guest_record(1))
    guest = resolver.continue_as_guest()
    stored = json.loads(local.get_item(GUEST_STORAGE_KEY))
    assert stored["id"] == guest.id
    assert guest.id != "guest-1"


def test_sign_out_from_guest_deletes_record(resolver, local):
    resolver.continue_as_guest()
    resolver.sign_out()
    assert resolver.state is SessionState.SIGNED_OUT
    assert local.get_item(GUEST_STORAGE_KEY) is None


def test_provider_signed_out_event_restores_guest_record(resolver, provider, local, seed_student):
    seed_student()
    resolver.sign_in("ama@st.knust.edu.gh", "secret123")
    # Another tab left a guest record behind, then the provider session expires.
    local.set_item(GUEST_STORAGE_KEY, _guest_record(7))

    provider.sign_out()

    assert resolver.state is SessionState.GUEST
    assert resolver.session.id == "guest-7"


def test_guest_record_exists_iff_state_is_guest_across_actions(resolver, local, seed_student):
    seed_student()
    actions = [
        lambda: resolver.continue_as_guest(),
        lambda: resolver.sign_in("ama@st.knust.edu.gh", "secret123"),
        lambda: resolver.sign_out(),
        lambda: resolver.continue_as_guest(),
        lambda: resolver.continue_as_guest(),
        lambda: resolver.sign_out(),
        lambda: resolver.sign_in("ama@st.knust.edu.gh", "secret123"),
        lambda: resolver.continue_as_guest(),
        lambda: resolver.sign_in("ama@st.knust.edu.gh", "secret123"),
        lambda: resolver.sign_out(),
    ]
    for action in actions:
        action()
        assert resolver.state in (SessionState.GUEST, SessionState.AUTHENTICATED, SessionState.SIGNED_OUT)
        _assert_guest_invariant(resolver, local)


def test_sign_up_writes_profile_and_signs_out(resolver, provider, documents):
    uid = resolver.sign_up(
        "kofi@st.knust.edu.gh",
        "secret123",
        {"firstName": "Kofi", "lastName": "Boateng", "studentId": "20239999", "department": "Physics"},
    )

    profile = documents.get(USERS_COLLECTION, uid)
    assert profile["role"] == "student"
    assert profile["name"] == "Kofi Boateng"
    assert profile["studentId"] == "20239999"
    assert provider.current_user() is None
    assert resolver.state is SessionState.SIGNED_OUT

    session = resolver.sign_in("kofi@st.knust.edu.gh", "secret123")
    assert session.display_name == "Kofi Boateng"


def test_sign_up_errors_map_to_domain(resolver, seed_student):
    seed_student()
    with pytest.raises(DuplicateEmail) as dup:
        resolver.sign_up("ama@st.knust.edu.gh", "secret123", {"name": "Ama"})
    assert dup.value.message == "An account with this email already exists"
    with pytest.raises(WeakPassword):
        resolver.sign_up("new@st.knust.edu.gh", "123", {"name": "New"})
    with pytest.raises(InvalidEmail):
        resolver.sign_up("not-an-email", "secret123", {"name": "New"})


def test_sign_up_rejects_privileged_roles(resolver):
    with pytest.raises(ValueError):
        resolver.sign_up("x@st.knust.edu.gh", "secret123", {"name": "X", "role": "admin"})


def test_update_user_profile_requires_non_guest_session(resolver):
    with pytest.raises(NotAuthenticated):
        resolver.update_user_profile({"name": "Nobody"})
    resolver.continue_as_guest()
    with pytest.raises(NotAuthenticated):
        resolver.update_user_profile({"name": "Guest"})


def test_update_user_profile_merges_and_refreshes_session(resolver, documents, seed_student):
    uid = seed_student(level="200")
    resolver.sign_in("ama@st.knust.edu.gh", "secret123")

    session = resolver.update_user_profile({"name": "Ama K. Mensah", "level": "300"})

    doc = documents.get(USERS_COLLECTION, uid)
    assert doc["name"] == "Ama K. Mensah"
    assert doc["level"] == "300"
    assert doc["role"] == "student"
    assert session.display_name == "Ama K. Mensah"
    assert session.level == "300"


def test_update_user_profile_rejects_unknown_fields(resolver, seed_student):
    seed_student()
    resolver.sign_in("ama@st.knust.edu.gh", "secret123")
    with pytest.raises(ValueError):
        resolver.update_user_profile({"role": "admin"})


def test_snapshot_shape(resolver):
    resolver.continue_as_guest()
    snap = resolver.snapshot()
    assert snap["state"] == "guest"
    assert snap["isLoading"] is False
    assert snap["session"]["role"] == "guest"
    assert snap["session"]["displayName"] == "Guest User"


def test_close_stops_following_provider_events(resolver, provider, seed_student):
    seed_student()
    resolver.close()
    provider.sign_in("ama@st.knust.edu.gh", "secret123")
    assert resolver.state is SessionState.SIGNED_OUT
