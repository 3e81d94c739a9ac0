import pytest

from callhub.calls.availability import StatusRegistry
from callhub.models.domain.call_domain import UserStatus
from conftest import FakePreferences


def test_in_call_status_requires_call_id():
    statuses = StatusRegistry()

    with pytest.raises(ValueError):
        statuses.set_status("user", UserStatus.BUSY)
    with pytest.raises(ValueError):
        statuses.set_status("user", UserStatus.RINGING)


def test_idle_status_clears_call_id():
    statuses = StatusRegistry()
    statuses.set_status("user", UserStatus.AVAILABLE, "call-1")

    assert statuses.get("user").current_call_id is None


@pytest.mark.asyncio
async def test_preference_defaults_to_available():
    statuses = StatusRegistry(FakePreferences())

    assert await statuses.preference("new-user") is True
    assert await statuses.resolve("new-user", online=True) == UserStatus.AVAILABLE


@pytest.mark.asyncio
async def test_opted_out_user_resolves_unavailable():
    statuses = StatusRegistry(FakePreferences({"user": False}))

    assert await statuses.resolve("user", online=True) == UserStatus.UNAVAILABLE
    assert statuses.idle_status("user") == UserStatus.UNAVAILABLE


@pytest.mark.asyncio
async def test_preference_lookup_failure_falls_back_to_available():
    preferences = FakePreferences({"user": False})
    preferences.fail = True
    statuses = StatusRegistry(preferences)

    assert await statuses.preference("user") is True


@pytest.mark.asyncio
async def test_resolution_order():
    statuses = StatusRegistry(FakePreferences({"user": False}))

    # in-call status wins even without a connection
    statuses.set_status("user", UserStatus.BUSY, "call-1")
    assert await statuses.resolve("user", online=False) == UserStatus.BUSY

    # then the opt-out, even without a connection
    statuses.release("user", "call-1")
    assert await statuses.resolve("user", online=False) == UserStatus.UNAVAILABLE

    # then the explicit cached status
    statuses.set_status("user", UserStatus.AVAILABLE)
    assert await statuses.resolve("user", online=True) == UserStatus.AVAILABLE


@pytest.mark.asyncio
async def test_set_preference_persists_then_updates_status():
    preferences = FakePreferences()
    statuses = StatusRegistry(preferences)
    await statuses.on_join("user")

    record = await statuses.set_preference("user", False)

    assert preferences.preferences["user"] is False
    assert record.status == UserStatus.UNAVAILABLE


@pytest.mark.asyncio
async def test_set_preference_keeps_in_call_status():
    statuses = StatusRegistry(FakePreferences())
    statuses.set_status("user", UserStatus.BUSY, "call-1")

    record = await statuses.set_preference("user", False)

    assert record.status == UserStatus.BUSY
    assert record.user_preference is False
    statuses.release("user", "call-1")
    assert statuses.status_of("user") == UserStatus.UNAVAILABLE


def test_release_ignores_other_calls():
    statuses = StatusRegistry()
    statuses.set_status("user", UserStatus.RINGING, "call-2")

    assert statuses.release("user", "call-1") is False
    assert statuses.status_of("user") == UserStatus.RINGING

    assert statuses.release("user", "call-2") is True
    assert statuses.status_of("user") == UserStatus.AVAILABLE


def test_mark_disconnected_leaves_in_call_users_alone():
    statuses = StatusRegistry()
    statuses.set_status("user", UserStatus.BUSY, "call-1")

    assert statuses.mark_disconnected("user") is False
    assert statuses.status_of("user") == UserStatus.BUSY


@pytest.mark.asyncio
async def test_on_join_keeps_in_call_status():
    statuses = StatusRegistry()
    statuses.set_status("user", UserStatus.BUSY, "call-1")

    record = await statuses.on_join("user")

    assert record.status == UserStatus.BUSY
    assert record.current_call_id == "call-1"


@pytest.mark.asyncio
async def test_on_join_after_disconnect_rederives_status():
    statuses = StatusRegistry()
    statuses.mark_disconnected("user")

    record = await statuses.on_join("user")

    assert record.status == UserStatus.AVAILABLE


@pytest.mark.asyncio
async def test_offline_user_resolution_depends_on_opt_in():
    statuses = StatusRegistry(FakePreferences({"opted-out": False, "opted-in": True}))

    assert await statuses.resolve("opted-out", online=False) == UserStatus.UNAVAILABLE
    assert await statuses.resolve("opted-in", online=False) == UserStatus.DISCONNECTED
    assert await statuses.resolve("never-seen", online=False) == UserStatus.DISCONNECTED


@pytest.mark.asyncio
async def test_opted_in_users_falls_back_to_cache():
    preferences = FakePreferences({"on": True, "off": False, "later": True})
    statuses = StatusRegistry(preferences)

    assert await statuses.opted_in_users(10) == ["on", "later"]

    preferences.fail = True
    assert await statuses.opted_in_users(10) == ["on", "later"]
    assert await statuses.opted_in_users(1) == ["on"]
