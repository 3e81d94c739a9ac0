import pytest

from callhub.calls.presence import PresenceRegistry
from callhub.models.domain.call_domain import UserRole
from conftest import FakeConnection


@pytest.mark.asyncio
async def test_register_and_lookup():
    presence = PresenceRegistry()
    connection = FakeConnection()

    await presence.register("recipient", connection, UserRole.RECIPIENT)

    assert presence.is_online("recipient")
    assert presence.connection_for("recipient") is connection
    assert presence.role_of("recipient") == UserRole.RECIPIENT
    assert presence.role_of("nobody") == UserRole.UNKNOWN
    assert presence.online_count() == 1


@pytest.mark.asyncio
async def test_new_connection_replaces_and_closes_old():
    presence = PresenceRegistry()
    old, new = FakeConnection(), FakeConnection()

    await presence.register("user", old)
    await presence.register("user", new)

    assert old.closed_reason == "session_replaced"
    assert new.closed_reason is None
    assert presence.connection_for("user") is new


@pytest.mark.asyncio
async def test_late_disconnect_from_old_connection_is_ignored():
    presence = PresenceRegistry()
    old, new = FakeConnection(), FakeConnection()
    await presence.register("user", old)
    await presence.register("user", new)

    assert presence.unregister("user", old) is None
    assert presence.is_online("user")

    record = presence.unregister("user", new)
    assert record is not None
    assert record.disconnected_at is not None
    assert not presence.is_online("user")


@pytest.mark.asyncio
async def test_clear_only_removes_offline_records():
    presence = PresenceRegistry()
    connection = FakeConnection()
    await presence.register("user", connection)

    assert presence.clear("user") is False

    presence.unregister("user", connection)
    assert [r.user_id for r in presence.offline_records()] == ["user"]
    assert presence.clear("user") is True
    assert presence.lookup("user") is None
