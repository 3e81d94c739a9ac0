import fnmatch
from dataclasses import dataclass, field
from typing import Any

import pytest

from callhub.calls.collaborators import DeductResult
from callhub.calls.errors import InsufficientFunds, LedgerUnavailable, UserNotFound
from callhub.calls.runtime import CallRuntime, build_runtime
from callhub.config import Settings
from callhub.models.domain.call_domain import UserRole


def make_settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    """Mirrors FastRedisClient's return conventions, including its failure sentinels."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.ttls: dict[str, int] = {}
        self.fail = False

    async def ping(self) -> bool:
        return not self.fail

    async def get(self, key: str) -> str | None:
        if self.fail:
            return None
        return self.store.get(key)

    async def delete(self, key: str) -> bool:
        if self.fail:
            return False
        removed = self.store.pop(key, None) is not None
        removed = self.hashes.pop(key, None) is not None or removed
        self.ttls.pop(key, None)
        return removed

    async def set_if_absent(self, key: str, value: str, ttl_s: int) -> bool | None:
        if self.fail:
            return None
        if key in self.store:
            return False
        self.store[key] = value
        self.ttls[key] = ttl_s
        return True

    async def delete_if_equals(self, key: str, value: str) -> bool | None:
        if self.fail:
            return None
        if self.store.get(key) != value:
            return False
        del self.store[key]
        self.ttls.pop(key, None)
        return True

    async def hset_with_ttl(self, key: str, mapping: dict[str, str], ttl_s: int) -> bool:
        if self.fail:
            return False
        self.hashes.setdefault(key, {}).update(mapping)
        self.ttls[key] = ttl_s
        return True

    async def hgetall(self, key: str) -> dict[str, str]:
        if self.fail:
            return {}
        return dict(self.hashes.get(key, {}))

    async def scan_keys(self, pattern: str, batch_size: int = 100) -> list[str]:
        if self.fail:
            return []
        keys = list(self.store) + list(self.hashes)
        return [key for key in keys if fnmatch.fnmatch(key, pattern)]


class FakeConnection:
    def __init__(self):
        self.sent: list[tuple[str, dict]] = []
        self.closed_reason: str | None = None

    async def send(self, event: str, payload: dict[str, Any]) -> None:
        if self.closed_reason is not None:
            raise ConnectionError("closed")
        self.sent.append((event, payload))

    async def close(self, reason: str) -> None:
        self.closed_reason = reason

    def events(self, name: str) -> list[dict]:
        return [payload for event, payload in self.sent if event == name]


class FakeLedger:
    def __init__(self, balances: dict[str, int] | None = None):
        self.balances = dict(balances or {})
        self.applied: dict[tuple[str, str, str], DeductResult] = {}
        self.deductions: list[tuple[str, int, str]] = []
        self.credits: list[tuple[str, int, str]] = []
        self.fail = False

    async def get_balance(self, user_id: str) -> int:
        if self.fail:
            raise LedgerUnavailable("ledger down")
        if user_id not in self.balances:
            raise UserNotFound(user_id)
        return self.balances[user_id]

    async def atomic_deduct(
        self, user_id: str, amount: int, reason_ref: str, *, allow_partial: bool = False
    ) -> DeductResult:
        if self.fail:
            raise LedgerUnavailable("ledger down")
        key = (user_id, reason_ref, "charge")
        if key in self.applied:
            return self.applied[key]
        if user_id not in self.balances:
            raise UserNotFound(user_id)

        balance = self.balances[user_id]
        if balance < amount and not allow_partial:
            raise InsufficientFunds(user_id, balance, amount)

        deducted = min(amount, balance)
        self.balances[user_id] = balance - deducted
        result = DeductResult(new_balance=self.balances[user_id], deducted=deducted)
        self.applied[key] = result
        self.deductions.append((user_id, deducted, reason_ref))
        return result

    async def credit(self, user_id: str, amount: int, reason_ref: str) -> DeductResult:
        if self.fail:
            raise LedgerUnavailable("ledger down")
        key = (user_id, reason_ref, "credit")
        if key in self.applied:
            return self.applied[key]
        self.balances[user_id] = self.balances.get(user_id, 0) + amount
        result = DeductResult(new_balance=self.balances[user_id], deducted=-amount)
        self.applied[key] = result
        self.credits.append((user_id, amount, reason_ref))
        return result


class FakeMirror:
    def __init__(self):
        self.writes: list[tuple[str, dict]] = []
        self.fail = False

    async def upsert(self, call_id: str, fields: dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("mirror down")
        self.writes.append((call_id, fields))

    def latest(self, call_id: str) -> dict | None:
        for written_id, fields in reversed(self.writes):
            if written_id == call_id:
                return fields
        return None


class FakeNotifier:
    def __init__(self):
        self.events: list[tuple[str, str, dict]] = []

    async def notify(self, user_id: str, event: str, payload: dict[str, Any]) -> bool:
        self.events.append((user_id, event, payload))
        return True

    def for_user(self, user_id: str, event: str | None = None) -> list[dict]:
        return [
            payload
            for target, name, payload in self.events
            if target == user_id and (event is None or name == event)
        ]


class FakePreferences:
    def __init__(self, preferences: dict[str, bool] | None = None):
        self.preferences = dict(preferences or {})
        self.offline: list[str] = []
        self.fail = False

    async def get_preference(self, user_id: str) -> bool | None:
        if self.fail:
            raise RuntimeError("preferences down")
        return self.preferences.get(user_id)

    async def set_preference(self, user_id: str, available: bool) -> None:
        if self.fail:
            raise RuntimeError("preferences down")
        self.preferences[user_id] = available

    async def mark_offline(self, user_id: str) -> None:
        self.offline.append(user_id)

    async def list_opted_in(self, limit: int) -> list[str]:
        if self.fail:
            raise RuntimeError("preferences down")
        return [user_id for user_id, value in self.preferences.items() if value][:limit]


class FakeReachability:
    def __init__(self, reachable: set[str] | None = None):
        self.reachable = set(reachable or ())

    async def is_alternate_reachable(self, user_id: str) -> bool:
        return user_id in self.reachable


@dataclass
class Harness:
    runtime: CallRuntime
    clock: FakeClock
    redis: FakeRedis
    ledger: FakeLedger
    mirror: FakeMirror
    notifier: FakeNotifier
    preferences: FakePreferences
    reachability: FakeReachability
    connections: dict[str, FakeConnection] = field(default_factory=dict)

    @property
    def manager(self):
        return self.runtime.manager

    @property
    def statuses(self):
        return self.runtime.statuses

    @property
    def store(self):
        return self.runtime.store

    @property
    def billing(self):
        return self.runtime.billing

    @property
    def reconciler(self):
        return self.runtime.reconciler

    async def connect(self, user_id: str, role: UserRole = UserRole.UNKNOWN) -> FakeConnection:
        connection = FakeConnection()
        await self.runtime.reconciler.handle_join(user_id, connection, role)
        self.connections[user_id] = connection
        return connection

    async def settle(self) -> None:
        await self.runtime.manager.drain()

    async def active_call(self, caller_id: str, recipient_id: str, call_type: str = "video") -> str:
        """Place and accept a call between two connected users."""
        outcome = await self.manager.initiate(caller_id, recipient_id, call_type)
        assert outcome.ok, outcome
        accepted = await self.manager.accept(outcome.call_id, recipient_id)
        assert accepted.ok, accepted
        return outcome.call_id


def build_harness(
    clock: FakeClock | None = None, balances=None, notifier_factory=None, **setting_overrides
) -> Harness:
    clock = clock or FakeClock()
    redis = FakeRedis()
    ledger = FakeLedger(balances if balances is not None else {"caller": 200, "caller2": 200})
    mirror = FakeMirror()
    notifier = FakeNotifier()
    preferences = FakePreferences()
    reachability = FakeReachability()

    runtime = build_runtime(
        make_settings(**setting_overrides),
        redis_client=redis,
        ledger=ledger,
        mirror=mirror,
        notifier_factory=notifier_factory or (lambda presence: notifier),
        preferences=preferences,
        reachability=reachability,
        clock=clock,
    )
    return Harness(
        runtime=runtime,
        clock=clock,
        redis=redis,
        ledger=ledger,
        mirror=mirror,
        notifier=notifier,
        preferences=preferences,
        reachability=reachability,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def harness(clock):
    return build_harness(clock)


@pytest.fixture
def make_harness(clock):
    def _make(balances=None, notifier_factory=None, **setting_overrides) -> Harness:
        return build_harness(
            clock, balances=balances, notifier_factory=notifier_factory, **setting_overrides
        )

    return _make
