"""
Server-authoritative billing timers.

One timer per accepted call. Elapsed seconds are always re-derived from a
monotonic clock (`floor(now - started_at)`), never accumulated from sleeps, so
scheduler stalls cannot undercount. A per-call tick task refreshes
`duration_seconds` once per second boundary; readers get the same value from
`BillingTimer.elapsed`.

`start` and `stop` are idempotent: a second start is absorbed, a second stop
returns a not-found result and charges nothing.

Timer metadata is snapshotted to Redis (`call_timer:{call_id}`) so calls can be
rebuilt after a process restart.
"""

import asyncio
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import ROUND_CEILING, Decimal

from callhub.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

TIMER_KEY_PREFIX = "call_timer:"


def compute_coins(duration_seconds: int, coin_rate: float) -> int:
    """Coins owed for a duration, rounded up. 37s at 0.2/s is 8 coins."""
    if duration_seconds <= 0:
        return 0
    # Decimal avoids float artefacts like 15 * 0.2 == 3.0000000000000004
    owed = Decimal(duration_seconds) * Decimal(str(coin_rate))
    return int(owed.to_integral_value(rounding=ROUND_CEILING))


@dataclass(frozen=True)
class DurationCheck:
    server_duration: int
    client_duration: int
    difference: int
    suspicious: bool


def check_client_duration(
    server_duration: int, client_duration: int, tolerance_seconds: int = 5
) -> DurationCheck:
    """Compare a client-reported duration with the server's. Audit only."""
    difference = abs(server_duration - int(client_duration))
    return DurationCheck(
        server_duration=server_duration,
        client_duration=int(client_duration),
        difference=difference,
        suspicious=difference > tolerance_seconds,
    )


@dataclass(frozen=True)
class StopResult:
    call_id: str
    found: bool
    duration_seconds: int = 0
    coins_deducted: int = 0
    coin_rate: float = 0.0


@dataclass
class BillingTimer:
    call_id: str
    coin_rate: float
    participants: frozenset[str]
    started_at: float
    started_wall: datetime
    last_heartbeat: float
    duration_seconds: int = 0
    task: asyncio.Task | None = field(default=None, repr=False)

    def elapsed(self, now: float) -> int:
        # never decreases, even if a caller passes an older reading
        return max(self.duration_seconds, int(now - self.started_at))


class BillingTimerEngine:
    def __init__(
        self,
        redis_client=None,
        *,
        clock: Callable[[], float] = time.monotonic,
        persist_ttl_s: int = 14400,
    ):
        self._redis = redis_client
        self._clock = clock
        self._persist_ttl_s = persist_ttl_s
        self._timers: dict[str, BillingTimer] = {}
        self._background: set[asyncio.Task] = set()

    def start(
        self,
        call_id: str,
        coin_rate: float,
        participants: Iterable[str],
        *,
        offset_seconds: int = 0,
        metadata: dict[str, str] | None = None,
    ) -> tuple[BillingTimer, bool]:
        """
        Start billing a call.

        Returns:
            (timer, created). If a timer already exists it is returned untouched
            with created=False.
        """
        existing = self._timers.get(call_id)
        if existing is not None:
            logger.info("Billing timer already running", call_id=call_id)
            return existing, False

        now = self._clock()
        started_wall = datetime.now(UTC)
        if offset_seconds:
            started_wall = datetime.fromtimestamp(started_wall.timestamp() - offset_seconds, UTC)

        timer = BillingTimer(
            call_id=call_id,
            coin_rate=coin_rate,
            participants=frozenset(participants),
            started_at=now - offset_seconds,
            started_wall=started_wall,
            last_heartbeat=now,
            duration_seconds=max(0, int(offset_seconds)),
        )
        self._timers[call_id] = timer
        timer.task = asyncio.create_task(self._tick(timer))

        logger.info(
            "Billing timer started",
            call_id=call_id,
            coin_rate=coin_rate,
            offset_seconds=offset_seconds,
        )

        if self._redis is not None:
            snapshot = dict(metadata or {})
            snapshot.update(
                {
                    "call_id": call_id,
                    "coin_rate": str(coin_rate),
                    "started_at": str(started_wall.timestamp()),
                    "participants": ",".join(sorted(timer.participants)),
                }
            )
            self._spawn(self._persist(call_id, snapshot))

        return timer, True

    async def _tick(self, timer: BillingTimer) -> None:
        while True:
            deadline = timer.started_at + timer.duration_seconds + 1
            await asyncio.sleep(max(0.0, deadline - self._clock()))

            if self._timers.get(timer.call_id) is not timer:
                logger.warning("Tick for a timer that is no longer registered", call_id=timer.call_id)
                return
            timer.duration_seconds = timer.elapsed(self._clock())

    def heartbeat(self, call_id: str, user_id: str | None = None) -> bool:
        timer = self._timers.get(call_id)
        if timer is None:
            return False
        if user_id is not None and user_id not in timer.participants:
            logger.warning("Heartbeat from non-participant ignored", call_id=call_id, user_id=user_id)
            return False
        timer.last_heartbeat = self._clock()
        return True

    def get(self, call_id: str) -> BillingTimer | None:
        return self._timers.get(call_id)

    def duration(self, call_id: str) -> int | None:
        timer = self._timers.get(call_id)
        if timer is None:
            return None
        return timer.elapsed(self._clock())

    def stop(self, call_id: str) -> StopResult:
        timer = self._timers.pop(call_id, None)
        if timer is None:
            logger.info("Billing timer already stopped", call_id=call_id)
            return StopResult(call_id=call_id, found=False)

        if timer.task is not None:
            timer.task.cancel()

        duration = timer.elapsed(self._clock())
        timer.duration_seconds = duration
        coins = compute_coins(duration, timer.coin_rate)

        logger.info(
            "Billing timer stopped",
            call_id=call_id,
            duration_seconds=duration,
            coins_deducted=coins,
            coin_rate=timer.coin_rate,
        )

        if self._redis is not None:
            self._spawn(self._redis.delete(f"{TIMER_KEY_PREFIX}{call_id}"))

        return StopResult(
            call_id=call_id,
            found=True,
            duration_seconds=duration,
            coins_deducted=coins,
            coin_rate=timer.coin_rate,
        )

    def stale(self, threshold_seconds: float) -> list[str]:
        now = self._clock()
        return [
            call_id
            for call_id, timer in self._timers.items()
            if now - timer.last_heartbeat > threshold_seconds
        ]

    def oldest(self, count: int) -> list[str]:
        ordered = sorted(self._timers.values(), key=lambda timer: timer.started_at)
        return [timer.call_id for timer in ordered[: max(0, count)]]

    def __len__(self) -> int:
        return len(self._timers)

    async def _persist(self, call_id: str, snapshot: dict[str, str]) -> None:
        ok = await self._redis.hset_with_ttl(
            f"{TIMER_KEY_PREFIX}{call_id}", snapshot, self._persist_ttl_s
        )
        if not ok:
            logger.warning("Billing timer snapshot not persisted", call_id=call_id)

    async def load_snapshots(self) -> list[dict[str, str]]:
        """
        Read persisted timer snapshots, deleting any older than the TTL.
        Each returned snapshot carries an `elapsed_seconds` entry.
        """
        if self._redis is None:
            return []

        snapshots = []
        now = time.time()
        for key in await self._redis.scan_keys(f"{TIMER_KEY_PREFIX}*"):
            data = await self._redis.hgetall(key)
            try:
                elapsed = int(now - float(data["started_at"]))
                float(data["coin_rate"])
            except (KeyError, TypeError, ValueError):
                logger.warning("Discarding malformed timer snapshot", key=key)
                await self._redis.delete(key)
                continue

            if elapsed > self._persist_ttl_s or elapsed < 0:
                logger.warning("Discarding expired timer snapshot", key=key, elapsed_seconds=elapsed)
                await self._redis.delete(key)
                continue

            data["elapsed_seconds"] = str(elapsed)
            snapshots.append(data)

        logger.info("Loaded billing timer snapshots", count=len(snapshots))
        return snapshots

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel tick tasks without settling; snapshots stay for recovery."""
        for timer in self._timers.values():
            if timer.task is not None:
                timer.task.cancel()
        await self.drain()
