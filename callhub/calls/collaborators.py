"""
Interfaces the call core consumes.

Implementations live in `callhub.services`; tests use in-memory fakes.
"""

import math
from dataclasses import dataclass
from typing import Any, Protocol

from callhub.models.domain.call_domain import UserRole


@dataclass(frozen=True)
class DeductResult:
    new_balance: int
    deducted: int


class ConnectionHandle(Protocol):
    """A live transport connection for one user."""

    async def send(self, event: str, payload: dict[str, Any]) -> None: ...

    async def close(self, reason: str) -> None: ...


class BalanceLedger(Protocol):
    async def get_balance(self, user_id: str) -> int:
        """Raises UserNotFound."""
        ...

    async def atomic_deduct(
        self, user_id: str, amount: int, reason_ref: str, *, allow_partial: bool = False
    ) -> DeductResult:
        """Raises InsufficientFunds (unless allow_partial) or UserNotFound."""
        ...

    async def credit(self, user_id: str, amount: int, reason_ref: str) -> DeductResult: ...


class DurableMirror(Protocol):
    async def upsert(self, call_id: str, fields: dict[str, Any]) -> None: ...


class NotificationDispatcher(Protocol):
    async def notify(self, user_id: str, event: str, payload: dict[str, Any]) -> bool: ...


class ReachabilityResolver(Protocol):
    async def is_alternate_reachable(self, user_id: str) -> bool: ...


class PreferenceStore(Protocol):
    async def get_preference(self, user_id: str) -> bool | None: ...

    async def set_preference(self, user_id: str, available: bool) -> None: ...

    async def mark_offline(self, user_id: str) -> None: ...

    async def list_opted_in(self, limit: int) -> list[str]: ...


@dataclass(frozen=True)
class RevenueSharePolicy:
    """Share of collected coins credited to an eligible recipient at call end."""

    ratio: float = 0.0
    eligible_role: UserRole | None = None

    @classmethod
    def from_settings(cls, ratio: float, role: str | None) -> "RevenueSharePolicy":
        eligible = UserRole.parse(role) if role else None
        return cls(ratio=max(0.0, min(1.0, ratio)), eligible_role=eligible)

    def share_for(self, role: UserRole, collected: int) -> int:
        if self.eligible_role is None or role != self.eligible_role or collected <= 0:
            return 0
        return math.floor(collected * self.ratio)
