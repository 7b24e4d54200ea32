"""Interface shared by the atomic lock strategies."""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Optional, Protocol, Sequence

from .pool import ConnectionPool


SIGNAL_QUEUE_CHANNEL = "::redmutex.Mutex::"


@dataclass(frozen=True, slots=True)
class LockAttempt:
    """Outcome of a single acquisition attempt.

    ``wait`` is the number of seconds until the nearest conflicting holder
    expires; ``None`` means some holder never expires.
    """

    acquired: bool = False
    deadlock: bool = False
    wait: Optional[float] = 0.0


ACQUIRED = LockAttempt(acquired=True)
DEADLOCK = LockAttempt(deadlock=True)


class LockHandler(Protocol):
    name: ClassVar[str]
    can_refresh_expired: ClassVar[bool]

    def lock_value(self, ident: str, expire_at: float) -> str:
        """Value stored under every lock name for this holder."""
        ...

    async def try_lock(
        self, pool: ConnectionPool, names: Sequence[str], ident: str, expire_at: float
    ) -> bool:
        ...

    async def acquire(
        self,
        pool: ConnectionPool,
        names: Sequence[str],
        ident: str,
        expire_at: float,
        now: float,
    ) -> LockAttempt:
        ...

    async def refresh(
        self,
        pool: ConnectionPool,
        names: Sequence[str],
        ident: str,
        old_expire_at: float,
        new_expire_at: float,
    ) -> bool:
        ...

    async def unlock(
        self,
        pool: ConnectionPool,
        names: Sequence[str],
        ident: str,
        expire_at: float,
        payload: str,
    ) -> int:
        ...

    async def is_locked(self, pool: ConnectionPool, names: Sequence[str]) -> bool:
        ...
