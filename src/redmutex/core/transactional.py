"""Lock strategy built from SETNX/MSETNX and optimistic WATCH/MULTI transactions.

Works against any redis-compatible server. The stored value carries both the
owner identity and the expiration timestamp: ``"{ident} {expire_at}"``.
Expired records are reclaimed by whoever attempts the lock next.
"""

from __future__ import annotations

import json
from typing import ClassVar, List, Optional, Sequence, Tuple

from redis.exceptions import WatchError

from ..utils.logging import get_logger
from .handlers import ACQUIRED, DEADLOCK, SIGNAL_QUEUE_CHANNEL, LockAttempt
from .pool import ConnectionPool


logger = get_logger("redmutex.transactional")


def _parse_value(value: str) -> Tuple[str, Optional[float]]:
    owner, sep, stamp = value.rpartition(" ")
    if not sep:
        return value, None
    try:
        return owner, float(stamp)
    except ValueError:
        return value, None


class TransactionalHandler:
    name: ClassVar[str] = "transactional"
    can_refresh_expired: ClassVar[bool] = True

    def lock_value(self, ident: str, expire_at: float) -> str:
        return f"{ident} {expire_at!r}"

    async def try_lock(
        self, pool: ConnectionPool, names: Sequence[str], ident: str, expire_at: float
    ) -> bool:
        value = self.lock_value(ident, expire_at)
        if len(names) == 1:
            return await pool.setnx(names[0], value)
        return await pool.msetnx({name: value for name in names})

    async def acquire(
        self,
        pool: ConnectionPool,
        names: Sequence[str],
        ident: str,
        expire_at: float,
        now: float,
    ) -> LockAttempt:
        if await self.try_lock(pool, names, ident, expire_at):
            return ACQUIRED
        while True:
            try:
                return await self._inspect_holders(pool, names, ident, now)
            except WatchError:
                continue

    async def _inspect_holders(
        self, pool: ConnectionPool, names: Sequence[str], ident: str, now: float
    ) -> LockAttempt:
        async with pool.watch(*names) as pipe:
            values = await pipe.mget(list(names))
            nearest: Optional[float] = None
            unbounded = False
            expired: List[str] = []
            for name, value in zip(names, values):
                if value is None:
                    continue
                owner, expire_time = _parse_value(value)
                if owner == ident:
                    return DEADLOCK
                if expire_time is None:
                    unbounded = True
                    continue
                if nearest is None or expire_time < nearest:
                    nearest = expire_time
                if expire_time < now:
                    expired.append(name)
            if expired:
                pipe.multi()
                pipe.delete(*expired)
                pipe.publish(SIGNAL_QUEUE_CHANNEL, json.dumps(expired))
                await pipe.execute()
                logger.debug("Reclaimed expired locks %s", expired)
                return LockAttempt(wait=0.0)
        if nearest is None:
            return LockAttempt(wait=None if unbounded else 0.0)
        return LockAttempt(wait=nearest - now)

    async def refresh(
        self,
        pool: ConnectionPool,
        names: Sequence[str],
        ident: str,
        old_expire_at: float,
        new_expire_at: float,
    ) -> bool:
        current = self.lock_value(ident, old_expire_at)
        renewed = self.lock_value(ident, new_expire_at)
        while True:
            try:
                async with pool.watch(*names) as pipe:
                    values = await pipe.mget(list(names))
                    held = [name for name, value in zip(names, values) if value == current]
                    if len(held) == len(names):
                        pipe.multi()
                        pipe.mset({name: renewed for name in names})
                        await pipe.execute()
                        return True
                    if held:
                        # a partially held set is not owned; give the rest back
                        pipe.multi()
                        pipe.delete(*held)
                        pipe.publish(SIGNAL_QUEUE_CHANNEL, json.dumps(held))
                        await pipe.execute()
                    return False
            except WatchError:
                continue

    async def unlock(
        self,
        pool: ConnectionPool,
        names: Sequence[str],
        ident: str,
        expire_at: float,
        payload: str,
    ) -> int:
        current = self.lock_value(ident, expire_at)
        while True:
            try:
                async with pool.watch(*names) as pipe:
                    values = await pipe.mget(list(names))
                    if not all(value == current for value in values):
                        return 0
                    pipe.multi()
                    pipe.delete(*names)
                    pipe.publish(SIGNAL_QUEUE_CHANNEL, payload)
                    await pipe.execute()
                    return len(names)
            except WatchError:
                continue

    async def is_locked(self, pool: ConnectionPool, names: Sequence[str]) -> bool:
        return await pool.exists(*names) > 0
