"""Lock strategy built from server-side Lua procedures.

Every operation is a single EVALSHA round trip. The stored value is the owner
identity alone; expiration is the key's native TTL set with PEXPIREAT.
"""

from __future__ import annotations

import textwrap
from typing import Any, ClassVar, Dict, Sequence

from redis.asyncio import Redis
from redis.commands.core import AsyncScript

from ..utils.logging import get_logger
from .handlers import ACQUIRED, DEADLOCK, SIGNAL_QUEUE_CHANNEL, LockAttempt
from .pool import ConnectionPool


logger = get_logger("redmutex.scripted")


_UNPACK = "local unpack = unpack or table.unpack\n"


def _lua(source: str, *, unpack: bool = False) -> str:
    source = textwrap.dedent(source).strip()
    return _UNPACK + source if unpack else source


# KEYS: lock names; ARGV: lock ident, expire-at in ms
# > 1 | 0
TRY_LOCK_MULTI = _lua(
    """
    local lock = ARGV[1]
    local exp = tonumber(ARGV[2])
    local args = {}
    for i = 1, #KEYS do
      args[#args + 1] = KEYS[i]
      args[#args + 1] = lock
    end
    if 1 == redis.call('msetnx', unpack(args)) then
      for i = 1, #KEYS do
        redis.call('pexpireat', KEYS[i], exp)
      end
      return 1
    end
    return 0
    """,
    unpack=True,
)

# KEYS: lock names; ARGV: lock ident, expire-at in ms
# > 'OK' | 'DD' (deadlock) | ms until the nearest holder expires (-1: never)
LOCK_MULTI = _lua(
    """
    local lock = ARGV[1]
    local exp = tonumber(ARGV[2])
    local args = {}
    for i = 1, #KEYS do
      args[#args + 1] = KEYS[i]
      args[#args + 1] = lock
    end
    if 1 == redis.call('msetnx', unpack(args)) then
      for i = 1, #KEYS do
        redis.call('pexpireat', KEYS[i], exp)
      end
      return 'OK'
    end
    local res = redis.call('mget', unpack(KEYS))
    for i = 1, #KEYS do
      if res[i] == lock then
        return 'DD'
      end
    end
    local wait = -1
    for i = 1, #KEYS do
      local ttl = redis.call('pttl', KEYS[i])
      if ttl == -2 then
        return 0
      end
      if ttl >= 0 and (wait < 0 or ttl < wait) then
        wait = ttl
      end
    end
    return wait
    """,
    unpack=True,
)

# KEYS: lock names; ARGV: lock ident, channel, payload
# > number of names released (all or nothing)
UNLOCK_MULTI = _lua(
    """
    local res = redis.call('mget', unpack(KEYS))
    for i = 1, #KEYS do
      if res[i] ~= ARGV[1] then
        return 0
      end
    end
    redis.call('del', unpack(KEYS))
    redis.call('publish', ARGV[2], ARGV[3])
    return #KEYS
    """,
    unpack=True,
)

# KEYS: lock names; ARGV: lock ident, expire-at in ms, channel
# > 1 | 0; a partially held set is released and announced
REFRESH_MULTI = _lua(
    """
    local lock = ARGV[1]
    local exp = tonumber(ARGV[2])
    local held = {}
    local res = redis.call('mget', unpack(KEYS))
    for i = 1, #KEYS do
      if res[i] == lock then
        held[#held + 1] = KEYS[i]
      end
    end
    if #held == #KEYS then
      for i = 1, #held do
        redis.call('pexpireat', held[i], exp)
      end
      return 1
    elseif #held > 0 then
      redis.call('del', unpack(held))
      redis.call('publish', ARGV[3], cjson.encode(held))
    end
    return 0
    """,
    unpack=True,
)

# KEYS: lock names
# > 1 | 0
IS_LOCKED_MULTI = _lua(
    """
    for i = 1, #KEYS do
      if 1 == redis.call('exists', KEYS[i]) then
        return 1
      end
    end
    return 0
    """
)

TRY_LOCK_SINGLE = _lua(
    """
    if 1 == redis.call('setnx', KEYS[1], ARGV[1]) then
      redis.call('pexpireat', KEYS[1], tonumber(ARGV[2]))
      return 1
    end
    return 0
    """
)

LOCK_SINGLE = _lua(
    """
    local key = KEYS[1]
    local lock = ARGV[1]
    if 1 == redis.call('setnx', key, lock) then
      redis.call('pexpireat', key, tonumber(ARGV[2]))
      return 'OK'
    end
    if lock == redis.call('get', key) then
      return 'DD'
    end
    local ttl = redis.call('pttl', key)
    if ttl == -2 then
      return 0
    end
    return ttl
    """
)

UNLOCK_SINGLE = _lua(
    """
    if redis.call('get', KEYS[1]) == ARGV[1] then
      redis.call('del', KEYS[1])
      redis.call('publish', ARGV[2], ARGV[3])
      return 1
    end
    return 0
    """
)

REFRESH_SINGLE = _lua(
    """
    if redis.call('get', KEYS[1]) == ARGV[1] then
      return redis.call('pexpireat', KEYS[1], tonumber(ARGV[2]))
    end
    return 0
    """
)


SCRIPTS: Dict[str, str] = {
    "try_lock_multi": TRY_LOCK_MULTI,
    "lock_multi": LOCK_MULTI,
    "unlock_multi": UNLOCK_MULTI,
    "refresh_multi": REFRESH_MULTI,
    "is_locked_multi": IS_LOCKED_MULTI,
    "try_lock_single": TRY_LOCK_SINGLE,
    "lock_single": LOCK_SINGLE,
    "unlock_single": UNLOCK_SINGLE,
    "refresh_single": REFRESH_SINGLE,
}


def _ms(timestamp: float) -> int:
    return int(timestamp * 1000.0)


def _variant(name: str, names: Sequence[str]) -> str:
    return f"{name}_single" if len(names) == 1 else f"{name}_multi"


class ScriptedHandler:
    name: ClassVar[str] = "scripted"
    can_refresh_expired: ClassVar[bool] = False

    def __init__(self) -> None:
        self._scripts: Dict[str, AsyncScript] = {}

    def _get_script(self, client: Redis, name: str) -> AsyncScript:
        """Get or register a Lua procedure."""
        if name not in self._scripts:
            self._scripts[name] = client.register_script(SCRIPTS[name])
        return self._scripts[name]

    async def _eval(
        self, pool: ConnectionPool, name: str, keys: Sequence[str], args: Sequence[Any]
    ) -> Any:
        # the script object reloads itself on NOSCRIPT
        return await pool.execute(
            lambda client: self._get_script(client, name)(
                keys=list(keys), args=list(args), client=client
            )
        )

    async def load(self, pool: ConnectionPool) -> None:
        """Cache every procedure on the server ahead of the first call."""
        async with pool.connection() as client:
            for name in SCRIPTS:
                await client.script_load(self._get_script(client, name).script)
        logger.debug("Loaded %d lock scripts", len(SCRIPTS))

    def lock_value(self, ident: str, expire_at: float) -> str:
        return ident

    async def try_lock(
        self, pool: ConnectionPool, names: Sequence[str], ident: str, expire_at: float
    ) -> bool:
        result = await self._eval(pool, _variant("try_lock", names), names, [ident, _ms(expire_at)])
        return 1 == result

    async def acquire(
        self,
        pool: ConnectionPool,
        names: Sequence[str],
        ident: str,
        expire_at: float,
        now: float,
    ) -> LockAttempt:
        result = await self._eval(pool, _variant("lock", names), names, [ident, _ms(expire_at)])
        if isinstance(result, bytes):
            result = result.decode("ascii")
        if result == "OK":
            return ACQUIRED
        if result == "DD":
            return DEADLOCK
        ttl = int(result)
        if ttl < 0:
            return LockAttempt(wait=None)
        return LockAttempt(wait=ttl / 1000.0)

    async def refresh(
        self,
        pool: ConnectionPool,
        names: Sequence[str],
        ident: str,
        old_expire_at: float,
        new_expire_at: float,
    ) -> bool:
        args = [ident, _ms(new_expire_at), SIGNAL_QUEUE_CHANNEL]
        return 1 == await self._eval(pool, _variant("refresh", names), names, args)

    async def unlock(
        self,
        pool: ConnectionPool,
        names: Sequence[str],
        ident: str,
        expire_at: float,
        payload: str,
    ) -> int:
        args = [ident, SIGNAL_QUEUE_CHANNEL, payload]
        return int(await self._eval(pool, _variant("unlock", names), names, args))

    async def is_locked(self, pool: ConnectionPool, names: Sequence[str]) -> bool:
        if len(names) == 1:
            return await pool.exists(names[0]) > 0
        return 1 == await self._eval(pool, "is_locked_multi", names, [])
