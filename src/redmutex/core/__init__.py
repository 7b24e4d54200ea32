"""Runtime primitives behind the distributed mutex."""

from .errors import (
    MutexConfigurationError,
    MutexDeadlock,
    MutexError,
    MutexTimeout,
    WatcherConnectionError,
)
from .handlers import SIGNAL_QUEUE_CHANNEL, LockAttempt, LockHandler
from .pool import ConnectionPool
from .runtime import MutexRuntime
from .scripted import ScriptedHandler
from .settings import MutexSettings
from .signals import SignalQueue, Waiter
from .transactional import TransactionalHandler
from .watcher import ReleaseWatcher, WatcherState

__all__ = [
    "SIGNAL_QUEUE_CHANNEL",
    "ConnectionPool",
    "LockAttempt",
    "LockHandler",
    "MutexConfigurationError",
    "MutexDeadlock",
    "MutexError",
    "MutexRuntime",
    "MutexSettings",
    "MutexTimeout",
    "ReleaseWatcher",
    "ScriptedHandler",
    "SignalQueue",
    "TransactionalHandler",
    "Waiter",
    "WatcherConnectionError",
    "WatcherState",
]
