"""Cross machine/process/task mutex on top of redis and asyncio."""

from .condition import Condition
from .core import (
    ConnectionPool,
    MutexConfigurationError,
    MutexDeadlock,
    MutexError,
    MutexRuntime,
    MutexSettings,
    MutexTimeout,
    WatcherConnectionError,
)
from .macro import auto_mutex
from .mutex import Mutex, Namespace

__all__ = [
    "__version__",
    "Condition",
    "ConnectionPool",
    "Mutex",
    "MutexConfigurationError",
    "MutexDeadlock",
    "MutexError",
    "MutexRuntime",
    "MutexSettings",
    "MutexTimeout",
    "Namespace",
    "WatcherConnectionError",
    "auto_mutex",
]

__version__ = "0.2.0"
