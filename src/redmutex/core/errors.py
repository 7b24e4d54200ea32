"""Exception hierarchy for distributed mutex operations."""

from __future__ import annotations


class MutexError(RuntimeError):
    """Base class for every mutex failure."""


class MutexConfigurationError(MutexError):
    """Raised when the runtime is used before setup or with invalid settings."""


class MutexDeadlock(MutexError):
    """Raised when an owner attempts to re-acquire a lock it already holds."""


class MutexTimeout(MutexError):
    """Raised when a lock could not be obtained within the block timeout."""


class WatcherConnectionError(MutexError):
    """Raised when the release channel subscription can not be established."""
