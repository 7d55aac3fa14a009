"""
Exception types for logbridge.

None of these are fatal to a producer process except StorageUnavailableError,
which is raised at startup when the storage root cannot be used.
"""

from __future__ import annotations


class LogBridgeError(Exception):
    """Base class for logbridge errors."""


class StorageUnavailableError(LogBridgeError):
    """The storage root cannot be created or written."""

    def __init__(self, root: str, reason: str):
        self.root = root
        self.reason = reason
        super().__init__(f"Log storage unavailable at {root}: {reason}")


class LockTimeoutError(LogBridgeError):
    """A registry lock could not be acquired in time."""

    def __init__(self, name: str, timeout: float):
        self.name = name
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout:.2f}s waiting for lock '{name}'")


class MalformedFrameError(LogBridgeError):
    """A frame could not be decoded as UTF-8 JSON, or declared an oversized body."""


class SchemaViolationError(LogBridgeError):
    """A decoded payload does not match any known record shape."""

    def __init__(self, message: str, payload: object = None):
        self.payload = payload
        super().__init__(message)


__all__ = [
    "LogBridgeError",
    "StorageUnavailableError",
    "LockTimeoutError",
    "MalformedFrameError",
    "SchemaViolationError",
]
