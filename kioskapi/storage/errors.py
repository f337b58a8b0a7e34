from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for errors raised by the backing stores."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """A uniqueness or foreign-key rule rejected the write."""


class StoreUnavailable(StorageError):
    """The backing store could not be reached; callers surface this as a 500."""


__all__ = ["StorageError", "ConstraintViolation", "StoreUnavailable"]
