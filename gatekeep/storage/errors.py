from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class RecordNotFound(Exception):
    """Raised when a write targets a row that does not exist."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailableError(Exception):
    """Raised when a backing store (Redis or the database) cannot be reached.

    ``backend`` names the store so handlers can tell cache outages from
    durable-store outages.
    """

    def __init__(self, message: str, *, backend: str = "cache"):
        super().__init__(message)
        self.message = message
        self.backend = backend


__all__ = ["ConstraintViolation", "RecordNotFound", "StoreUnavailableError"]
