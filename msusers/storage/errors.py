from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """Raised when the backing store cannot be reached or fails mid-operation.

    The driver error is chained as ``__cause__`` and is never shown
    to clients.
    """

    def __init__(self, operation: str):
        super().__init__(f"store unavailable during {operation}")
        self.operation = operation


__all__ = ["ConstraintViolation", "StoreUnavailable"]
