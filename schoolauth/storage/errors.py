from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """The session store could not answer: connection error, server error or timeout.

    Distinct from "key absent". Callers must treat it as a failed operation.
    """

    def __init__(self, operation: str, reason: str = "") -> None:
        super().__init__(f"session store unavailable during {operation}: {reason}".rstrip(": "))
        self.operation = operation
        self.reason = reason


__all__ = ["ConstraintViolation", "StoreUnavailable"]
