from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """Raised when the store stays unreachable after the bounded retry."""

    def __init__(self, message: str = "credential store unavailable", attempts: int = 0):
        super().__init__(message)
        self.message = message
        self.attempts = attempts


__all__ = ["ConstraintViolation", "StoreUnavailable"]
