from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class DuplicateField(ConstraintViolation):
    """A unique column (email, role name, token hash...) already holds the value."""


class InvalidReference(ConstraintViolation):
    """A foreign key points at a row that does not exist."""


class StoreUnavailable(Exception):
    """Transient failure talking to the database or the key-value store.

    Callers may retry with backoff. Never interpret this as a negative answer.
    """

    def __init__(self, message: str, *, backend: str):
        super().__init__(message)
        self.message = message
        self.backend = backend


__all__ = ["ConstraintViolation", "DuplicateField", "InvalidReference", "StoreUnavailable"]
