from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class AccountNotFound(LookupError):
    """Raised when an account id or unique field value matches nothing."""

    def __init__(self, key: str, value: str):
        super().__init__(f"account not found: {key}")
        self.key = key
        self.value = value


class StorageFailure(RuntimeError):
    """The backing store could not read or persist state."""


__all__ = ["AccountNotFound", "ConstraintViolation", "StorageFailure"]
