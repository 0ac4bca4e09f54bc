from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness, FK or exclusivity constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StorageFault(Exception):
    """Raised when the backing store is unreachable or a transaction fails.

    The transaction that raised it has been rolled back; nothing it wrote is visible.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class InvalidValue(Exception):
    """Raised when the backing store rejects a value it cannot represent.

    Examples are NUL characters in text columns or integers outside BIGINT.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


__all__ = ["ConstraintViolation", "InvalidValue", "StorageFault"]
