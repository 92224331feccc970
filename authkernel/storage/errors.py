from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class TableNotAllowed(ValueError):
    """Raised when a generic query helper is given a table outside the allow-list."""

    def __init__(self, table: str):
        super().__init__(f"table not allowed: {table!r}")
        self.table = table


__all__ = ["ConstraintViolation", "TableNotAllowed"]
