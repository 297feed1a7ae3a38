from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or reference constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class SchemaMissingError(RuntimeError):
    """Raised when the database lacks tables the store depends on."""

    def __init__(self, missing: list[str]):
        super().__init__(
            "missing required tables: " + ", ".join(sorted(missing))
            + "; apply sql/001_security.sql"
        )
        self.missing = missing


__all__ = ["ConstraintViolation", "SchemaMissingError"]
