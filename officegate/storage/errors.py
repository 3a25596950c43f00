from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Base for credential store failures that callers may translate."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StoreError):
    """A uniqueness or foreign-key rule was violated (duplicate email, unknown office)."""


class RecordNotFound(StoreError):
    """An update targeted a user, office or company row that does not exist."""


__all__ = ["StoreError", "ConstraintViolation", "RecordNotFound"]
