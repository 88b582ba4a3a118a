from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class StoreErrorCode(str, Enum):
    """Closed set of conditions the credential store reports to callers."""

    DUPLICATE_USERNAME = "duplicate_username"
    DUPLICATE_EMAIL = "duplicate_email"
    ADMIN_LIMIT = "admin_limit"
    MISSING_FIELD = "missing_field"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"


class StoreError(Exception):
    """Storage failure tagged with a stable :class:`StoreErrorCode`."""

    def __init__(
        self,
        code: StoreErrorCode,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = StoreErrorCode(code)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StoreError):
    """Raised when a uniqueness or row-limit constraint is violated."""


__all__ = ["StoreErrorCode", "StoreError", "ConstraintViolation"]
