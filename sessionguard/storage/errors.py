from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A uniqueness or foreign-key constraint rejected a write."""

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        field: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.field = field
        self.detail = detail or ({"field": field} if field else {})


class DuplicateTokenHash(ConstraintViolation):
    """Two refresh sessions would share a ``token_hash``."""

    def __init__(self) -> None:
        super().__init__("refresh token hash already exists", field="token_hash")


__all__ = ["ConstraintViolation", "DuplicateTokenHash"]
