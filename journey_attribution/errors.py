from __future__ import annotations


class ValidationError(ValueError):
    """Rejected touchpoint, conversion or revenue payload. Nothing was written."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class NotFoundError(LookupError):
    """No journey exists for the referenced patient."""


class ConcurrentUpdateError(RuntimeError):
    """The journey changed underneath a read-modify-write cycle; the caller may retry."""
