"""Exception types shared across the scheduling package."""

from __future__ import annotations


class InvalidArgument(ValueError):
    """Raised when a caller passes a value the scheduler cannot interpret."""


class CorruptRecordError(ValueError):
    """Raised when a persisted card record cannot be decoded."""


__all__ = ["CorruptRecordError", "InvalidArgument"]
