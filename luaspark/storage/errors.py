from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for credential store failures surfaced to callers."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """Raised when a uniqueness constraint is violated (identity already exists)."""


class RecordNotFound(StorageError):
    """Raised when no record exists for the requested identity."""


class CredentialMismatch(StorageError):
    """Raised when a secret does not match the stored verifier."""


class InvalidRecordInput(StorageError):
    """Raised when identity or secret is empty."""


__all__ = [
    "StorageError",
    "ConstraintViolation",
    "RecordNotFound",
    "CredentialMismatch",
    "InvalidRecordInput",
]
