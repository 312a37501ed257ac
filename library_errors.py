"""
Error kinds and the result type returned by store and ledger mutators.
Refused operations are reported to the caller through Result; only storage
failures are raised.
"""

import enum
from dataclasses import dataclass
from typing import Any, Optional


class ErrorKind(enum.Enum):
    NOT_FOUND = "not_found"
    NOT_AVAILABLE = "not_available"
    ALREADY_RETURNED = "already_returned"
    HAS_ACTIVE_LOANS = "has_active_loans"
    INVALID_RANGE = "invalid_range"
    DUPLICATE = "duplicate"
    INVALID_INPUT = "invalid_input"
    NOT_AUTHORIZED = "not_authorized"


@dataclass(frozen=True)
class Result:
    """Outcome of a mutating call: truthy on success, carries the error kind otherwise."""
    ok: bool
    value: Any = None
    error: Optional[ErrorKind] = None
    message: str = ""

    def __bool__(self):
        return self.ok

    @classmethod
    def success(cls, value=None):
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error, message=""):
        return cls(ok=False, error=error, message=message)


class LibraryStoreError(Exception):
    """Base class for errors raised out of the storage layer."""


class StoreUnavailableError(LibraryStoreError):
    """The database could not be reached or refused the operation."""


class SchemaInitializationError(LibraryStoreError):
    """Creating or resetting the schema failed; startup must stop."""
