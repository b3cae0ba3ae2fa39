"""
Table Storage Exception Hierarchy

Error taxonomy shared by the client, the transports and the emulator.
Every error carries a distinguished ``kind`` so callers can decide whether
to retry, report or ignore an outcome.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Distinguished error kinds."""
    INVALID_BATCH = "InvalidBatch"
    SCHEMA_MISMATCH = "SchemaMismatch"
    PRECONDITION_FAILED = "PreconditionFailed"
    NOT_FOUND = "NotFound"
    NOT_ALLOWED = "NotAllowed"
    TOO_MANY_POLICIES = "TooManyPolicies"
    CONFLICT = "Conflict"
    NOT_SUPPORTED = "NotSupported"
    TRANSIENT = "Transient"
    FATAL = "Fatal"


class TableStorageError(Exception):
    """
    Base exception for all table storage errors.

    Attributes:
        message: Human-readable error message
        error_code: Service error code (e.g., 'ResourceNotFound')
        status_code: HTTP-equivalent status code, if any
        details: Additional context (table name, batch index, etc.)
    """

    kind: ErrorKind = ErrorKind.FATAL
    error_code: str = "InternalError"
    status_code: Optional[int] = None

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.error_code
        self.status_code = status_code if status_code is not None else self.__class__.status_code
        self.details = details or {}

    @property
    def is_retryable(self) -> bool:
        """Whether the caller may retry the operation with backoff."""
        return self.kind == ErrorKind.TRANSIENT

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary format."""
        return {
            "error": {
                "kind": self.kind.value,
                "code": self.error_code,
                "status": self.status_code,
                "message": self.message,
                "details": self.details,
            }
        }


# ========== Client-side validation ==========

class InvalidBatchError(TableStorageError):
    """Raised when a batch violates its invariants. Never reaches the service."""
    kind = ErrorKind.INVALID_BATCH
    error_code = "InvalidBatch"
    status_code = 400


class SchemaMismatchError(TableStorageError):
    """Raised when a record cannot be encoded to or decoded from an entity."""
    kind = ErrorKind.SCHEMA_MISMATCH
    error_code = "SchemaMismatch"
    status_code = 400


# ========== Service outcomes ==========

class PreconditionFailedError(TableStorageError):
    """Raised on an optimistic-concurrency (etag) conflict."""
    kind = ErrorKind.PRECONDITION_FAILED
    error_code = "UpdateConditionNotSatisfied"
    status_code = 412


class NotFoundError(TableStorageError):
    """Raised when a table or entity does not exist."""
    kind = ErrorKind.NOT_FOUND
    error_code = "ResourceNotFound"
    status_code = 404


class TableNotFoundError(NotFoundError):
    """Raised when a table does not exist."""
    error_code = "TableNotFound"

    def __init__(self, table_name: str, message: Optional[str] = None):
        super().__init__(
            message or f"Table '{table_name}' not found",
            details={"table_name": table_name},
        )


class EntityNotFoundError(NotFoundError):
    """Raised when an entity does not exist."""

    def __init__(self, partition_key: str, row_key: str, message: Optional[str] = None):
        super().__init__(
            message or (
                f"Entity with PartitionKey '{partition_key}' "
                f"and RowKey '{row_key}' not found"
            ),
            details={"partition_key": partition_key, "row_key": row_key},
        )


class NotAllowedError(TableStorageError):
    """Raised when the credential does not authorise the operation."""
    kind = ErrorKind.NOT_ALLOWED
    error_code = "AuthorizationPermissionMismatch"
    status_code = 403


class TooManyPoliciesError(TableStorageError):
    """Raised when a table would exceed its stored access policy limit."""
    kind = ErrorKind.TOO_MANY_POLICIES
    error_code = "InvalidXmlDocument"
    status_code = 400


class ConflictError(TableStorageError):
    """Raised when creating a table, entity or policy that already exists."""
    kind = ErrorKind.CONFLICT
    error_code = "EntityAlreadyExists"
    status_code = 409


class FeatureNotSupportedError(TableStorageError):
    """Raised when the configured backend lacks a capability."""
    kind = ErrorKind.NOT_SUPPORTED
    error_code = "FeatureNotSupported"
    status_code = 501


class TransientError(TableStorageError):
    """Raised on recoverable network or service faults. Not retried here."""
    kind = ErrorKind.TRANSIENT
    error_code = "ServerBusy"
    status_code = 503


class FatalError(TableStorageError):
    """Raised on unrecoverable failures."""
    kind = ErrorKind.FATAL
    error_code = "InternalError"
    status_code = 500
