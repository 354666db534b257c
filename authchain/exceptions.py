"""
authchain exceptions.

All ledger exceptions inherit from LedgerError and carry an ErrorKind so
callers can branch on the failure class without isinstance chains.
"""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Failure classes of the ledger engine."""

    INVALID_LINKAGE = "invalid_linkage"
    INVALID_SIGNATURE = "invalid_signature"
    TIMESTAMP_REGRESSION = "timestamp_regression"
    RECORD_VALIDATION_FAILURE = "record_validation_failure"
    DUPLICATE_CONFLICT = "duplicate_conflict"
    PEER_PROTOCOL_ERROR = "peer_protocol_error"
    STORAGE_FAILURE = "storage_failure"


class LedgerError(Exception):
    """Base exception for all authchain errors."""

    kind: Optional[ErrorKind] = None

    def __init__(self, message: str, code: str = "LEDGER_ERROR"):
        super().__init__(message)
        self.code = code
        self.message = message


class InvalidLinkageError(LedgerError):
    """Block height or previous hash does not extend the tip."""

    kind = ErrorKind.INVALID_LINKAGE

    def __init__(self, message: str, height: Optional[int] = None):
        super().__init__(message, "INVALID_LINKAGE")
        self.height = height


class InvalidSignatureError(LedgerError):
    """Block signature or content hash does not verify."""

    kind = ErrorKind.INVALID_SIGNATURE

    def __init__(self, message: str, height: Optional[int] = None):
        super().__init__(message, "INVALID_SIGNATURE")
        self.height = height


class TimestampRegressionError(LedgerError):
    """Block timestamp is older than its predecessor's."""

    kind = ErrorKind.TIMESTAMP_REGRESSION

    def __init__(self, message: str, height: Optional[int] = None):
        super().__init__(message, "TIMESTAMP_REGRESSION")
        self.height = height


class RecordValidationError(LedgerError):
    """A record was rejected by its hash check or the domain rules."""

    kind = ErrorKind.RECORD_VALIDATION_FAILURE

    def __init__(self, message: str, height: Optional[int] = None, record_hash: Optional[str] = None):
        super().__init__(message, "RECORD_VALIDATION_FAILURE")
        self.height = height
        self.record_hash = record_hash


class DuplicateConflictError(LedgerError):
    """Two different blocks claim the same height.

    Implies authority key compromise or a producer defect. Never resolved
    automatically.
    """

    kind = ErrorKind.DUPLICATE_CONFLICT

    def __init__(self, message: str, height: int, existing_hash: str, offered_hash: str):
        super().__init__(message, "DUPLICATE_CONFLICT")
        self.height = height
        self.existing_hash = existing_hash
        self.offered_hash = offered_hash


class PeerProtocolError(LedgerError):
    """Malformed or out-of-protocol message from a peer."""

    kind = ErrorKind.PEER_PROTOCOL_ERROR

    def __init__(self, message: str, peer_id: Optional[str] = None):
        super().__init__(message, "PEER_PROTOCOL_ERROR")
        self.peer_id = peer_id


class StorageFailureError(LedgerError):
    """Persistence I/O failed.

    ``fatal`` is set once the write path has exhausted its retries.
    """

    kind = ErrorKind.STORAGE_FAILURE

    def __init__(self, message: str, fatal: bool = False):
        super().__init__(message, "STORAGE_FAILURE")
        self.fatal = fatal


class ChainCorruptionError(StorageFailureError):
    """Stored blocks do not recompute to the stored tip marker."""

    def __init__(self, message: str, height: Optional[int] = None):
        super().__init__(message, fatal=True)
        self.code = "CHAIN_CORRUPTION"
        self.height = height


class PendingPoolFullError(LedgerError):
    """The producer's pending pool has no room for the offered records."""

    def __init__(self, message: str, capacity: int, offered: int):
        super().__init__(message, "PENDING_POOL_FULL")
        self.capacity = capacity
        self.offered = offered


class ChainHaltedError(LedgerError):
    """The chain refused to advance after an operator-visible fault."""

    def __init__(self, message: str, cause: Optional[LedgerError] = None):
        super().__init__(message, "CHAIN_HALTED")
        self.cause = cause


ERRORS_BY_KIND: dict[ErrorKind, type[LedgerError]] = {
    ErrorKind.INVALID_LINKAGE: InvalidLinkageError,
    ErrorKind.INVALID_SIGNATURE: InvalidSignatureError,
    ErrorKind.TIMESTAMP_REGRESSION: TimestampRegressionError,
    ErrorKind.RECORD_VALIDATION_FAILURE: RecordValidationError,
}
