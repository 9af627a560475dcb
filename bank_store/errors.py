"""
Error Types Module

Closed error taxonomy for the storage layer and the transaction coordinator.
Storage backends translate driver exceptions into StoreError with a
StoreErrorKind, so callers branch on ``error.kind`` rather than on driver
exception classes.
"""

from enum import Enum
from typing import Optional


class StoreErrorKind(Enum):
    """Kinds of data-access failure"""
    NOT_FOUND = "not_found"
    UNIQUE_VIOLATION = "unique_violation"
    FOREIGN_KEY_VIOLATION = "foreign_key_violation"
    CHECK_VIOLATION = "check_violation"
    LOCK_TIMEOUT = "lock_timeout"
    SERIALIZATION_FAILURE = "serialization_failure"
    DEADLOCK_DETECTED = "deadlock_detected"
    CONNECTION_FAILURE = "connection_failure"
    UNKNOWN = "unknown"


class BankStoreError(Exception):
    """Base class for all bank store errors."""


class StoreError(BankStoreError):
    """A data-access operation failed."""

    def __init__(self, kind: StoreErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"

    @classmethod
    def not_found(cls, resource: str, record_id) -> 'StoreError':
        return cls(StoreErrorKind.NOT_FOUND, f"{resource} {record_id} not found")


class TransactionAborted(BankStoreError):
    """
    A transaction scope could not complete.

    Raised when commit fails; the underlying failure is kept in ``cause``.
    """

    def __init__(self, message: str, cause: BaseException):
        super().__init__(message)
        self.cause = cause

    @property
    def kind(self) -> StoreErrorKind:
        """Kind of the underlying failure (UNKNOWN for non-store errors)"""
        if isinstance(self.cause, StoreError):
            return self.cause.kind
        return StoreErrorKind.UNKNOWN


class RollbackFailed(TransactionAborted):
    """Rollback failed after the unit of work had already failed."""

    def __init__(self, cause: BaseException, rollback_error: BaseException):
        super().__init__(
            f"tx error: {cause}, rollback error: {rollback_error}",
            cause
        )
        self.rollback_error = rollback_error


class RejectionReason(Enum):
    """Why a transfer request was refused before reaching the coordinator"""
    INVALID_AMOUNT = "invalid_amount"
    SAME_ACCOUNT = "same_account"
    CURRENCY_MISMATCH = "currency_mismatch"
    WRONG_OWNER = "wrong_owner"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    MISSING_ACCOUNT_FILTER = "missing_account_filter"


class TransferRejected(BankStoreError):
    """A transfer or listing request failed policy validation."""

    def __init__(self, reason: RejectionReason, message: str,
                 account_id: Optional[int] = None):
        super().__init__(message)
        self.reason = reason
        self.account_id = account_id
