"""
Typed errors for the grant ledger.

Every error carries a machine-readable ``code`` so the HTTP layer (and any
other caller) can branch on type instead of parsing messages.

    GrantLedgerError
    +-- UserNotFoundError
    +-- UserAlreadyExistsError
    +-- SubmissionNotFoundError
    +-- ClaimValidationError          client-correctable, never retried
    |   +-- MissingFieldError
    |   +-- ChargeMismatchError
    |   +-- InsufficientBalanceError
    |   +-- UploadRejectedError
    +-- RetryableError                retried by the submission service
        +-- ConcurrencyConflictError
        +-- PersistenceFailureError
"""

from decimal import Decimal
from typing import Optional
from uuid import UUID


class GrantLedgerError(Exception):
    code: str = "GRANT_LEDGER_ERROR"


class UserNotFoundError(GrantLedgerError):
    code = "USER_NOT_FOUND"

    def __init__(self, user_ref: str):
        self.user_ref = user_ref
        super().__init__(f"User {user_ref} not found")


class UserAlreadyExistsError(GrantLedgerError):
    code = "USER_ALREADY_EXISTS"

    def __init__(self, email: str):
        self.email = email
        super().__init__(f"User with email {email} already exists")


class SubmissionNotFoundError(GrantLedgerError):
    code = "SUBMISSION_NOT_FOUND"

    def __init__(self, submission_id: UUID):
        self.submission_id = submission_id
        super().__init__(f"Submission {submission_id} not found")


class ClaimValidationError(GrantLedgerError):
    code = "CLAIM_INVALID"


class MissingFieldError(ClaimValidationError):
    code = "MISSING_FIELD"

    def __init__(self, field: str):
        self.field = field
        super().__init__(f"Required field '{field}' is missing")


class ChargeMismatchError(ClaimValidationError):
    code = "CHARGE_MISMATCH"

    def __init__(self, calculated: Decimal, declared: Decimal):
        self.calculated = calculated
        self.declared = declared
        super().__init__(
            f"Total amount {declared} doesn't match sum of individual charges {calculated}"
        )


class InsufficientBalanceError(ClaimValidationError):
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, requested: Decimal, available: Decimal, category: str):
        self.requested = requested
        self.available = available
        self.category = category
        super().__init__(
            f"Requested amount {requested} exceeds your remaining {category} grant of {available}"
        )


class UploadRejectedError(ClaimValidationError):
    code = "UPLOAD_REJECTED"

    def __init__(self, reason: str, filename: Optional[str] = None):
        self.reason = reason
        self.filename = filename
        super().__init__(f"Receipt rejected: {reason}")


class RetryableError(GrantLedgerError):
    code = "RETRYABLE"


class ConcurrencyConflictError(RetryableError):
    code = "CONCURRENCY_CONFLICT"


class PersistenceFailureError(RetryableError):
    code = "PERSISTENCE_FAILURE"
