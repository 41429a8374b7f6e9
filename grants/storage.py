"""
Ledger store capability interface and the in-memory implementation.

Callers never read-modify-write a balance themselves: the only balance
mutations are ``reset_if_new_year`` and ``atomic_debit`` inside a
``transaction()``, both of which check their precondition and apply the change
as one step.
"""

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from decimal import Decimal
from itertools import count
from typing import ContextManager, Iterator, Optional
from uuid import UUID

from .exceptions import (
    ConcurrencyConflictError,
    InsufficientBalanceError,
    UserAlreadyExistsError,
    UserNotFoundError,
)
from .models import GrantCategory, GrantRecord, SubmissionRecord

BALANCE_FIELDS: dict[GrantCategory, str] = {
    GrantCategory.RESEARCH: "remaining_research_grant",
    GrantCategory.JOURNAL: "remaining_journal_grant",
}


class GrantTransaction(ABC):
    """Unit of work spanning the balance debit and the submission write."""

    @abstractmethod
    def atomic_debit(
        self, user_id: UUID, category: GrantCategory, amount: Decimal, grant_year: int
    ) -> Decimal:
        """
        Decrement the category balance by ``amount`` and return the new balance.

        Applies only if the record is still in ``grant_year`` and holds at least
        ``amount``. Raises InsufficientBalanceError when the balance is short,
        ConcurrencyConflictError when the grant year moved underneath the caller.
        """
        ...

    @abstractmethod
    def save_submission(self, submission: SubmissionRecord) -> SubmissionRecord:
        ...


class GrantStorage(ABC):

    @abstractmethod
    def create_grant_record(self, record: GrantRecord) -> GrantRecord:
        ...

    @abstractmethod
    def get_grant_record(self, user_id: UUID) -> Optional[GrantRecord]:
        ...

    @abstractmethod
    def get_grant_record_by_email(self, email: str) -> Optional[GrantRecord]:
        ...

    @abstractmethod
    def reset_if_new_year(
        self, user_id: UUID, year: int, defaults: dict[GrantCategory, Decimal]
    ) -> tuple[GrantRecord, bool]:
        """
        Restore both balances to ``defaults`` unless the record is already in ``year``.

        Returns the current record and whether this call performed the reset.
        Raises UserNotFoundError.
        """
        ...

    @abstractmethod
    def transaction(self) -> ContextManager[GrantTransaction]:
        ...

    @abstractmethod
    def get_submission(self, submission_id: UUID) -> Optional[SubmissionRecord]:
        ...

    @abstractmethod
    def find_submission_by_idempotency_key(
        self, submitter_id: UUID, idempotency_key: str
    ) -> Optional[SubmissionRecord]:
        ...

    @abstractmethod
    def list_submissions(self, submitter_id: UUID) -> list[SubmissionRecord]:
        """All submissions of one submitter, newest first."""
        ...


class _InMemoryTransaction(GrantTransaction):
    def __init__(self, storage: "InMemoryStorage"):
        self.storage = storage

    def atomic_debit(
        self, user_id: UUID, category: GrantCategory, amount: Decimal, grant_year: int
    ) -> Decimal:
        record = self.storage.grant_records.get(user_id)
        if not record:
            raise UserNotFoundError(str(user_id))
        if record["last_grant_year"] != grant_year:
            raise ConcurrencyConflictError(
                f"Grant year for {user_id} changed from {grant_year} to {record['last_grant_year']}"
            )

        field = BALANCE_FIELDS[GrantCategory(category)]
        if record[field] < amount:
            raise InsufficientBalanceError(amount, record[field], GrantCategory(category).value)

        record[field] = record[field] - amount
        return record[field]

    def save_submission(self, submission: SubmissionRecord) -> SubmissionRecord:
        data = submission.model_dump()
        self.storage.submissions[submission.id] = data
        self.storage.submission_order[submission.id] = next(self.storage._sequence)
        if submission.idempotency_key:
            key = (submission.submitter_id, submission.idempotency_key)
            self.storage.idempotency_index[key] = submission.id
        return SubmissionRecord(**data)


class InMemoryStorage(GrantStorage):
    def __init__(self):
        self.grant_records: dict[UUID, dict] = {}
        self.submissions: dict[UUID, dict] = {}
        self.submission_order: dict[UUID, int] = {}
        self.email_index: dict[str, UUID] = {}
        self.idempotency_index: dict[tuple[UUID, str], UUID] = {}
        self._sequence = count()
        self._lock = threading.RLock()

    def create_grant_record(self, record: GrantRecord) -> GrantRecord:
        email = record.email.lower()
        with self._lock:
            if email in self.email_index:
                raise UserAlreadyExistsError(record.email)
            data = record.model_dump()
            self.grant_records[record.user_id] = data
            self.email_index[email] = record.user_id
            return GrantRecord(**data)

    def get_grant_record(self, user_id: UUID) -> Optional[GrantRecord]:
        with self._lock:
            data = self.grant_records.get(user_id)
            return GrantRecord(**data) if data else None

    def get_grant_record_by_email(self, email: str) -> Optional[GrantRecord]:
        with self._lock:
            user_id = self.email_index.get(email.lower())
            if user_id is None:
                return None
            return GrantRecord(**self.grant_records[user_id])

    def reset_if_new_year(
        self, user_id: UUID, year: int, defaults: dict[GrantCategory, Decimal]
    ) -> tuple[GrantRecord, bool]:
        with self._lock:
            data = self.grant_records.get(user_id)
            if not data:
                raise UserNotFoundError(str(user_id))
            if data["last_grant_year"] == year:
                return GrantRecord(**data), False

            for category, field in BALANCE_FIELDS.items():
                data[field] = defaults[category]
            data["last_grant_year"] = year
            return GrantRecord(**data), True

    @contextmanager
    def transaction(self) -> Iterator[GrantTransaction]:
        with self._lock:
            snapshot = (
                {user_id: dict(data) for user_id, data in self.grant_records.items()},
                dict(self.submissions),
                dict(self.submission_order),
                dict(self.idempotency_index),
            )
            try:
                yield _InMemoryTransaction(self)
            except BaseException:
                (
                    self.grant_records,
                    self.submissions,
                    self.submission_order,
                    self.idempotency_index,
                ) = snapshot
                raise

    def get_submission(self, submission_id: UUID) -> Optional[SubmissionRecord]:
        with self._lock:
            data = self.submissions.get(submission_id)
            return SubmissionRecord(**data) if data else None

    def find_submission_by_idempotency_key(
        self, submitter_id: UUID, idempotency_key: str
    ) -> Optional[SubmissionRecord]:
        with self._lock:
            submission_id = self.idempotency_index.get((submitter_id, idempotency_key))
            if submission_id is None:
                return None
            data = self.submissions.get(submission_id)
            return SubmissionRecord(**data) if data else None

    def list_submissions(self, submitter_id: UUID) -> list[SubmissionRecord]:
        with self._lock:
            rows = [
                (data["created_at"], self.submission_order[submission_id], data)
                for submission_id, data in self.submissions.items()
                if data["submitter_id"] == submitter_id
            ]
        rows.sort(key=lambda row: (row[0], row[1]), reverse=True)
        return [SubmissionRecord(**data) for _, _, data in rows]
