"""
Grant Reimbursement Ledger

This package provides:
- Per-user annual research and journal grant balances with an idempotent yearly reset
- Claim validation: required fields, itemized charges vs. declared total, balance ceiling, receipt type
- Atomic debit-and-record of accepted claims, serialized per user and category
- In-memory and SQLAlchemy storage behind one interface
"""

from .models import (
    GrantCategory,
    SubmissionStatus,
    GrantRecord,
    ResearchClaim,
    JournalClaim,
    SubmissionRecord,
    BalanceSnapshot,
)
from .accounting import GrantAccountingService
from .validator import SubmissionValidator
from .service import SubmissionService, build_submission_service

__all__ = [
    "GrantCategory",
    "SubmissionStatus",
    "GrantRecord",
    "ResearchClaim",
    "JournalClaim",
    "SubmissionRecord",
    "BalanceSnapshot",
    "GrantAccountingService",
    "SubmissionValidator",
    "SubmissionService",
    "build_submission_service",
]
