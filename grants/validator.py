from decimal import Decimal
from typing import Optional, Union

from .exceptions import (
    ChargeMismatchError,
    ClaimValidationError,
    InsufficientBalanceError,
    MissingFieldError,
    UploadRejectedError,
)
from .models import JournalClaim, ReceiptAttachment, ResearchClaim, ValidationResult

CHARGE_TOLERANCE = Decimal("0.01")

RECEIPT_CONTENT_TYPES = frozenset({"application/pdf"})
RECEIPT_EXTENSIONS = (".pdf",)

BANK_FIELDS = ("account_name", "account_number", "routing_code")


def _blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def is_recognized_receipt(content_type, filename) -> bool:
    """PDF by content type, or a generic binary upload with a .pdf name."""
    if content_type in RECEIPT_CONTENT_TYPES:
        return True
    named_pdf = bool(filename) and filename.lower().endswith(RECEIPT_EXTENSIONS)
    return named_pdf and content_type in (None, "", "application/octet-stream")


class SubmissionValidator:
    """
    Checks a claim against its own arithmetic and the submitter's balance.

    Checks run in a fixed order and stop at the first failure:
    required fields, charge arithmetic, balance ceiling, receipt.
    """

    def __init__(self, tolerance: Decimal = CHARGE_TOLERANCE):
        self.tolerance = tolerance

    def validate(self, claim: Union[ResearchClaim, JournalClaim], current_balance: Decimal) -> None:
        self._check_required_fields(claim)
        self._check_charges(claim)
        self._check_balance(claim, current_balance)
        self._check_receipt(claim.receipt)

    def check(self, claim: Union[ResearchClaim, JournalClaim], current_balance: Decimal) -> ValidationResult:
        try:
            self.validate(claim, current_balance)
        except ClaimValidationError as e:
            return ValidationResult(ok=False, code=e.code, reason=str(e))
        return ValidationResult(ok=True)

    def _check_required_fields(self, claim: Union[ResearchClaim, JournalClaim]) -> None:
        if _blank(claim.title):
            raise MissingFieldError("title")
        for name in claim.required_event_fields:
            if _blank(getattr(claim.event, name)):
                raise MissingFieldError(f"event.{name}")
        for name in BANK_FIELDS:
            if _blank(getattr(claim.bank, name)):
                raise MissingFieldError(f"bank.{name}")
        if not claim.declaration_accepted:
            raise MissingFieldError("declaration_accepted")

    def _check_charges(self, claim: Union[ResearchClaim, JournalClaim]) -> None:
        calculated = claim.charges.itemized_sum
        if abs(calculated - claim.charges.total) > self.tolerance:
            raise ChargeMismatchError(calculated, claim.charges.total)

    def _check_balance(self, claim: Union[ResearchClaim, JournalClaim], current_balance: Decimal) -> None:
        if claim.charges.total > current_balance:
            raise InsufficientBalanceError(
                claim.charges.total, current_balance, claim.grant_category.value
            )

    def _check_receipt(self, receipt: Optional[ReceiptAttachment]) -> None:
        if receipt is None or _blank(receipt.ref):
            raise MissingFieldError("receipt")
        if not is_recognized_receipt(receipt.content_type, receipt.filename):
            raise UploadRejectedError(
                f"unsupported document type {receipt.content_type!r}; only PDF receipts are accepted",
                filename=receipt.filename,
            )
