"""
Unit Tests for the Submission Validator

Tests cover:
1. Required fields per category
2. Itemized charges vs. declared total
3. Balance ceiling
4. Receipt presence and type
5. Check ordering
"""

import pytest
from decimal import Decimal
from uuid import UUID

from grants.exceptions import (
    ChargeMismatchError,
    InsufficientBalanceError,
    MissingFieldError,
    UploadRejectedError,
)
from grants.validator import SubmissionValidator, is_recognized_receipt


SUBMITTER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
BALANCE = Decimal("20000.00")


class TestRequiredFields:
    """Tests for required field checks."""

    def test_valid_research_claim_passes(self, claim_factory):
        SubmissionValidator().validate(claim_factory(SUBMITTER_ID), BALANCE)

    def test_valid_journal_claim_passes(self, claim_factory):
        """Journals need no venue or event date."""
        claim = claim_factory(SUBMITTER_ID, category="journal")
        assert claim.event.venue is None

        SubmissionValidator().validate(claim, BALANCE)

    def test_research_requires_venue(self, claim_factory):
        claim = claim_factory(SUBMITTER_ID, event={
            "name": "ICCS", "event_date": "2024-09-10", "deadline": "2024-07-01",
        })

        with pytest.raises(MissingFieldError) as exc:
            SubmissionValidator().validate(claim, BALANCE)
        assert exc.value.field == "event.venue"

    def test_blank_title_is_missing(self, claim_factory):
        with pytest.raises(MissingFieldError) as exc:
            SubmissionValidator().validate(claim_factory(SUBMITTER_ID, title="   "), BALANCE)
        assert exc.value.field == "title"

    def test_bank_details_required(self, claim_factory):
        claim = claim_factory(SUBMITTER_ID, bank={"account_name": "Asha Rao", "account_number": "0011"})

        with pytest.raises(MissingFieldError) as exc:
            SubmissionValidator().validate(claim, BALANCE)
        assert exc.value.field == "bank.routing_code"

    def test_declaration_must_be_accepted(self, claim_factory):
        with pytest.raises(MissingFieldError) as exc:
            SubmissionValidator().validate(claim_factory(SUBMITTER_ID, declaration_accepted=False), BALANCE)
        assert exc.value.field == "declaration_accepted"


class TestChargeArithmetic:
    """Tests for the itemized sum check."""

    def test_mismatch_rejected(self, claim_factory):
        """1000 + 500 + 500 declared as 2500."""
        claim = claim_factory(SUBMITTER_ID, registration_fee="1000", travel="500", lodging="500", total="2500")

        with pytest.raises(ChargeMismatchError) as exc:
            SubmissionValidator().validate(claim, BALANCE)
        assert exc.value.calculated == Decimal("2000")
        assert exc.value.declared == Decimal("2500")

    def test_difference_within_tolerance_accepted(self, claim_factory):
        claim = claim_factory(SUBMITTER_ID, registration_fee="100.00", travel="50.00", lodging="25.00", total="175.01")

        SubmissionValidator().validate(claim, BALANCE)

    def test_difference_beyond_tolerance_rejected(self, claim_factory):
        claim = claim_factory(SUBMITTER_ID, registration_fee="100.00", travel="50.00", lodging="25.00", total="175.02")

        with pytest.raises(ChargeMismatchError):
            SubmissionValidator().validate(claim, BALANCE)

    @pytest.mark.parametrize("total", ["0", "9999.98", "10000.02", "20000"])
    def test_any_mismatch_beyond_a_cent(self, claim_factory, total):
        claim = claim_factory(SUBMITTER_ID, total=total)

        result = SubmissionValidator().check(claim, BALANCE)
        assert result.ok is False
        assert result.code == "CHARGE_MISMATCH"


class TestBalanceCeiling:
    """Tests for the balance check."""

    def test_total_equal_to_balance_accepted(self, claim_factory):
        claim = claim_factory(SUBMITTER_ID, registration_fee="10000", travel="0", lodging="0", total="10000")

        SubmissionValidator().validate(claim, Decimal("10000.00"))

    def test_total_above_balance_rejected(self, claim_factory):
        claim = claim_factory(SUBMITTER_ID, registration_fee="15000", travel="0", lodging="0", total="15000")

        with pytest.raises(InsufficientBalanceError) as exc:
            SubmissionValidator().validate(claim, Decimal("10000.00"))
        assert exc.value.requested == Decimal("15000")
        assert exc.value.available == Decimal("10000.00")
        assert exc.value.category == "research"


class TestReceipt:
    """Tests for receipt checks."""

    def test_missing_receipt(self, claim_factory):
        with pytest.raises(MissingFieldError) as exc:
            SubmissionValidator().validate(claim_factory(SUBMITTER_ID, receipt=None), BALANCE)
        assert exc.value.field == "receipt"

    def test_unrecognized_receipt_type(self, claim_factory):
        claim = claim_factory(SUBMITTER_ID, receipt={
            "ref": "photo.png", "filename": "photo.png", "content_type": "image/png",
        })

        with pytest.raises(UploadRejectedError):
            SubmissionValidator().validate(claim, BALANCE)

    def test_octet_stream_with_pdf_name_accepted(self):
        assert is_recognized_receipt("application/octet-stream", "Receipt.PDF")
        assert is_recognized_receipt("application/pdf", None)
        assert not is_recognized_receipt("application/octet-stream", "receipt.docx")
        assert not is_recognized_receipt("text/plain", "receipt.pdf")


class TestCheckOrder:
    """Checks stop at the first failure, in a fixed order."""

    def test_missing_field_reported_before_mismatch(self, claim_factory):
        claim = claim_factory(SUBMITTER_ID, title=None, total="1")

        result = SubmissionValidator().check(claim, BALANCE)
        assert result.code == "MISSING_FIELD"

    def test_mismatch_reported_before_balance(self, claim_factory):
        claim = claim_factory(SUBMITTER_ID, total="50000")

        result = SubmissionValidator().check(claim, BALANCE)
        assert result.code == "CHARGE_MISMATCH"

    def test_balance_reported_before_receipt(self, claim_factory):
        claim = claim_factory(SUBMITTER_ID, receipt=None)

        result = SubmissionValidator().check(claim, Decimal("10.00"))
        assert result.code == "INSUFFICIENT_BALANCE"

    def test_check_ok(self, claim_factory):
        result = SubmissionValidator().check(claim_factory(SUBMITTER_ID), BALANCE)

        assert result.ok is True
        assert result.reason is None
