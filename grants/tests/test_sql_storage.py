"""
Tests for the SQLAlchemy ledger store, run against a SQLite file.
"""

import pytest
from decimal import Decimal
from uuid import UUID, uuid4

from grants.accounting import GrantAccountingService
from grants.exceptions import (
    ConcurrencyConflictError,
    InsufficientBalanceError,
    PersistenceFailureError,
    UserAlreadyExistsError,
    UserNotFoundError,
)
from grants.models import GrantCategory, RegisterUserRequest, SubmissionStatus
from grants.service import SubmissionService
from grants.sql_storage import SqlAlchemyStorage


@pytest.fixture
def sql_storage(tmp_path):
    return SqlAlchemyStorage.from_url(f"sqlite:///{tmp_path / 'grants.db'}")


@pytest.fixture
def sql_accounting(sql_storage, clock):
    return GrantAccountingService(storage=sql_storage, clock=clock)


@pytest.fixture
def sql_service(sql_accounting):
    return SubmissionService(accounting=sql_accounting, sleep=lambda _: None)


@pytest.fixture
def sql_user(sql_accounting):
    return sql_accounting.register_user(RegisterUserRequest(email="Asha.Rao@example.edu", name="Asha Rao"))


class TestGrantRecords:

    def test_register_and_fetch(self, sql_storage, sql_user):
        record = sql_storage.get_grant_record(sql_user.user_id)

        assert record.user_id == sql_user.user_id
        assert record.email == "asha.rao@example.edu"
        assert record.remaining_research_grant == Decimal("20000.00")
        assert record.last_grant_year == 2024

    def test_duplicate_email(self, sql_accounting, sql_user):
        with pytest.raises(UserAlreadyExistsError):
            sql_accounting.register_user(RegisterUserRequest(email="asha.rao@example.edu", name="Again"))

    def test_lookup_by_email(self, sql_storage, sql_user):
        assert sql_storage.get_grant_record_by_email("ASHA.RAO@example.edu").user_id == sql_user.user_id
        assert sql_storage.get_grant_record_by_email("missing@example.edu") is None

    def test_reset_if_new_year_is_conditional(self, sql_storage, sql_user):
        defaults = {GrantCategory.RESEARCH: Decimal("20000.00"), GrantCategory.JOURNAL: Decimal("30000.00")}
        with sql_storage.transaction() as tx:
            tx.atomic_debit(sql_user.user_id, GrantCategory.RESEARCH, Decimal("500"), 2024)

        record, was_reset = sql_storage.reset_if_new_year(sql_user.user_id, 2024, defaults)
        assert was_reset is False
        assert record.remaining_research_grant == Decimal("19500.00")

        record, was_reset = sql_storage.reset_if_new_year(sql_user.user_id, 2025, defaults)
        assert was_reset is True
        assert record.remaining_research_grant == Decimal("20000.00")
        assert record.last_grant_year == 2025

        _, was_reset = sql_storage.reset_if_new_year(sql_user.user_id, 2025, defaults)
        assert was_reset is False

    def test_reset_unknown_user(self, sql_storage):
        with pytest.raises(UserNotFoundError):
            sql_storage.reset_if_new_year(uuid4(), 2024, {
                GrantCategory.RESEARCH: Decimal("20000.00"), GrantCategory.JOURNAL: Decimal("30000.00"),
            })


class TestAtomicDebit:

    def test_debit_refuses_overdraw(self, sql_storage, sql_user):
        with pytest.raises(InsufficientBalanceError) as exc:
            with sql_storage.transaction() as tx:
                tx.atomic_debit(sql_user.user_id, GrantCategory.JOURNAL, Decimal("30000.01"), 2024)

        assert exc.value.available == Decimal("30000.00")
        assert sql_storage.get_grant_record(sql_user.user_id).remaining_journal_grant == Decimal("30000.00")

    def test_debit_refuses_stale_year(self, sql_storage, sql_user):
        with pytest.raises(ConcurrencyConflictError):
            with sql_storage.transaction() as tx:
                tx.atomic_debit(sql_user.user_id, GrantCategory.RESEARCH, Decimal("1"), 2023)

    def test_debit_unknown_user(self, sql_storage):
        with pytest.raises(UserNotFoundError):
            with sql_storage.transaction() as tx:
                tx.atomic_debit(UUID(int=1), GrantCategory.RESEARCH, Decimal("1"), 2024)

    def test_failed_submission_write_rolls_back_debit(self, sql_service, sql_storage, sql_user, claim_factory):
        """A duplicate submission id fails the insert; the debit in the same transaction is undone."""
        accepted = sql_service.submit(claim_factory(sql_user.user_id))

        with pytest.raises(PersistenceFailureError):
            with sql_storage.transaction() as tx:
                tx.atomic_debit(sql_user.user_id, GrantCategory.RESEARCH, Decimal("100"), 2024)
                tx.save_submission(accepted.submission)

        record = sql_storage.get_grant_record(sql_user.user_id)
        assert record.remaining_research_grant == Decimal("10000.00")


class TestSubmissionsOnSql:

    def test_submit_flow(self, sql_service, sql_user, claim_factory):
        response = sql_service.submit(claim_factory(sql_user.user_id, idempotency_key="k-1"))

        assert response.remaining_balance_after == Decimal("10000.00")

        stored = sql_service.get_submission(response.submission.id)
        assert stored.status == SubmissionStatus.PENDING
        assert stored.event.venue == "Singapore"
        assert stored.charges.total == Decimal("10000.00")
        assert stored.bank.routing_code == "SBIN0001234"

        with pytest.raises(InsufficientBalanceError):
            sql_service.submit(claim_factory(
                sql_user.user_id, registration_fee="15000", travel="0", lodging="0", total="15000",
            ))

        repeat = sql_service.submit(claim_factory(sql_user.user_id, idempotency_key="k-1"))
        assert repeat.submission.id == response.submission.id

        history = sql_service.list_submissions(sql_user.user_id)
        assert history.total_count == 1
        assert history.balances.remaining_research_grant == Decimal("10000.00")

    def test_cent_amounts_stay_exact(self, sql_service, sql_user, claim_factory):
        """19999.70 then three claims of 0.10 spend the research grant to exactly zero."""
        amounts = ["19999.70", "0.10", "0.10", "0.10"]
        for amount in amounts:
            sql_service.submit(claim_factory(
                sql_user.user_id, registration_fee=amount, travel="0", lodging="0", total=amount,
            ))

        balance = sql_service.get_current_balance(sql_user.user_id, GrantCategory.RESEARCH)
        assert balance.balance == Decimal("0.00")

        history = sql_service.list_submissions(sql_user.user_id)
        assert [s.remaining_balance_after for s in history.submissions] == [
            Decimal("0.00"), Decimal("0.10"), Decimal("0.20"), Decimal("0.30"),
        ]
        assert sum(s.charges.total for s in history.submissions) == Decimal("20000.00")

        with pytest.raises(InsufficientBalanceError):
            sql_service.submit(claim_factory(
                sql_user.user_id, registration_fee="0.01", travel="0", lodging="0", total="0.01",
            ))

    def test_history_newest_first(self, sql_service, sql_user, clock, claim_factory):
        for title in ["First", "Second", "Third"]:
            sql_service.submit(claim_factory(
                sql_user.user_id, title=title, registration_fee="10", travel="0", lodging="0", total="10",
            ))

        titles = [s.title for s in sql_service.list_submissions(sql_user.user_id).submissions]
        assert titles == ["Third", "Second", "First"]

    def test_year_rollover(self, sql_service, sql_user, clock, claim_factory):
        sql_service.submit(claim_factory(
            sql_user.user_id, category="journal", registration_fee="30000", travel="0", lodging="0", total="30000",
        ))
        clock.advance_years(1)

        snapshot = sql_service.get_current_balance(sql_user.user_id, GrantCategory.JOURNAL)

        assert snapshot.year_reset is True
        assert snapshot.balance == Decimal("30000.00")
