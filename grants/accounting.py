from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from .clock import Clock, SystemClock
from .exceptions import UserNotFoundError
from .logging_config import get_logger
from .models import (
    CATEGORY_DEFAULTS,
    BalanceSnapshot,
    GrantBalances,
    GrantCategory,
    GrantRecord,
    RegisterUserRequest,
    to_money,
)
from .storage import GrantStorage, InMemoryStorage

logger = get_logger(__name__)


class GrantAccountingService:
    """
    Owns the per-user grant record: registration, balance reads and the
    yearly reset.

    A record whose ``last_grant_year`` differs from the clock's year is reset
    to the category defaults on first access. The reset is a conditional write
    in storage, so concurrent or repeated reads in the same year reset at most
    once.
    """

    def __init__(
        self,
        storage: Optional[GrantStorage] = None,
        clock: Optional[Clock] = None,
        defaults: Optional[dict[GrantCategory, Decimal]] = None,
    ):
        self.storage = storage or InMemoryStorage()
        self.clock = clock or SystemClock()
        self.defaults = {
            category: to_money(amount)
            for category, amount in (defaults or CATEGORY_DEFAULTS).items()
        }

    def register_user(self, request: RegisterUserRequest) -> GrantRecord:
        now = self.clock.now()
        record = GrantRecord(
            user_id=uuid4(),
            email=request.email,
            name=request.name,
            role=request.role,
            designation=request.designation,
            phone=request.phone,
            remaining_research_grant=self.defaults[GrantCategory.RESEARCH],
            remaining_journal_grant=self.defaults[GrantCategory.JOURNAL],
            last_grant_year=now.year,
            created_at=now,
        )
        created = self.storage.create_grant_record(record)
        logger.info("user_registered", user_id=str(created.user_id), grant_year=now.year)
        return created

    def get_user(self, user_id: UUID) -> GrantRecord:
        record = self.storage.get_grant_record(user_id)
        if not record:
            raise UserNotFoundError(str(user_id))
        return record

    def get_user_by_email(self, email: str) -> GrantRecord:
        record = self.storage.get_grant_record_by_email(email)
        if not record:
            raise UserNotFoundError(email)
        return record

    def refresh(self, user_id: UUID) -> tuple[GrantRecord, bool]:
        """Apply the yearly reset if due; returns the record and whether it was reset."""
        year = self.clock.current_year()
        record, was_reset = self.storage.reset_if_new_year(user_id, year, self.defaults)
        if was_reset:
            logger.info("grant_year_reset", user_id=str(user_id), grant_year=year)
        return record, was_reset

    def get_current_balance(self, user_id: UUID, category: GrantCategory) -> BalanceSnapshot:
        category = GrantCategory(category)
        record, was_reset = self.refresh(user_id)
        return BalanceSnapshot(
            user_id=user_id,
            category=category,
            balance=record.remaining_for(category),
            grant_year=record.last_grant_year,
            year_reset=was_reset,
        )

    def get_balances(self, user_id: UUID) -> GrantBalances:
        record, _ = self.refresh(user_id)
        return GrantBalances(
            user_id=user_id,
            remaining_research_grant=record.remaining_research_grant,
            remaining_journal_grant=record.remaining_journal_grant,
            grant_year=record.last_grant_year,
        )

    def default_for(self, category: GrantCategory) -> Decimal:
        return self.defaults[GrantCategory(category)]
