import time
from typing import Callable, Optional, Union
from uuid import UUID, uuid4

import structlog

from .accounting import GrantAccountingService
from .clock import Clock
from .config import Settings, get_settings
from .documents import DocumentStore, LocalDocumentStore
from .exceptions import (
    ClaimValidationError,
    RetryableError,
    SubmissionNotFoundError,
    UploadRejectedError,
    UserNotFoundError,
)
from .locks import KeyedLock
from .logging_config import get_logger
from .models import (
    BalanceSnapshot,
    GrantCategory,
    JournalClaim,
    ResearchClaim,
    SubmissionHistoryResponse,
    SubmissionRecord,
    SubmissionResponse,
    SubmissionStage,
    SubmissionStatus,
)
from .sql_storage import SqlAlchemyStorage
from .storage import GrantStorage, InMemoryStorage
from .validator import SubmissionValidator

logger = get_logger(__name__)


class SubmissionService:
    """
    Accepts or rejects grant claims.

    A claim moves RECEIVED -> BALANCE_FETCHED -> VALIDATED -> COMMITTED, or to
    REJECTED at any gate. The balance read, validation and debit run while
    holding the (submitter, category) lock, and the debit plus the submission
    write share one storage transaction, so a rejected or failed claim leaves
    no trace.
    """

    def __init__(
        self,
        accounting: Optional[GrantAccountingService] = None,
        validator: Optional[SubmissionValidator] = None,
        locks: Optional[KeyedLock] = None,
        documents: Optional[DocumentStore] = None,
        max_retries: int = 3,
        retry_backoff_seconds: float = 0.05,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.accounting = accounting or GrantAccountingService()
        self.validator = validator or SubmissionValidator()
        self.locks = locks or KeyedLock()
        self.documents = documents
        self.max_retries = max_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self._sleep = sleep

    @property
    def storage(self) -> GrantStorage:
        return self.accounting.storage

    @property
    def clock(self) -> Clock:
        return self.accounting.clock

    def submit(self, claim: Union[ResearchClaim, JournalClaim]) -> SubmissionResponse:
        submission_id = uuid4()
        category = claim.grant_category
        with structlog.contextvars.bound_contextvars(
            submission_id=str(submission_id),
            submitter_id=str(claim.submitter_id),
            category=category.value,
        ):
            self._stage(SubmissionStage.RECEIVED)
            receipt_on_file = self._receipt_on_file(claim)
            attempt = 0
            while True:
                try:
                    return self._submit_once(claim, submission_id, receipt_on_file)
                except RetryableError as e:
                    committed = self._find_committed(submission_id)
                    if committed:
                        logger.warning("submission_commit_confirmed_after_error", error_code=e.code)
                        return self._accepted(committed, reread=False)
                    if attempt >= self.max_retries:
                        self._stage(SubmissionStage.REJECTED, error_code=e.code, reason=str(e))
                        raise
                    delay = self.retry_backoff_seconds * (2 ** attempt)
                    logger.warning(
                        "submission_retry",
                        attempt=attempt + 1,
                        delay_seconds=delay,
                        error_code=e.code,
                        reason=str(e),
                    )
                    self._sleep(delay)
                    attempt += 1

    def _submit_once(
        self,
        claim: Union[ResearchClaim, JournalClaim],
        submission_id: UUID,
        receipt_on_file: bool = True,
    ) -> SubmissionResponse:
        category = claim.grant_category
        with self.locks.hold((claim.submitter_id, category)):
            if claim.idempotency_key:
                existing = self.storage.find_submission_by_idempotency_key(
                    claim.submitter_id, claim.idempotency_key
                )
                if existing:
                    logger.info("submission_idempotent_return", existing_id=str(existing.id))
                    return SubmissionResponse(
                        submission=existing,
                        remaining_balance_after=existing.remaining_balance_after,
                        message="Submission already exists (idempotent return)",
                    )

            try:
                snapshot = self.accounting.get_current_balance(claim.submitter_id, category)
                self._stage(SubmissionStage.BALANCE_FETCHED, balance=str(snapshot.balance))

                self.validator.validate(claim, snapshot.balance)
                if not receipt_on_file:
                    raise UploadRejectedError(
                        f"receipt {claim.receipt.ref!r} was not uploaded by the submitter",
                        filename=claim.receipt.filename,
                    )
                self._stage(SubmissionStage.VALIDATED)

                with self.storage.transaction() as tx:
                    balance_after = tx.atomic_debit(
                        claim.submitter_id, category, claim.charges.total, snapshot.grant_year
                    )
                    submission = tx.save_submission(
                        self._build_record(claim, submission_id, balance_after)
                    )
            except (ClaimValidationError, UserNotFoundError) as e:
                self._stage(SubmissionStage.REJECTED, error_code=e.code, reason=str(e))
                raise

            self._stage(
                SubmissionStage.COMMITTED,
                amount=str(claim.charges.total),
                remaining_balance_after=str(balance_after),
            )
            return self._accepted(submission)

    def _build_record(
        self,
        claim: Union[ResearchClaim, JournalClaim],
        submission_id: UUID,
        balance_after,
    ) -> SubmissionRecord:
        return SubmissionRecord(
            id=submission_id,
            submitter_id=claim.submitter_id,
            category=claim.grant_category,
            title=claim.title.strip(),
            applicant=claim.applicant,
            event=claim.event,
            bank=claim.bank,
            charges=claim.charges,
            co_author_count=claim.co_author_count,
            receipt_ref=claim.receipt.ref,
            declaration_accepted=claim.declaration_accepted,
            status=SubmissionStatus.PENDING,
            remaining_balance_after=balance_after,
            idempotency_key=claim.idempotency_key,
            created_at=self.clock.now(),
        )

    def _accepted(self, submission: SubmissionRecord, reread: bool = True) -> SubmissionResponse:
        # Without the keyed lock a re-read may include later claims; report the stamp.
        remaining = submission.remaining_balance_after
        record = None
        if reread:
            try:
                record = self.storage.get_grant_record(submission.submitter_id)
            except RetryableError as e:
                logger.warning("balance_reread_failed", error_code=e.code)
        if record is not None:
            current = record.remaining_for(submission.category)
            if current != remaining:
                logger.error(
                    "balance_changed_after_commit",
                    stamped=str(remaining),
                    current=str(current),
                )
            remaining = current

        label = "Research" if submission.category == GrantCategory.RESEARCH else "Journal"
        return SubmissionResponse(
            submission=submission,
            remaining_balance_after=remaining,
            message=f"{label} grant claim submitted. Remaining: {remaining}",
        )

    def _receipt_on_file(self, claim: Union[ResearchClaim, JournalClaim]) -> bool:
        """Resolve the receipt ref against the document store, before any lock is taken."""
        if self.documents is None or claim.receipt is None or not claim.receipt.ref:
            return True
        return self.documents.exists(claim.submitter_id, claim.receipt.ref)

    def _find_committed(self, submission_id: UUID) -> Optional[SubmissionRecord]:
        try:
            return self.storage.get_submission(submission_id)
        except RetryableError as e:
            logger.warning("commit_check_failed", error_code=e.code)
            return None

    def _stage(self, stage: SubmissionStage, **fields) -> None:
        logger.info("submission_stage", stage=stage.value, **fields)

    def get_current_balance(self, user_id: UUID, category: GrantCategory) -> BalanceSnapshot:
        return self.accounting.get_current_balance(user_id, category)

    def get_submission(self, submission_id: UUID) -> SubmissionRecord:
        submission = self.storage.get_submission(submission_id)
        if not submission:
            raise SubmissionNotFoundError(submission_id)
        return submission

    def list_submissions(
        self, user_id: UUID, limit: int = 50, offset: int = 0
    ) -> SubmissionHistoryResponse:
        balances = self.accounting.get_balances(user_id)
        submissions = self.storage.list_submissions(user_id)
        return SubmissionHistoryResponse(
            user_id=user_id,
            submissions=submissions[offset:offset + limit],
            total_count=len(submissions),
            balances=balances,
        )


def build_storage(settings: Settings) -> GrantStorage:
    if settings.database_url:
        return SqlAlchemyStorage.from_url(settings.database_url)
    return InMemoryStorage()


def build_submission_service(
    settings: Optional[Settings] = None,
    clock: Optional[Clock] = None,
    storage: Optional[GrantStorage] = None,
    documents: Optional[DocumentStore] = None,
) -> SubmissionService:
    settings = settings or get_settings()
    documents = documents or LocalDocumentStore(
        settings.receipt_dir, max_bytes=settings.max_receipt_bytes
    )
    accounting = GrantAccountingService(
        storage=storage or build_storage(settings),
        clock=clock,
        defaults={
            GrantCategory.RESEARCH: settings.research_default,
            GrantCategory.JOURNAL: settings.journal_default,
        },
    )
    return SubmissionService(
        accounting=accounting,
        locks=KeyedLock(timeout=settings.lock_timeout_seconds),
        documents=documents,
        max_retries=settings.max_retries,
        retry_backoff_seconds=settings.retry_backoff_seconds,
    )
