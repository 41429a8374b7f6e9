"""
SQLAlchemy-backed ledger store.

Balance changes are single conditional UPDATE statements over integer cents,
so two processes sharing the database cannot both spend the same balance: the
loser's UPDATE matches no row and is reported as InsufficientBalanceError.
The debit and the submission insert share one session transaction.
"""

from contextlib import contextmanager
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterator, Optional
from uuid import UUID as PyUUID

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    literal,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from .exceptions import (
    ConcurrencyConflictError,
    InsufficientBalanceError,
    PersistenceFailureError,
    UserAlreadyExistsError,
    UserNotFoundError,
)
from .logging_config import get_logger
from .models import GrantCategory, GrantRecord, SubmissionRecord
from .storage import GrantStorage, GrantTransaction

logger = get_logger(__name__)


class UUIDString(TypeDecorator):
    """UUID stored as String(36) for cross-database portability."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            return str(value)
        return None

    def process_result_value(self, value, dialect):
        if value is not None:
            return PyUUID(value)
        return None


class Cents(TypeDecorator):
    """
    Money stored as an integer count of cents.

    Comparisons and arithmetic in SQL (``col >= :amount``, ``col - :amount``)
    stay exact on backends such as SQLite that keep NUMERIC as REAL.
    """

    impl = BigInteger
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return int((Decimal(str(value)) * 100).to_integral_value(rounding=ROUND_HALF_UP))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(int(value)).scaleb(-2)


class Base(DeclarativeBase):
    pass


class GrantRecordRow(Base):
    __tablename__ = "grant_records"

    user_id: Mapped[PyUUID] = mapped_column(UUIDString, primary_key=True)
    email: Mapped[str] = mapped_column(String(320), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(200))
    role: Mapped[str] = mapped_column(String(50), default="staff")
    designation: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    remaining_research_grant: Mapped[Decimal] = mapped_column(Cents)
    remaining_journal_grant: Mapped[Decimal] = mapped_column(Cents)
    last_grant_year: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class SubmissionRow(Base):
    __tablename__ = "submissions"
    __table_args__ = (
        UniqueConstraint("submitter_id", "idempotency_key", name="uq_submission_idempotency"),
    )

    # insertion order breaks ties between equal created_at values
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[PyUUID] = mapped_column(UUIDString, unique=True, index=True)
    submitter_id: Mapped[PyUUID] = mapped_column(
        UUIDString, ForeignKey("grant_records.user_id"), index=True
    )
    category: Mapped[str] = mapped_column(String(16))
    title: Mapped[str] = mapped_column(String(500))
    details: Mapped[dict] = mapped_column(JSON)
    total: Mapped[Decimal] = mapped_column(Cents)
    receipt_ref: Mapped[str] = mapped_column(String(1000))
    declaration_accepted: Mapped[bool]
    status: Mapped[str] = mapped_column(String(16))
    remaining_balance_after: Mapped[Decimal] = mapped_column(Cents)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


BALANCE_COLUMNS = {
    GrantCategory.RESEARCH: GrantRecordRow.remaining_research_grant,
    GrantCategory.JOURNAL: GrantRecordRow.remaining_journal_grant,
}

_DETAIL_FIELDS = ("applicant", "event", "bank", "charges", "co_author_count")


def create_storage_engine(database_url: str, echo: bool = False) -> Engine:
    if database_url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url.rstrip("/") == "sqlite:":
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=echo, **kwargs)
    return create_engine(database_url, echo=echo, pool_pre_ping=True)


def _to_record(row: GrantRecordRow) -> GrantRecord:
    return GrantRecord.model_validate(row)


def _to_submission(row: SubmissionRow) -> SubmissionRecord:
    return SubmissionRecord(
        id=row.id,
        submitter_id=row.submitter_id,
        category=row.category,
        title=row.title,
        receipt_ref=row.receipt_ref,
        declaration_accepted=row.declaration_accepted,
        status=row.status,
        remaining_balance_after=row.remaining_balance_after,
        idempotency_key=row.idempotency_key,
        created_at=row.created_at,
        **row.details,
    )


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except OperationalError as e:
        if "locked" in str(e.orig).lower():
            raise ConcurrencyConflictError(f"{operation}: database is locked") from e
        logger.error("storage_operation_failed", operation=operation, error=str(e))
        raise PersistenceFailureError(f"{operation} failed: {e.orig}") from e
    except SQLAlchemyError as e:
        logger.error("storage_operation_failed", operation=operation, error=str(e))
        raise PersistenceFailureError(f"{operation} failed") from e


class _SqlTransaction(GrantTransaction):
    def __init__(self, session: Session):
        self.session = session

    def atomic_debit(
        self, user_id: PyUUID, category: GrantCategory, amount: Decimal, grant_year: int
    ) -> Decimal:
        column = BALANCE_COLUMNS[GrantCategory(category)]
        cents = literal(amount, type_=Cents)
        result = self.session.execute(
            update(GrantRecordRow)
            .where(
                GrantRecordRow.user_id == user_id,
                GrantRecordRow.last_grant_year == grant_year,
                column >= cents,
            )
            .values({column: column - cents})
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return self.session.scalar(select(column).where(GrantRecordRow.user_id == user_id))

        row = self.session.execute(
            select(column, GrantRecordRow.last_grant_year).where(GrantRecordRow.user_id == user_id)
        ).first()
        if row is None:
            raise UserNotFoundError(str(user_id))
        balance, year = row
        if year != grant_year:
            raise ConcurrencyConflictError(
                f"Grant year for {user_id} changed from {grant_year} to {year}"
            )
        raise InsufficientBalanceError(amount, balance, GrantCategory(category).value)

    def save_submission(self, submission: SubmissionRecord) -> SubmissionRecord:
        data = submission.model_dump(mode="json", include=set(_DETAIL_FIELDS))
        self.session.add(SubmissionRow(
            id=submission.id,
            submitter_id=submission.submitter_id,
            category=submission.category.value,
            title=submission.title,
            details=data,
            total=submission.charges.total,
            receipt_ref=submission.receipt_ref,
            declaration_accepted=submission.declaration_accepted,
            status=submission.status.value,
            remaining_balance_after=submission.remaining_balance_after,
            idempotency_key=submission.idempotency_key,
            created_at=submission.created_at,
        ))
        self.session.flush()
        return submission


class SqlAlchemyStorage(GrantStorage):
    def __init__(self, engine: Engine, create_tables: bool = True):
        self.engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        if create_tables:
            Base.metadata.create_all(engine)

    @classmethod
    def from_url(cls, database_url: str, echo: bool = False) -> "SqlAlchemyStorage":
        return cls(create_storage_engine(database_url, echo=echo))

    def create_grant_record(self, record: GrantRecord) -> GrantRecord:
        try:
            with self._session_factory.begin() as session:
                session.add(GrantRecordRow(**record.model_dump(exclude={"email"}), email=record.email.lower()))
        except IntegrityError as e:
            raise UserAlreadyExistsError(record.email) from e
        except SQLAlchemyError as e:
            raise PersistenceFailureError("create_grant_record failed") from e
        return record.model_copy(update={"email": record.email.lower()})

    def get_grant_record(self, user_id: PyUUID) -> Optional[GrantRecord]:
        with _translate_errors("get_grant_record"), self._session_factory() as session:
            row = session.get(GrantRecordRow, user_id)
            return _to_record(row) if row else None

    def get_grant_record_by_email(self, email: str) -> Optional[GrantRecord]:
        with _translate_errors("get_grant_record_by_email"), self._session_factory() as session:
            row = session.scalar(select(GrantRecordRow).where(GrantRecordRow.email == email.lower()))
            return _to_record(row) if row else None

    def reset_if_new_year(
        self, user_id: PyUUID, year: int, defaults: dict[GrantCategory, Decimal]
    ) -> tuple[GrantRecord, bool]:
        with _translate_errors("reset_if_new_year"), self._session_factory.begin() as session:
            result = session.execute(
                update(GrantRecordRow)
                .where(GrantRecordRow.user_id == user_id, GrantRecordRow.last_grant_year != year)
                .values(
                    remaining_research_grant=defaults[GrantCategory.RESEARCH],
                    remaining_journal_grant=defaults[GrantCategory.JOURNAL],
                    last_grant_year=year,
                )
                .execution_options(synchronize_session=False)
            )
            row = session.get(GrantRecordRow, user_id)
            if row is None:
                raise UserNotFoundError(str(user_id))
            return _to_record(row), result.rowcount == 1

    @contextmanager
    def transaction(self) -> Iterator[GrantTransaction]:
        with _translate_errors("transaction"), self._session_factory.begin() as session:
            yield _SqlTransaction(session)

    def get_submission(self, submission_id: PyUUID) -> Optional[SubmissionRecord]:
        with _translate_errors("get_submission"), self._session_factory() as session:
            row = session.scalar(select(SubmissionRow).where(SubmissionRow.id == submission_id))
            return _to_submission(row) if row else None

    def find_submission_by_idempotency_key(
        self, submitter_id: PyUUID, idempotency_key: str
    ) -> Optional[SubmissionRecord]:
        with _translate_errors("find_submission_by_idempotency_key"), self._session_factory() as session:
            row = session.scalar(
                select(SubmissionRow).where(
                    SubmissionRow.submitter_id == submitter_id,
                    SubmissionRow.idempotency_key == idempotency_key,
                )
            )
            return _to_submission(row) if row else None

    def list_submissions(self, submitter_id: PyUUID) -> list[SubmissionRecord]:
        with _translate_errors("list_submissions"), self._session_factory() as session:
            rows = session.scalars(
                select(SubmissionRow)
                .where(SubmissionRow.submitter_id == submitter_id)
                .order_by(SubmissionRow.created_at.desc(), SubmissionRow.seq.desc())
            ).all()
            return [_to_submission(row) for row in rows]
