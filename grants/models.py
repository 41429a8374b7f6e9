from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Annotated, ClassVar, Literal, Optional, Union
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict, TypeAdapter

Money = Annotated[Decimal, Field(ge=0, decimal_places=2)]

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


class GrantCategory(str, Enum):
    RESEARCH = "research"
    JOURNAL = "journal"


CATEGORY_DEFAULTS: dict[GrantCategory, Decimal] = {
    GrantCategory.RESEARCH: Decimal("20000.00"),
    GrantCategory.JOURNAL: Decimal("30000.00"),
}


class SubmissionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"


class SubmissionStage(str, Enum):
    RECEIVED = "RECEIVED"
    BALANCE_FETCHED = "BALANCE_FETCHED"
    VALIDATED = "VALIDATED"
    COMMITTED = "COMMITTED"
    REJECTED = "REJECTED"


class RegisterUserRequest(BaseModel):
    email: str = Field(..., min_length=3, description="Unique login email")
    name: str
    role: str = Field(default="staff")
    designation: Optional[str] = None
    phone: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "email": "asha.rao@example.edu",
            "name": "Asha Rao",
            "role": "staff",
            "designation": "Assistant Professor",
            "phone": "+91-9876543210"
        }
    })


class GrantRecord(BaseModel):
    user_id: UUID
    email: str
    name: str
    role: str = "staff"
    designation: Optional[str] = None
    phone: Optional[str] = None
    remaining_research_grant: Decimal
    remaining_journal_grant: Decimal
    last_grant_year: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def remaining_for(self, category: GrantCategory) -> Decimal:
        if GrantCategory(category) == GrantCategory.RESEARCH:
            return self.remaining_research_grant
        return self.remaining_journal_grant


class ApplicantInfo(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None


class EventInfo(BaseModel):
    name: Optional[str] = None
    event_date: Optional[date] = None
    venue: Optional[str] = None
    deadline: Optional[date] = None


class BankInfo(BaseModel):
    account_name: Optional[str] = None
    account_number: Optional[str] = None
    routing_code: Optional[str] = None


class Charges(BaseModel):
    registration_fee: Money = Decimal("0.00")
    travel: Money = Decimal("0.00")
    lodging: Money = Decimal("0.00")
    total: Money = Decimal("0.00")

    @property
    def itemized_sum(self) -> Decimal:
        return self.registration_fee + self.travel + self.lodging


class ReceiptAttachment(BaseModel):
    ref: str = Field(..., description="Opaque pointer returned by the document store")
    filename: Optional[str] = None
    content_type: Optional[str] = None
    size_bytes: Optional[int] = None


class ClaimBase(BaseModel):
    submitter_id: UUID
    title: Optional[str] = None
    applicant: Optional[ApplicantInfo] = None
    event: EventInfo = Field(default_factory=EventInfo)
    bank: BankInfo = Field(default_factory=BankInfo)
    charges: Charges = Field(default_factory=Charges)
    co_author_count: int = Field(default=0, ge=0)
    receipt: Optional[ReceiptAttachment] = None
    declaration_accepted: bool = False
    idempotency_key: Optional[str] = Field(default=None, description="Unique key to prevent duplicates")

    required_event_fields: ClassVar[tuple[str, ...]] = ()

    @property
    def grant_category(self) -> GrantCategory:
        return GrantCategory(self.category)


class ResearchClaim(ClaimBase):
    """Conference paper claim; the event is the conference."""

    category: Literal["research"] = "research"
    required_event_fields: ClassVar[tuple[str, ...]] = ("name", "event_date", "venue", "deadline")


class JournalClaim(ClaimBase):
    """Journal publication claim; the event is the journal, which has no venue or date."""

    category: Literal["journal"] = "journal"
    required_event_fields: ClassVar[tuple[str, ...]] = ("name", "deadline")


Claim = Annotated[Union[ResearchClaim, JournalClaim], Field(discriminator="category")]

_claim_adapter = TypeAdapter(Claim)


def parse_claim(data: dict) -> Union[ResearchClaim, JournalClaim]:
    return _claim_adapter.validate_python(data)


class SubmissionRecord(BaseModel):
    id: UUID
    submitter_id: UUID
    category: GrantCategory
    title: str
    applicant: Optional[ApplicantInfo] = None
    event: EventInfo
    bank: BankInfo
    charges: Charges
    co_author_count: int = 0
    receipt_ref: str
    declaration_accepted: bool
    status: SubmissionStatus = SubmissionStatus.PENDING
    remaining_balance_after: Decimal
    idempotency_key: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BalanceSnapshot(BaseModel):
    user_id: UUID
    category: GrantCategory
    balance: Decimal
    grant_year: int
    year_reset: bool = False


class GrantBalances(BaseModel):
    user_id: UUID
    remaining_research_grant: Decimal
    remaining_journal_grant: Decimal
    grant_year: int


class ValidationResult(BaseModel):
    ok: bool
    code: Optional[str] = None
    reason: Optional[str] = None


class SubmissionResponse(BaseModel):
    submission: SubmissionRecord
    remaining_balance_after: Decimal
    message: str


class SubmissionHistoryResponse(BaseModel):
    user_id: UUID
    submissions: list[SubmissionRecord]
    total_count: int
    balances: GrantBalances
