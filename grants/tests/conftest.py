"""Pytest configuration and fixtures."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from grants.accounting import GrantAccountingService
from grants.clock import FixedClock
from grants.models import GrantCategory, RegisterUserRequest, parse_claim
from grants.service import SubmissionService
from grants.storage import InMemoryStorage


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def accounting(storage, clock):
    return GrantAccountingService(storage=storage, clock=clock)


@pytest.fixture
def service(accounting):
    return SubmissionService(accounting=accounting, sleep=lambda _: None)


@pytest.fixture
def user(accounting):
    return accounting.register_user(RegisterUserRequest(
        email="asha.rao@example.edu",
        name="Asha Rao",
        designation="Assistant Professor",
        phone="9876543210",
    ))


@pytest.fixture
def small_grant_accounting(storage, clock):
    """Accounting with a 100.00 allowance in both categories."""
    return GrantAccountingService(
        storage=storage,
        clock=clock,
        defaults={GrantCategory.RESEARCH: Decimal("100"), GrantCategory.JOURNAL: Decimal("100")},
    )


@pytest.fixture
def claim_factory():
    """Build a complete, valid claim; keyword arguments override top-level fields."""

    def make(
        submitter_id,
        category="research",
        registration_fee="5000",
        travel="3000",
        lodging="2000",
        total="10000",
        **overrides,
    ):
        if category == "research":
            event = {
                "name": "International Conference on Computational Science",
                "event_date": "2024-09-10",
                "venue": "Singapore",
                "deadline": "2024-07-01",
            }
        else:
            event = {"name": "Journal of Applied Numerics", "deadline": "2024-08-15"}

        data = {
            "category": category,
            "submitter_id": str(submitter_id),
            "title": "Adaptive Mesh Refinement for Shallow Water Models",
            "applicant": {"name": "Asha Rao", "phone": "9876543210"},
            "event": event,
            "bank": {
                "account_name": "Asha Rao",
                "account_number": "001122334455",
                "routing_code": "SBIN0001234",
            },
            "charges": {
                "registration_fee": registration_fee,
                "travel": travel,
                "lodging": lodging,
                "total": total,
            },
            "co_author_count": 2,
            "receipt": {
                "ref": "receipt-0001.pdf",
                "filename": "receipt.pdf",
                "content_type": "application/pdf",
            },
            "declaration_accepted": True,
        }
        data.update(overrides)
        return parse_claim(data)

    return make
