"""
Shared fixtures for the servicing test suite
"""

import logging
from decimal import Decimal

import jwt
import pytest

from loan_servicing.config import ServicingConfig
from loan_servicing.storage import InMemoryStorage
from loan_servicing.audit import AuditTrail
from loan_servicing.loans import LoanManager


JWT_SECRET = "test-jwt-secret-0123456789abcdef0123456789"
CSRF_SECRET = "test-csrf-secret-0123456789abcdef012345678"


def make_config(**overrides) -> ServicingConfig:
    values = {
        "jwt_secret": JWT_SECRET,
        "csrf_secret": CSRF_SECRET,
        "database_url": "memory://",
        "enable_rate_limiting": True,
        "redis_url": "",
    }
    values.update(overrides)
    return ServicingConfig(**values)


def make_token(user_id: str, role: str, name: str = None, secret: str = JWT_SECRET, **claims) -> str:
    payload = {"sub": user_id, "role": role, "name": name or user_id}
    payload.update(claims)
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture
def servicing_caplog(caplog, monkeypatch):
    """caplog that still sees servicing.* records after create_app() stops propagation"""
    monkeypatch.setattr(logging.getLogger("servicing"), "propagate", True)
    return caplog


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def loan_manager(storage, audit_trail):
    return LoanManager(storage, audit_trail)


@pytest.fixture
def loan(loan_manager):
    """Borrower-owned loan used by most scenarios"""
    return loan_manager.board_loan(
        loan_number="LN-1001",
        borrower_id="borrower-1",
        borrower_name="Jane Borrower",
        original_principal=Decimal("250000.00"),
        current_principal=Decimal("200000.00"),
        interest_rate=Decimal("0.06"),
        escrow_balance=Decimal("500.00"),
        monthly_escrow=Decimal("350.00"),
    )
