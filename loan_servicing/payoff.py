"""
Payoff Quote Module

Deterministic payoff breakdown for a loan as of a good-through date, plus the
statement service that validates a request, prices it with cached fees and
audits the generated document.

All arithmetic is Decimal in a fixed local context; "today" is always passed
in, never read from the clock inside the calculation.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime, timezone, tzinfo
from decimal import Decimal, ROUND_HALF_UP, localcontext
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .audit import AuditActionType, AuditTrail
from .errors import ConfigurationError, InvalidInputError, NotFoundError
from .loans import LoanManager
from .logging_config import get_logger, log_action
from .money import ZERO, round_cents
from .org_config import FeeSchedule, OrgConfigCache, is_wire_configured


DAYS_PER_YEAR = Decimal(365)
DECIMAL_PRECISION = 28

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

WIRE_NOT_CONFIGURED = (
    "Wire instructions not configured. Please contact your administrator to "
    "complete company settings before generating payoff statements."
)


@dataclass(frozen=True)
class PayoffBreakdown:
    principal_balance: Decimal
    per_diem: Decimal
    days: int
    accrued_interest: Decimal
    escrow_credit: Decimal
    recording_fee: Decimal
    payoff_fee: Decimal
    total_payoff: Decimal
    good_through_date: date

    def to_api(self) -> Dict[str, Any]:
        return {
            "principalBalance": str(self.principal_balance),
            "perDiem": str(self.per_diem),
            "days": self.days,
            "accruedInterest": str(self.accrued_interest),
            "escrowCredit": str(self.escrow_credit),
            "recordingFee": str(self.recording_fee),
            "payoffFee": str(self.payoff_fee),
            "totalPayoff": str(self.total_payoff),
            "goodThroughDate": self.good_through_date.isoformat(),
        }


def _dec(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _as_date(value) -> date:
    # Truncate to midnight
    return value.date() if isinstance(value, datetime) else value


def days_between(start: date, end: date) -> int:
    """Calendar days from start to end, both truncated to midnight"""
    return (_as_date(end) - _as_date(start)).days


def calculate_payoff(loan, good_through_date: date, fees: FeeSchedule, today: date) -> PayoffBreakdown:
    """
    Price a payoff

    Args:
        loan: Anything with current_principal, interest_rate and escrow_balance
        good_through_date: Last day the quote is valid
        fees: Recording and payoff-processing fees
        today: Start of interest accrual

    Interest accrues on the unrounded per diem; the per diem reported is rounded.
    The total is the sum of the rounded line items.
    """
    with localcontext() as ctx:
        ctx.prec = DECIMAL_PRECISION
        ctx.rounding = ROUND_HALF_UP

        principal = _dec(loan.current_principal)
        escrow_balance = _dec(loan.escrow_balance)
        days = days_between(today, good_through_date)

        daily_rate = _dec(loan.interest_rate) / DAYS_PER_YEAR
        per_diem = principal * daily_rate
        accrued_interest = round_cents(per_diem * max(days, 0))

        escrow_credit = round_cents(-escrow_balance) if escrow_balance > 0 else round_cents(ZERO)
        recording_fee = round_cents(_dec(fees.recording))
        payoff_fee = round_cents(_dec(fees.payoff_processing))
        principal_balance = round_cents(principal)

        total = round_cents(
            principal_balance + accrued_interest + escrow_credit + recording_fee + payoff_fee
        )

        return PayoffBreakdown(
            principal_balance=principal_balance,
            per_diem=round_cents(per_diem),
            days=days,
            accrued_interest=accrued_interest,
            escrow_credit=escrow_credit,
            recording_fee=recording_fee,
            payoff_fee=payoff_fee,
            total_payoff=total,
            good_through_date=_as_date(good_through_date),
        )


def parse_good_through_date(value: Any, today: date) -> date:
    """
    Strict YYYY-MM-DD; today is allowed, the past is not

    Raises:
        InvalidInputError: malformed, not a real date, or before today
    """
    if not isinstance(value, str) or not _ISO_DATE.match(value):
        raise InvalidInputError("Invalid date format. Use YYYY-MM-DD", field="goodThroughDate")
    try:
        parsed = date.fromisoformat(value)
    except ValueError:
        raise InvalidInputError("Invalid date format. Use YYYY-MM-DD", field="goodThroughDate")
    if parsed < today:
        raise InvalidInputError("Good through date cannot be in the past", field="goodThroughDate")
    return parsed


def resolve_timezone(name: str) -> tzinfo:
    """
    Raises:
        ConfigurationError: unknown zone name
    """
    if name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ConfigurationError(f"Unknown organization timezone: {name}")


def organization_today(tz: tzinfo) -> date:
    """Current calendar date in the organization's timezone"""
    return datetime.now(tz).date()


class PayoffStatementService:
    """
    Produces payoff quotes for statement generation. Access and CSRF checks
    are done by the caller before generate() is reached.
    """

    def __init__(self, loan_manager: LoanManager, config_cache: OrgConfigCache,
                 audit_trail: AuditTrail, tz: tzinfo = timezone.utc):
        self.loan_manager = loan_manager
        self.config_cache = config_cache
        self.audit_trail = audit_trail
        self.tz = tz
        self.logger = get_logger("servicing.payoff")

    def generate(
        self,
        loan_id: str,
        good_through_date: Any,
        performed_by: str,
        today: Optional[date] = None,
        request_id: Optional[str] = None,
        ip_address: Optional[str] = None
    ) -> PayoffBreakdown:
        """
        Validate, price and audit a payoff statement

        Raises:
            InvalidInputError: bad date, or wire instructions incomplete
            NotFoundError: loan does not exist
        """
        if today is None:
            today = organization_today(self.tz)
        good_through = parse_good_through_date(good_through_date, today)

        config = self.config_cache.get_config()
        if not is_wire_configured(config):
            raise InvalidInputError(WIRE_NOT_CONFIGURED)

        loan = self.loan_manager.get_loan(loan_id)
        if loan is None:
            raise NotFoundError("Loan", loan_id)

        breakdown = calculate_payoff(loan, good_through, config.fees, today)

        log_action(
            self.logger, "info", f"Payoff statement generated for loan {loan.loan_number}",
            user_id=performed_by, action="generate_payoff", resource=f"loan:{loan.id}",
            loan_id=loan.id, request_id=request_id,
            extra={"good_through_date": good_through.isoformat(),
                   "total_payoff": str(breakdown.total_payoff)}
        )
        self.audit_trail.record(
            AuditActionType.DOCUMENT_GENERATED,
            f"Payoff statement generated (good through {good_through.isoformat()})",
            performed_by,
            loan_id=loan.id,
            details={
                "documentType": "payoff_statement",
                "goodThroughDate": good_through.isoformat(),
                "payoffAmount": breakdown.total_payoff,
            },
            request_id=request_id,
            ip_address=ip_address,
        )
        return breakdown
