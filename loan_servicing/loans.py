"""
Loan Records Module

Loan state read and written by the trust layer: ownership for the access gate,
principal and payment counters for the ledger, and explicit partial updates
by servicing staff.
"""

import re
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .audit import AuditActionType, AuditTrail, compute_changed_fields
from .errors import InvalidInputError, NotFoundError
from .logging_config import get_logger, log_action
from .money import ZERO, to_decimal
from .storage import StorageInterface, StorageRecord


class LoanStatus(Enum):
    ACTIVE = "Active"
    DELINQUENT = "Delinquent"
    FORBEARANCE = "Forbearance"
    PAID_OFF = "Paid Off"
    DEFAULT = "Default"


@dataclass
class Loan(StorageRecord):
    """
    Serviced loan. ``borrower_id`` is the single owning borrower identity.
    """
    loan_number: str
    borrower_id: str
    borrower_name: str
    original_principal: Decimal
    current_principal: Decimal
    interest_rate: Decimal  # Annual rate as a fraction, 0.06 = 6%
    escrow_balance: Decimal = ZERO
    monthly_escrow: Decimal = ZERO
    payments_made: int = 0
    status: LoanStatus = LoanStatus.ACTIVE
    days_past_due: int = 0
    next_due_date: Optional[date] = None

    # Borrower contact
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None

    # Escrow, tax and insurance
    property_tax_annual: Optional[Decimal] = None
    property_tax_exempt: bool = False
    hoi_annual: Optional[Decimal] = None
    hoi_policy_number: Optional[str] = None
    hoi_expiration_date: Optional[date] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        data = dict(data)
        for name in ('original_principal', 'current_principal', 'interest_rate',
                     'escrow_balance', 'monthly_escrow', 'property_tax_annual', 'hoi_annual'):
            if data.get(name) is not None:
                data[name] = Decimal(str(data[name]))
        for name in ('next_due_date', 'hoi_expiration_date'):
            if data.get(name):
                data[name] = date.fromisoformat(data[name])
        data['status'] = LoanStatus(data['status'])
        return super().from_dict(data)

    def to_api(self) -> Dict[str, Any]:
        result = self.to_dict()
        result.pop('updated_at', None)
        return result


# Partial update parsers, one per mutable field

_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _parse_status(value: Any, name: str) -> LoanStatus:
    try:
        return LoanStatus(value)
    except ValueError:
        allowed = ", ".join(s.value for s in LoanStatus)
        raise InvalidInputError(f"{name} must be one of: {allowed}", field=name)


def _parse_non_negative_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidInputError(f"{name} must be a non-negative integer", field=name)
    return value


def _parse_non_negative_amount(value: Any, name: str) -> Decimal:
    return to_decimal(value, name, minimum=ZERO)


def _parse_amount(value: Any, name: str) -> Decimal:
    return to_decimal(value, name)


def _parse_date(value: Any, name: str) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise InvalidInputError(f"{name} must be a date (YYYY-MM-DD)", field=name)


def _parse_bool(value: Any, name: str) -> bool:
    if not isinstance(value, bool):
        raise InvalidInputError(f"{name} must be true or false", field=name)
    return value


def _string_parser(min_length: int = 0, max_length: Optional[int] = None,
                   pattern: Optional[re.Pattern] = None) -> Callable[[Any, str], str]:
    def parse(value: Any, name: str) -> str:
        if not isinstance(value, str):
            raise InvalidInputError(f"{name} must be a string", field=name)
        if len(value) < min_length or (max_length is not None and len(value) > max_length):
            raise InvalidInputError(f"{name} has an invalid length", field=name)
        if pattern is not None and not pattern.match(value):
            raise InvalidInputError(f"{name} is not valid", field=name)
        return value
    return parse


_FIELD_PARSERS: Dict[str, Callable[[Any, str], Any]] = {
    "status": _parse_status,
    "days_past_due": _parse_non_negative_int,
    "monthly_escrow": _parse_non_negative_amount,
    "escrow_balance": _parse_amount,
    "next_due_date": _parse_date,
    "email": _string_parser(pattern=_EMAIL),
    "phone": _string_parser(min_length=10, max_length=20),
    "address": _string_parser(min_length=1, max_length=500),
    "property_tax_annual": _parse_non_negative_amount,
    "property_tax_exempt": _parse_bool,
    "hoi_annual": _parse_non_negative_amount,
    "hoi_policy_number": _string_parser(max_length=100),
    "hoi_expiration_date": _parse_date,
}

MUTABLE_LOAN_FIELDS = frozenset(_FIELD_PARSERS)
NULLABLE_LOAN_FIELDS = frozenset({
    "property_tax_annual", "hoi_annual", "hoi_policy_number", "hoi_expiration_date",
})


@dataclass(frozen=True)
class LoanUpdate:
    """
    Validated partial update. Only fields in MUTABLE_LOAN_FIELDS can appear;
    values are already parsed to their stored types.
    """
    changes: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanUpdate':
        """
        Raises:
            InvalidInputError: unknown or immutable field, bad value, or nothing to update
        """
        if not isinstance(data, dict):
            raise InvalidInputError("Update must be an object")

        unknown = sorted(set(data) - MUTABLE_LOAN_FIELDS)
        if unknown:
            raise InvalidInputError(
                f"Fields cannot be updated: {', '.join(unknown)}", field=unknown[0]
            )
        if not data:
            raise InvalidInputError("No valid fields to update")

        changes = {}
        for name, value in data.items():
            if value is None:
                if name not in NULLABLE_LOAN_FIELDS:
                    raise InvalidInputError(f"{name} cannot be null", field=name)
                changes[name] = None
            else:
                changes[name] = _FIELD_PARSERS[name](value, name)
        return cls(changes=changes)

    def apply_to(self, loan: Loan) -> None:
        for name, value in self.changes.items():
            setattr(loan, name, value)


class LoanManager:
    """
    Reads and writes loan records
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "loans"
        self.logger = get_logger("servicing.loans")

    def board_loan(
        self,
        loan_number: str,
        borrower_id: str,
        borrower_name: str,
        original_principal: Decimal,
        interest_rate: Decimal,
        current_principal: Optional[Decimal] = None,
        escrow_balance: Decimal = ZERO,
        monthly_escrow: Decimal = ZERO,
        next_due_date: Optional[date] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        address: Optional[str] = None,
        performed_by: str = "system"
    ) -> Loan:
        """
        Bring a loan under servicing

        Returns:
            The stored Loan, owned by borrower_id
        """
        original_principal = to_decimal(original_principal, "original_principal", minimum=ZERO)
        interest_rate = to_decimal(interest_rate, "interest_rate", minimum=ZERO)
        if current_principal is None:
            current_principal = original_principal

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_number=loan_number,
            borrower_id=borrower_id,
            borrower_name=borrower_name,
            original_principal=original_principal,
            current_principal=to_decimal(current_principal, "current_principal", minimum=ZERO),
            interest_rate=interest_rate,
            escrow_balance=to_decimal(escrow_balance, "escrow_balance"),
            monthly_escrow=to_decimal(monthly_escrow, "monthly_escrow", minimum=ZERO),
            next_due_date=next_due_date,
            email=email,
            phone=phone,
            address=address,
        )
        self.storage.insert(self.table_name, loan.id, loan.to_dict())

        log_action(
            self.logger, "info", f"Loan boarded: {loan_number}",
            user_id=performed_by, action="board_loan", resource=f"loan:{loan.id}",
            loan_id=loan.id, extra={"borrower_id": borrower_id}
        )
        self.audit_trail.record(
            AuditActionType.LOAN_BOARDED,
            f"Loan {loan_number} boarded",
            performed_by,
            loan_id=loan.id,
            details={"loan_number": loan_number, "original_principal": original_principal},
        )
        return loan

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.table_name, loan_id)
        if data:
            return Loan.from_dict(data)
        return None

    def get_borrower_loans(self, borrower_id: str) -> List[Loan]:
        return [Loan.from_dict(data) for data in self.storage.find(self.table_name, {'borrower_id': borrower_id})]

    def get_borrower_loan_id(self, borrower_id: str) -> Optional[str]:
        """First loan owned by a borrower, for borrower-facing views"""
        loans = self.get_borrower_loans(borrower_id)
        if loans:
            loans.sort(key=lambda x: x.created_at)
            return loans[0].id
        return None

    def is_owned_by(self, user_id: str, loan_id: str) -> bool:
        """Ownership check used by the loan access gate"""
        data = self.storage.load(self.table_name, loan_id)
        return data is not None and data.get('borrower_id') == user_id

    def apply_payment(self, loan_id: str, principal_amount: Decimal) -> Loan:
        """
        Reduce principal and count a payment. Call inside storage.atomic()
        together with the transaction insert.

        Raises:
            NotFoundError: loan does not exist
        """
        data = self.storage.load_for_update(self.table_name, loan_id)
        if data is None:
            raise NotFoundError("Loan", loan_id)

        loan = Loan.from_dict(data)
        loan.current_principal = loan.current_principal - principal_amount
        loan.payments_made += 1
        loan.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, loan.id, loan.to_dict())
        return loan

    def update_loan(
        self,
        loan_id: str,
        update: LoanUpdate,
        performed_by: str,
        request_id: Optional[str] = None,
        ip_address: Optional[str] = None
    ) -> Loan:
        """
        Apply a validated partial update and audit the changed fields

        Raises:
            NotFoundError: loan does not exist
        """
        with self.storage.atomic():
            data = self.storage.load_for_update(self.table_name, loan_id)
            if data is None:
                raise NotFoundError("Loan", loan_id)

            loan = Loan.from_dict(data)
            changed_fields = compute_changed_fields(data, update.changes)
            update.apply_to(loan)
            loan.updated_at = datetime.now(timezone.utc)
            self.storage.save(self.table_name, loan.id, loan.to_dict())

        log_action(
            self.logger, "info", f"Loan updated: {loan.loan_number}",
            user_id=performed_by, action="update_loan", resource=f"loan:{loan.id}",
            loan_id=loan.id, request_id=request_id,
            extra={"fields": sorted(update.changes)}
        )
        self.audit_trail.record(
            AuditActionType.LOAN_UPDATED,
            f"Loan updated: {', '.join(c['field'] for c in changed_fields) or 'no changes'}",
            performed_by,
            loan_id=loan.id,
            details={"changed_fields": changed_fields},
            request_id=request_id,
            ip_address=ip_address,
        )
        return loan
