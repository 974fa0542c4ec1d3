"""
Transaction Ledger Module

Exactly-once creation of loan transactions. A caller-supplied idempotency key
identifies each logical request; the storage layer's unique constraint on that
key decides which of several concurrent requests wins. Payments reduce the
loan's principal in the same atomic unit as the transaction insert.
"""

import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from .audit import AuditActionType, AuditTrail
from .errors import InvalidInputError
from .loans import LoanManager
from .logging_config import get_logger, log_action
from .money import ZERO, round_cents, to_decimal
from .storage import DuplicateRecordError, StorageInterface, StorageRecord


MAX_IDEMPOTENCY_KEY_LENGTH = 255


class TransactionType(Enum):
    """Kinds of loan transactions"""
    PAYMENT = "Payment"
    ESCROW_DISBURSEMENT = "Escrow Disbursement"
    LATE_FEE = "Late Fee"
    NSF_FEE = "NSF Fee"
    ADJUSTMENT = "Adjustment"
    REFUND = "Refund"


class TransactionStatus(Enum):
    # Terminal; corrections are new transactions, never edits
    COMPLETED = "completed"


@dataclass
class Transaction(StorageRecord):
    """
    Loan transaction, created once per idempotency key and never modified
    """
    loan_id: str
    idempotency_key: str
    transaction_type: TransactionType
    amount: Decimal
    status: TransactionStatus = TransactionStatus.COMPLETED
    principal_amount: Optional[Decimal] = None
    interest_amount: Optional[Decimal] = None
    escrow_amount: Optional[Decimal] = None
    description: Optional[str] = None
    reference_number: Optional[str] = None
    created_by: Optional[str] = None

    @property
    def is_payment(self) -> bool:
        return self.transaction_type == TransactionType.PAYMENT

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        data = dict(data)
        data['transaction_type'] = TransactionType(data['transaction_type'])
        data['status'] = TransactionStatus(data['status'])
        for name in ('amount', 'principal_amount', 'interest_amount', 'escrow_amount'):
            if data.get(name) is not None:
                data[name] = Decimal(str(data[name]))
        return super().from_dict(data)

    def to_api(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "loan_id": self.loan_id,
            "type": self.transaction_type.value,
            "amount": str(self.amount),
            "principal_amount": None if self.principal_amount is None else str(self.principal_amount),
            "interest_amount": None if self.interest_amount is None else str(self.interest_amount),
            "escrow_amount": None if self.escrow_amount is None else str(self.escrow_amount),
            "description": self.description,
            "reference_number": self.reference_number,
            "status": self.status.value,
            "idempotency_key": self.idempotency_key,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class TransactionResult:
    """A transaction plus whether this call created it or found it already there"""
    transaction: Transaction
    created: bool

    @property
    def status_code(self) -> int:
        return 201 if self.created else 200


def generate_idempotency_key() -> str:
    """Client-side key: millisecond timestamp plus random suffix"""
    return f"{int(time.time() * 1000)}-{secrets.token_hex(8)}"


def calculate_transaction_totals(transactions: Iterable[Transaction]) -> Dict[str, Any]:
    """
    Sum paid amounts and the principal/interest/escrow breakdown.
    Only positive amounts count towards total_paid.
    """
    total_paid = principal_paid = interest_paid = escrow_paid = ZERO
    count = 0
    for txn in transactions:
        count += 1
        if txn.amount > 0:
            total_paid += txn.amount
        principal_paid += txn.principal_amount or ZERO
        interest_paid += txn.interest_amount or ZERO
        escrow_paid += txn.escrow_amount or ZERO

    return {
        "total_paid": round_cents(total_paid),
        "principal_paid": round_cents(principal_paid),
        "interest_paid": round_cents(interest_paid),
        "escrow_paid": round_cents(escrow_paid),
        "transaction_count": count,
    }


class TransactionLedger:
    """
    Creates loan transactions exactly once per idempotency key
    """

    def __init__(self, storage: StorageInterface, loan_manager: LoanManager, audit_trail: AuditTrail):
        self.storage = storage
        self.loan_manager = loan_manager
        self.audit_trail = audit_trail
        self.table_name = "transactions"
        self.logger = get_logger("servicing.transactions")

    def create_transaction(
        self,
        idempotency_key: Optional[str],
        payload: Dict[str, Any],
        performed_by: str,
        request_id: Optional[str] = None,
        ip_address: Optional[str] = None
    ) -> TransactionResult:
        """
        Create a transaction, or return the one already stored under the key

        Args:
            idempotency_key: Caller-supplied key (the Idempotency-Key header)
            payload: loan_id, type, amount and optional principal_amount,
                interest_amount, escrow_amount, description, reference_number
            performed_by: Staff member recording the transaction
            request_id: Tracing id for logs and the audit entry
            ip_address: Caller address for the audit entry

        Returns:
            TransactionResult; ``created`` is False when the key was seen before

        Raises:
            InvalidInputError: missing key, malformed payload or unknown loan
        """
        key = self._check_key(idempotency_key)

        existing = self._find_by_idempotency_key(key)
        if existing:
            return self._replayed(existing, performed_by, request_id)

        fields = self._validate(payload)
        if self.loan_manager.get_loan(fields['loan_id']) is None:
            raise InvalidInputError("Loan not found", field="loan_id")

        now = datetime.now(timezone.utc)
        transaction = Transaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            idempotency_key=key,
            created_by=performed_by,
            **fields
        )

        try:
            with self.storage.atomic():
                self.storage.insert(
                    self.table_name, transaction.id, transaction.to_dict(), unique_key=key
                )
                if transaction.is_payment:
                    self.loan_manager.apply_payment(
                        transaction.loan_id, transaction.principal_amount or ZERO
                    )
        except DuplicateRecordError:
            # Lost the race to a concurrent request carrying the same key
            winner = self._find_by_idempotency_key(key)
            if winner is None:
                raise
            return self._replayed(winner, performed_by, request_id)

        log_action(
            self.logger, "info", f"Transaction created: {transaction.transaction_type.value}",
            user_id=performed_by, action="create_transaction",
            resource=f"transaction:{transaction.id}", request_id=request_id,
            loan_id=transaction.loan_id,
            extra={
                "transaction_type": transaction.transaction_type.value,
                "amount": str(transaction.amount),
                "idempotency_key": key,
            }
        )

        # Written after commit; a failure here must not undo the transaction
        self.audit_trail.record(
            AuditActionType.TRANSACTION_CREATED,
            f"{transaction.transaction_type.value} of ${transaction.amount} recorded",
            performed_by,
            loan_id=transaction.loan_id,
            reference_id=transaction.id,
            details={
                "type": transaction.transaction_type.value,
                "amount": transaction.amount,
                "principal_amount": transaction.principal_amount,
                "interest_amount": transaction.interest_amount,
                "escrow_amount": transaction.escrow_amount,
                "reference_number": transaction.reference_number,
            },
            request_id=request_id,
            ip_address=ip_address,
        )

        return TransactionResult(transaction=transaction, created=True)

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        data = self.storage.load(self.table_name, transaction_id)
        if data:
            return Transaction.from_dict(data)
        return None

    def get_loan_transactions(self, loan_id: str, limit: Optional[int] = None) -> List[Transaction]:
        """Transactions for a loan, newest first"""
        transactions = [
            Transaction.from_dict(data)
            for data in self.storage.find(self.table_name, {'loan_id': loan_id})
        ]
        transactions.sort(key=lambda x: x.created_at, reverse=True)
        if limit:
            transactions = transactions[:limit]
        return transactions

    def _replayed(self, transaction: Transaction, performed_by: str,
                  request_id: Optional[str]) -> TransactionResult:
        log_action(
            self.logger, "info", "Idempotent replay; returning existing transaction",
            user_id=performed_by, action="replay_transaction",
            resource=f"transaction:{transaction.id}", request_id=request_id,
            loan_id=transaction.loan_id,
            extra={"idempotency_key": transaction.idempotency_key}
        )
        return TransactionResult(transaction=transaction, created=False)

    def _find_by_idempotency_key(self, key: str) -> Optional[Transaction]:
        data = self.storage.find_by_unique_key(self.table_name, key)
        if data:
            return Transaction.from_dict(data)
        return None

    @staticmethod
    def _check_key(idempotency_key: Optional[str]) -> str:
        key = (idempotency_key or "").strip()
        if not key:
            raise InvalidInputError("Idempotency-Key header is required", field="Idempotency-Key")
        if len(key) > MAX_IDEMPOTENCY_KEY_LENGTH:
            raise InvalidInputError(
                f"Idempotency-Key must be at most {MAX_IDEMPOTENCY_KEY_LENGTH} characters",
                field="Idempotency-Key"
            )
        return key

    @staticmethod
    def _validate(payload: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(payload, dict):
            raise InvalidInputError("Transaction payload must be an object")

        loan_id = payload.get('loan_id')
        if not isinstance(loan_id, str) or not loan_id.strip():
            raise InvalidInputError("loan_id is required", field="loan_id")

        try:
            transaction_type = TransactionType(payload.get('type'))
        except ValueError:
            allowed = ", ".join(t.value for t in TransactionType)
            raise InvalidInputError(f"type must be one of: {allowed}", field="type")

        if payload.get('amount') is None:
            raise InvalidInputError("amount is required", field="amount")

        def optional_amount(name: str) -> Optional[Decimal]:
            if payload.get(name) is None:
                return None
            return to_decimal(payload[name], name)

        def optional_text(name: str) -> Optional[str]:
            value = payload.get(name)
            if value is not None and not isinstance(value, str):
                raise InvalidInputError(f"{name} must be a string", field=name)
            return value

        return {
            'loan_id': loan_id.strip(),
            'transaction_type': transaction_type,
            'amount': to_decimal(payload['amount'], 'amount'),
            'principal_amount': optional_amount('principal_amount'),
            'interest_amount': optional_amount('interest_amount'),
            'escrow_amount': optional_amount('escrow_amount'),
            'description': optional_text('description'),
            'reference_number': optional_text('reference_number'),
        }
