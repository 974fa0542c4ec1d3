"""
Audit Trail Module

Append-only, hash-chained audit log. Every successful mutation produces one
entry; each entry stores the SHA-256 of its predecessor so that edits or
deletions in the underlying table are detectable.
"""

import hashlib
import json
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union

from .errors import InvalidInputError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord, to_storable


class AuditCategory(Enum):
    """Categories used to group the audit log"""
    PAYMENT = "payment"
    ACCOUNT = "account"
    ESCROW = "escrow"
    COMMUNICATION = "communication"
    DOCUMENT = "document"
    LIFECYCLE = "lifecycle"
    LOAN = "loan"
    COMPLIANCE = "compliance"
    INSURANCE = "insurance"
    COLLECTIONS = "collections"
    INTERNAL = "internal"
    SECURITY = "security"


class AuditActionType(Enum):
    """Every kind of audited action"""
    # Payment actions
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_PHONE = "payment_phone"
    PAYMENT_REVERSED = "payment_reversed"
    PAYMENT_NSF = "payment_nsf"
    LATE_FEE_ASSESSED = "late_fee_assessed"
    LATE_FEE_WAIVED = "late_fee_waived"
    TRANSACTION_CREATED = "transaction_created"

    # Account changes
    NAME_CHANGE = "name_change"
    ADDRESS_CHANGE = "address_change"
    PHONE_CHANGE = "phone_change"
    EMAIL_CHANGE = "email_change"
    BANK_ACCOUNT_ADDED = "bank_account_added"
    BANK_ACCOUNT_REMOVED = "bank_account_removed"
    CARD_ADDED = "card_added"
    CARD_REMOVED = "card_removed"

    # Escrow actions
    ESCROW_ANALYSIS = "escrow_analysis"
    ESCROW_DISBURSEMENT = "escrow_disbursement"
    ESCROW_SHORTAGE = "escrow_shortage"
    ESCROW_SURPLUS = "escrow_surplus"
    TAX_DISBURSEMENT = "tax_disbursement"
    INSURANCE_DISBURSEMENT = "insurance_disbursement"

    # Communication
    CALL_INBOUND = "call_inbound"
    CALL_OUTBOUND = "call_outbound"
    LETTER_SENT = "letter_sent"
    EMAIL_SENT = "email_sent"
    SMS_SENT = "sms_sent"
    MESSAGE_SENT = "message_sent"

    # Documents
    DOCUMENT_UPLOADED = "document_uploaded"
    DOCUMENT_REQUESTED = "document_requested"
    DOCUMENT_GENERATED = "document_generated"
    STATEMENT_GENERATED = "statement_generated"
    DOCUMENT_UPLOAD_INITIATED = "document_upload_initiated"
    DOCUMENT_UPLOAD_COMPLETED = "document_upload_completed"
    DOCUMENT_ACCESSED = "document_accessed"

    # Loan lifecycle
    LOAN_BOARDED = "loan_boarded"
    LOAN_MODIFICATION = "loan_modification"
    FORBEARANCE_START = "forbearance_start"
    FORBEARANCE_END = "forbearance_end"
    LOAN_PAID_OFF = "loan_paid_off"
    LOAN_SOLD = "loan_sold"
    LOAN_TRANSFERRED = "loan_transferred"
    INTEREST_RATE_CHANGE = "interest_rate_change"

    # Loan field updates
    LOAN_UPDATED = "loan_updated"

    # Compliance/Legal
    BANKRUPTCY_FILED = "bankruptcy_filed"
    BANKRUPTCY_DISCHARGED = "bankruptcy_discharged"
    FORECLOSURE_INITIATED = "foreclosure_initiated"
    FORECLOSURE_CANCELLED = "foreclosure_cancelled"

    # Insurance
    INSURANCE_LAPSE = "insurance_lapse"
    INSURANCE_FORCE_PLACED = "insurance_force_placed"
    INSURANCE_UPDATED = "insurance_updated"

    # Collections
    PAYMENT_PLAN_CREATED = "payment_plan_created"
    PAYMENT_PLAN_COMPLETED = "payment_plan_completed"
    PAYMENT_PLAN_CANCELLED = "payment_plan_cancelled"
    COLLECTIONS_ASSIGNED = "collections_assigned"

    # Internal
    NOTE_ADDED = "note_added"
    NOTE_CREATED = "note_created"
    TASK_CREATED = "task_created"
    TASK_COMPLETED = "task_completed"
    TASK_STATUS_CHANGED = "task_status_changed"
    TASK_ASSIGNED = "task_assigned"
    TASK_UPDATED = "task_updated"
    STATUS_CHANGE = "status_change"
    COMPANY_SETTINGS_UPDATED = "company_settings_updated"

    # Security/Auth
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    LOGOUT = "logout"
    PASSWORD_RESET_REQUESTED = "password_reset_requested"
    PASSWORD_RESET_COMPLETED = "password_reset_completed"


_A = AuditActionType
_C = AuditCategory

ACTION_CATEGORIES: Dict[AuditActionType, AuditCategory] = {
    _A.PAYMENT_RECEIVED: _C.PAYMENT,
    _A.PAYMENT_PHONE: _C.PAYMENT,
    _A.PAYMENT_REVERSED: _C.PAYMENT,
    _A.PAYMENT_NSF: _C.PAYMENT,
    _A.LATE_FEE_ASSESSED: _C.PAYMENT,
    _A.LATE_FEE_WAIVED: _C.PAYMENT,
    _A.TRANSACTION_CREATED: _C.PAYMENT,
    _A.NAME_CHANGE: _C.ACCOUNT,
    _A.ADDRESS_CHANGE: _C.ACCOUNT,
    _A.PHONE_CHANGE: _C.ACCOUNT,
    _A.EMAIL_CHANGE: _C.ACCOUNT,
    _A.BANK_ACCOUNT_ADDED: _C.ACCOUNT,
    _A.BANK_ACCOUNT_REMOVED: _C.ACCOUNT,
    _A.CARD_ADDED: _C.ACCOUNT,
    _A.CARD_REMOVED: _C.ACCOUNT,
    _A.ESCROW_ANALYSIS: _C.ESCROW,
    _A.ESCROW_DISBURSEMENT: _C.ESCROW,
    _A.ESCROW_SHORTAGE: _C.ESCROW,
    _A.ESCROW_SURPLUS: _C.ESCROW,
    _A.TAX_DISBURSEMENT: _C.ESCROW,
    _A.INSURANCE_DISBURSEMENT: _C.ESCROW,
    _A.CALL_INBOUND: _C.COMMUNICATION,
    _A.CALL_OUTBOUND: _C.COMMUNICATION,
    _A.LETTER_SENT: _C.COMMUNICATION,
    _A.EMAIL_SENT: _C.COMMUNICATION,
    _A.SMS_SENT: _C.COMMUNICATION,
    _A.MESSAGE_SENT: _C.COMMUNICATION,
    _A.DOCUMENT_UPLOADED: _C.DOCUMENT,
    _A.DOCUMENT_REQUESTED: _C.DOCUMENT,
    _A.DOCUMENT_GENERATED: _C.DOCUMENT,
    _A.STATEMENT_GENERATED: _C.DOCUMENT,
    _A.DOCUMENT_UPLOAD_INITIATED: _C.DOCUMENT,
    _A.DOCUMENT_UPLOAD_COMPLETED: _C.DOCUMENT,
    _A.DOCUMENT_ACCESSED: _C.DOCUMENT,
    _A.LOAN_BOARDED: _C.LIFECYCLE,
    _A.LOAN_MODIFICATION: _C.LIFECYCLE,
    _A.FORBEARANCE_START: _C.LIFECYCLE,
    _A.FORBEARANCE_END: _C.LIFECYCLE,
    _A.LOAN_PAID_OFF: _C.LIFECYCLE,
    _A.LOAN_SOLD: _C.LIFECYCLE,
    _A.LOAN_TRANSFERRED: _C.LIFECYCLE,
    _A.INTEREST_RATE_CHANGE: _C.LIFECYCLE,
    _A.LOAN_UPDATED: _C.LOAN,
    _A.BANKRUPTCY_FILED: _C.COMPLIANCE,
    _A.BANKRUPTCY_DISCHARGED: _C.COMPLIANCE,
    _A.FORECLOSURE_INITIATED: _C.COMPLIANCE,
    _A.FORECLOSURE_CANCELLED: _C.COMPLIANCE,
    _A.INSURANCE_LAPSE: _C.INSURANCE,
    _A.INSURANCE_FORCE_PLACED: _C.INSURANCE,
    _A.INSURANCE_UPDATED: _C.INSURANCE,
    _A.PAYMENT_PLAN_CREATED: _C.COLLECTIONS,
    _A.PAYMENT_PLAN_COMPLETED: _C.COLLECTIONS,
    _A.PAYMENT_PLAN_CANCELLED: _C.COLLECTIONS,
    _A.COLLECTIONS_ASSIGNED: _C.COLLECTIONS,
    _A.NOTE_ADDED: _C.INTERNAL,
    _A.NOTE_CREATED: _C.INTERNAL,
    _A.TASK_CREATED: _C.INTERNAL,
    _A.TASK_COMPLETED: _C.INTERNAL,
    _A.TASK_STATUS_CHANGED: _C.INTERNAL,
    _A.TASK_ASSIGNED: _C.INTERNAL,
    _A.TASK_UPDATED: _C.INTERNAL,
    _A.STATUS_CHANGE: _C.INTERNAL,
    _A.COMPANY_SETTINGS_UPDATED: _C.INTERNAL,
    _A.LOGIN_SUCCESS: _C.SECURITY,
    _A.LOGIN_FAILED: _C.SECURITY,
    _A.LOGOUT: _C.SECURITY,
    _A.PASSWORD_RESET_REQUESTED: _C.SECURITY,
    _A.PASSWORD_RESET_COMPLETED: _C.SECURITY,
}

_uncategorized = [action.value for action in AuditActionType if action not in ACTION_CATEGORIES]
if _uncategorized:
    raise RuntimeError(f"Audit actions without a category: {', '.join(_uncategorized)}")


LEGACY_ACTION_NAMES: Dict[str, AuditActionType] = {
    "LOGIN_SUCCESS": _A.LOGIN_SUCCESS,
    "LOGIN_FAILED": _A.LOGIN_FAILED,
    "LOGOUT": _A.LOGOUT,
    "PASSWORD_RESET_REQUESTED": _A.PASSWORD_RESET_REQUESTED,
}

LEGACY_CATEGORY_NAMES: Dict[str, AuditCategory] = {
    "SECURITY": _C.SECURITY,
    "SETTINGS": _C.INTERNAL,
    "documentation": _C.INTERNAL,
}

PII_FIELDS = frozenset({
    "ssn", "social_security", "tax_id", "ein",
    "password", "password_hash", "secret", "token",
    "credit_card", "card_number", "cvv", "cvc",
    "account_number", "routing_number",
})

REDACTED = "[REDACTED]"


def category_for(action_type: AuditActionType) -> AuditCategory:
    return ACTION_CATEGORIES[action_type]


def normalize_action_type(action_type: Union[AuditActionType, str]) -> AuditActionType:
    """
    Accept an enum member, a current name, or a legacy spelling
    (upper-case, hyphenated). Unknown names are rejected.
    """
    if isinstance(action_type, AuditActionType):
        return action_type
    if action_type in LEGACY_ACTION_NAMES:
        return LEGACY_ACTION_NAMES[action_type]
    try:
        return AuditActionType(action_type.lower().replace("-", "_"))
    except ValueError:
        raise InvalidInputError(f"Unknown audit action type: {action_type}", field="action_type")


def normalize_category(category: Union[AuditCategory, str]) -> AuditCategory:
    if isinstance(category, AuditCategory):
        return category
    if category in LEGACY_CATEGORY_NAMES:
        return LEGACY_CATEGORY_NAMES[category]
    try:
        return AuditCategory(category.lower())
    except ValueError:
        raise InvalidInputError(f"Unknown audit category: {category}", field="category")


def _is_pii_key(key: str) -> bool:
    lowered = key.lower()
    return lowered in PII_FIELDS or "password" in lowered or "secret" in lowered


def mask_pii(details: Dict[str, Any]) -> Dict[str, Any]:
    """Replace sensitive values with [REDACTED], descending into nested objects"""
    masked = {}
    for key, value in details.items():
        if _is_pii_key(key):
            masked[key] = REDACTED
        elif isinstance(value, dict):
            masked[key] = mask_pii(value)
        elif isinstance(value, list):
            masked[key] = [mask_pii(item) if isinstance(item, dict) else item for item in value]
        else:
            masked[key] = value
    return masked


def _canonical(value: Any) -> str:
    return json.dumps(to_storable(value), sort_keys=True, separators=(',', ':'))


def compute_changed_fields(
    old: Dict[str, Any],
    new: Dict[str, Any],
    fields: Optional[Iterable[str]] = None
) -> List[Dict[str, Any]]:
    """
    List the fields whose value differs between old and new

    Only keys present in ``new`` are considered; ``fields`` narrows them further.
    Values are compared by their JSON form, so Decimal("1.0") and "1.0" are equal.
    """
    keys = list(fields) if fields is not None else list(new.keys())
    changes = []
    for key in keys:
        if key not in new:
            continue
        if _canonical(old.get(key)) != _canonical(new[key]):
            changes.append({
                "field": key,
                "old": to_storable(old.get(key)),
                "new": to_storable(new[key]),
            })
    return changes


@dataclass
class AuditEntry(StorageRecord):
    """
    Immutable audit log entry; created_at is the performed-at time
    """
    action_type: AuditActionType
    category: AuditCategory
    description: str
    performed_by: str
    previous_hash: str
    current_hash: str
    loan_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    reference_id: Optional[str] = None
    ip_address: Optional[str] = None

    @property
    def performed_at(self) -> datetime:
        return self.created_at

    def calculate_hash(self) -> str:
        """
        SHA-256 over every field except current_hash
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'action_type': self.action_type.value,
            'category': self.category.value,
            'description': self.description,
            'performed_by': self.performed_by,
            'loan_id': self.loan_id,
            'reference_id': self.reference_id,
            'ip_address': self.ip_address,
            'previous_hash': self.previous_hash,
            'details': to_storable(self.details),
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    def to_api(self) -> Dict[str, Any]:
        """Wire form used by the audit-log endpoints"""
        return {
            "id": self.id,
            "loanId": self.loan_id,
            "actionType": self.action_type.value,
            "category": self.category.value,
            "description": self.description,
            "performedBy": self.performed_by,
            "referenceId": self.reference_id,
            "details": self.details,
            "ipAddress": self.ip_address,
            "performedAt": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEntry':
        """Create AuditEntry from dictionary with proper enum deserialization"""
        data = dict(data)
        if isinstance(data['action_type'], str):
            data['action_type'] = AuditActionType(data['action_type'])
        if isinstance(data['category'], str):
            data['category'] = AuditCategory(data['category'])
        return super().from_dict(data)


class AuditTrail:
    """
    Hash-chained, append-only audit trail
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_log"):
        self.storage = storage
        self.table_name = table_name
        self.logger = get_logger("servicing.audit")
        self._last_hash: Optional[str] = None
        self._lock = threading.Lock()
        self._load_last_hash()

    def _load_last_hash(self, lock: bool = False) -> None:
        """Load the hash of the most recent entry"""
        latest = self.storage.load_latest(self.table_name, lock=lock)
        self._last_hash = latest.get('current_hash') if latest else None

    def _load_entries(self, filters: Optional[Dict[str, Any]] = None) -> List[AuditEntry]:
        if filters:
            rows = self.storage.find(self.table_name, filters)
        else:
            rows = self.storage.load_all(self.table_name)
        entries = [AuditEntry.from_dict(row) for row in rows]
        entries.sort(key=lambda x: x.created_at)
        return entries

    def append(
        self,
        action_type: Union[AuditActionType, str],
        description: str,
        performed_by: str,
        loan_id: Optional[str] = None,
        category: Union[AuditCategory, str, None] = None,
        details: Optional[Dict[str, Any]] = None,
        reference_id: Optional[str] = None,
        request_id: Optional[str] = None,
        ip_address: Optional[str] = None
    ) -> AuditEntry:
        """
        Append one entry to the audit trail

        Args:
            action_type: Action kind; legacy spellings are normalized
            description: Human-readable summary
            performed_by: Display name or id of the actor
            loan_id: Loan the action concerns (None for non-loan actions)
            category: Explicit category; derived from action_type when omitted
            details: Opaque payload; sensitive keys are masked
            reference_id: Id of the related entity (transaction, document, ...)
            request_id: Tracing id, stored in details as _request_id
            ip_address: Caller address

        Returns:
            The stored AuditEntry

        Raises:
            InvalidInputError: unknown action type or category
        """
        action = normalize_action_type(action_type)
        resolved_category = normalize_category(category) if category else category_for(action)

        payload = mask_pii(to_storable(details or {}))
        if request_id:
            payload["_request_id"] = request_id

        # Head read and insert share one transaction that excludes other writers
        with self._lock, self.storage.atomic():
            self._load_last_hash(lock=True)
            now = datetime.now(timezone.utc)

            entry = AuditEntry(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                action_type=action,
                category=resolved_category,
                description=description,
                performed_by=performed_by,
                previous_hash=self._last_hash or "",
                current_hash="",
                loan_id=loan_id,
                details=payload,
                reference_id=reference_id,
                ip_address=ip_address,
            )
            entry.current_hash = entry.calculate_hash()

            self.storage.insert(self.table_name, entry.id, entry.to_dict())
            self._last_hash = entry.current_hash

        return entry

    def record(self, action_type: Union[AuditActionType, str], description: str,
               performed_by: str, **kwargs) -> Optional[AuditEntry]:
        """
        Best-effort append: a failure is logged for alerting and swallowed so
        an already-committed mutation is never reported as failed.

        Returns:
            The stored AuditEntry, or None if the write failed
        """
        try:
            return self.append(action_type, description, performed_by, **kwargs)
        except Exception as e:
            log_action(
                self.logger, "error", f"Failed to write audit entry: {e}",
                user_id=performed_by, action="audit_write_failed",
                loan_id=kwargs.get("loan_id"), request_id=kwargs.get("request_id"),
                extra={
                    "action_type": getattr(action_type, "value", action_type),
                    "reference_id": kwargs.get("reference_id"),
                },
                exc_info=True
            )
            return None

    def get_loan_entries(
        self,
        loan_id: str,
        category: Union[AuditCategory, str, None] = None,
        limit: Optional[int] = None
    ) -> List[AuditEntry]:
        """Entries for one loan, newest first"""
        filters = {'loan_id': loan_id}
        if category:
            filters['category'] = normalize_category(category).value
        entries = self._load_entries(filters)
        entries.reverse()
        if limit:
            entries = entries[:limit]
        return entries

    def get_all_entries(self, limit: Optional[int] = None) -> List[AuditEntry]:
        """All entries, newest first"""
        entries = self._load_entries()
        entries.reverse()
        if limit:
            entries = entries[:limit]
        return entries

    def get_entry(self, entry_id: str) -> Optional[AuditEntry]:
        data = self.storage.load(self.table_name, entry_id)
        if data:
            return AuditEntry.from_dict(data)
        return None

    def count_entries(self) -> int:
        return self.storage.count(self.table_name)

    def get_latest_hash(self) -> Optional[str]:
        return self._last_hash

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_entries': 0,
            'hash_errors': [],
            'chain_breaks': [],
        }

        entries = self._load_entries()
        result['total_entries'] = len(entries)

        previous_hash = ""
        for i, entry in enumerate(entries):
            if not entry.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'entry_id': entry.id,
                    'position': i,
                    'expected_hash': entry.calculate_hash(),
                    'actual_hash': entry.current_hash
                })
            if entry.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'entry_id': entry.id,
                    'position': i,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': entry.previous_hash
                })
            previous_hash = entry.current_hash

        return result
