"""
Organization Configuration Module

The single company-settings row (branding, wire instructions, payoff fees)
and a process-local TTL cache in front of it. Writers invalidate the cache.
"""

import threading
import time
from dataclasses import dataclass, asdict, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from .audit import AuditActionType, AuditCategory, AuditTrail, compute_changed_fields
from .logging_config import get_logger, log_action
from .storage import StorageInterface, to_storable


DEFAULT_TTL_SECONDS = 60


@dataclass(frozen=True)
class WireInstructions:
    bank_name: str = ""
    routing_number: str = ""
    account_number: str = ""
    account_name: str = ""

    @property
    def is_configured(self) -> bool:
        return all((self.bank_name, self.routing_number, self.account_number, self.account_name))


@dataclass(frozen=True)
class FeeSchedule:
    recording: Decimal = Decimal("75.00")
    payoff_processing: Decimal = Decimal("35.00")


@dataclass(frozen=True)
class OrgConfig:
    """Read-side view of company settings used by document generation"""
    name: str
    tagline: str
    email: str
    phone: str
    wire: WireInstructions
    fees: FeeSchedule


DEFAULT_ORG_CONFIG = OrgConfig(
    name="ServState",
    tagline="Mortgage Servicing Solutions",
    email="support@servstate.com",
    phone="(800) 555-0100",
    wire=WireInstructions(),
    fees=FeeSchedule(),
)


def is_wire_configured(config: OrgConfig) -> bool:
    """All four wire fields must be present before a payoff quote can be issued"""
    return config.wire.is_configured


@dataclass(frozen=True)
class CompanySettings:
    """The stored settings row"""
    company_name: str
    contact_email: str
    contact_phone: str
    fee_recording: Decimal
    fee_payoff_processing: Decimal
    company_tagline: Optional[str] = None
    wire_bank_name: Optional[str] = None
    wire_routing_number: Optional[str] = None
    wire_account_number: Optional[str] = None
    wire_account_name: Optional[str] = None
    updated_by: Optional[str] = None
    updated_at: Optional[datetime] = None

    def to_org_config(self) -> OrgConfig:
        return OrgConfig(
            name=self.company_name,
            tagline=self.company_tagline or DEFAULT_ORG_CONFIG.tagline,
            email=self.contact_email,
            phone=self.contact_phone,
            wire=WireInstructions(
                bank_name=self.wire_bank_name or "",
                routing_number=self.wire_routing_number or "",
                account_number=self.wire_account_number or "",
                account_name=self.wire_account_name or "",
            ),
            fees=FeeSchedule(
                recording=self.fee_recording,
                payoff_processing=self.fee_payoff_processing,
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return to_storable(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CompanySettings':
        data = dict(data)
        data['fee_recording'] = Decimal(str(data['fee_recording']))
        data['fee_payoff_processing'] = Decimal(str(data['fee_payoff_processing']))
        if isinstance(data.get('updated_at'), str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        return cls(**data)


DEFAULT_COMPANY_SETTINGS = CompanySettings(
    company_name=DEFAULT_ORG_CONFIG.name,
    company_tagline=DEFAULT_ORG_CONFIG.tagline,
    contact_email=DEFAULT_ORG_CONFIG.email,
    contact_phone=DEFAULT_ORG_CONFIG.phone,
    fee_recording=DEFAULT_ORG_CONFIG.fees.recording,
    fee_payoff_processing=DEFAULT_ORG_CONFIG.fees.payoff_processing,
)


class CompanySettingsStore:
    """Persists the single settings row"""

    ROW_ID = "company"

    def __init__(self, storage: StorageInterface, table_name: str = "company_settings"):
        self.storage = storage
        self.table_name = table_name

    def load(self) -> Optional[CompanySettings]:
        data = self.storage.load(self.table_name, self.ROW_ID)
        if data:
            return CompanySettings.from_dict(data)
        return None

    def load_org_config(self) -> Optional[OrgConfig]:
        settings = self.load()
        return settings.to_org_config() if settings else None

    def save(self, settings: CompanySettings) -> None:
        self.storage.save(self.table_name, self.ROW_ID, settings.to_dict())


class OrgConfigCache:
    """
    TTL cache for OrgConfig, one per process.

    ``loader`` returns the stored config or None; None means the default is
    served (and cached like any other value).
    """

    def __init__(
        self,
        loader: Callable[[], Optional[OrgConfig]],
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        default: OrgConfig = DEFAULT_ORG_CONFIG
    ):
        self._loader = loader
        self._ttl = ttl_seconds
        self._clock = clock
        self._default = default
        self._value: Optional[OrgConfig] = None
        self._expires_at = 0.0
        self._lock = threading.Lock()

    def get_config(self) -> OrgConfig:
        with self._lock:
            now = self._clock()
            if self._value is not None and now < self._expires_at:
                return self._value

            self._value = self._loader() or self._default
            self._expires_at = now + self._ttl
            return self._value

    def invalidate(self) -> None:
        """Drop the cached value; the next get_config() reloads"""
        with self._lock:
            self._value = None
            self._expires_at = 0.0


_AUDITED_SNAPSHOT_FIELDS = ("company_name", "contact_email", "fee_recording", "fee_payoff_processing")


class CompanySettingsManager:
    """
    Reads and replaces company settings
    """

    def __init__(self, store: CompanySettingsStore, cache: OrgConfigCache, audit_trail: AuditTrail):
        self.store = store
        self.cache = cache
        self.audit_trail = audit_trail
        self.logger = get_logger("servicing.org_config")

    def get_settings(self) -> CompanySettings:
        """Stored row, or the defaults when none has been saved"""
        return self.store.load() or DEFAULT_COMPANY_SETTINGS

    def update(
        self,
        settings: CompanySettings,
        performed_by: str,
        performed_by_id: Optional[str] = None,
        request_id: Optional[str] = None,
        ip_address: Optional[str] = None
    ) -> CompanySettings:
        """
        Replace the settings row, invalidate the cache, and audit the change.
        Wire values are never copied into the audit entry, only their field names.
        """
        existing = self.store.load()
        updated = replace(
            settings,
            updated_by=performed_by_id or performed_by,
            updated_at=datetime.now(timezone.utc),
        )
        self.store.save(updated)
        self.cache.invalidate()

        new_values = updated.to_dict()
        new_values.pop('updated_by')
        new_values.pop('updated_at')
        # First save is compared against the defaults it replaces
        old_values = (existing or DEFAULT_COMPANY_SETTINGS).to_dict()
        changed = [c['field'] for c in compute_changed_fields(old_values, new_values)]

        log_action(
            self.logger, "info", "Company settings updated",
            user_id=performed_by_id or performed_by, action="update_company_settings",
            resource="company_settings", request_id=request_id,
            extra={"changed_fields": changed}
        )
        self.audit_trail.record(
            AuditActionType.COMPANY_SETTINGS_UPDATED,
            f"Company settings updated: {', '.join(changed) or 'no changes'}",
            performed_by,
            category=AuditCategory.INTERNAL,
            details={
                "changedFields": changed,
                "before": {k: old_values.get(k) for k in _AUDITED_SNAPSHOT_FIELDS} if existing else None,
                "after": {k: new_values.get(k) for k in _AUDITED_SNAPSHOT_FIELDS},
            },
            request_id=request_id,
            ip_address=ip_address,
        )
        return updated
