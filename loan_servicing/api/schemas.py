"""
Pydantic schemas for API requests
"""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from ..money import round_cents
from ..org_config import CompanySettings


class PayoffRequest(BaseModel):
    goodThroughDate: str = Field(..., description="Quote valid through this date (YYYY-MM-DD)")


class CompanySettingsRequest(BaseModel):
    company_name: str = Field(..., min_length=1, max_length=255)
    company_tagline: Optional[str] = Field(None, max_length=255)
    contact_email: str = Field(..., max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    contact_phone: str = Field(..., min_length=10, max_length=50)
    wire_bank_name: Optional[str] = Field(None, max_length=255)
    wire_routing_number: Optional[str] = Field(None, pattern=r"^(\d{9})?$")
    wire_account_number: Optional[str] = Field(None, max_length=50)
    wire_account_name: Optional[str] = Field(None, max_length=255)
    fee_recording: Decimal = Field(..., ge=0, le=10000)
    fee_payoff_processing: Decimal = Field(..., ge=0, le=10000)

    def to_settings(self) -> CompanySettings:
        # Empty strings clear optional fields
        return CompanySettings(
            company_name=self.company_name,
            company_tagline=self.company_tagline or None,
            contact_email=self.contact_email,
            contact_phone=self.contact_phone,
            wire_bank_name=self.wire_bank_name or None,
            wire_routing_number=self.wire_routing_number or None,
            wire_account_number=self.wire_account_number or None,
            wire_account_name=self.wire_account_name or None,
            fee_recording=round_cents(self.fee_recording),
            fee_payoff_processing=round_cents(self.fee_payoff_processing),
        )
