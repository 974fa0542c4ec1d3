"""
Tests for payoff calculation and statement generation
"""

from dataclasses import replace
from datetime import date, datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest

from loan_servicing.audit import AuditActionType
from loan_servicing.errors import ConfigurationError, InvalidInputError, NotFoundError
from loan_servicing.org_config import (
    DEFAULT_ORG_CONFIG, FeeSchedule, OrgConfigCache, WireInstructions
)
from loan_servicing.payoff import (
    PayoffStatementService, calculate_payoff, days_between,
    parse_good_through_date, resolve_timezone
)


TODAY = date(2025, 1, 1)
FEES = FeeSchedule(recording=Decimal("75.00"), payoff_processing=Decimal("35.00"))


def make_loan(principal="200000.00", rate="0.06", escrow="500.00"):
    return SimpleNamespace(
        current_principal=Decimal(principal),
        interest_rate=Decimal(rate),
        escrow_balance=Decimal(escrow),
    )


class TestCalculatePayoff:

    def test_thirty_day_quote(self):
        result = calculate_payoff(make_loan(), date(2025, 1, 31), FEES, TODAY)

        assert result.days == 30
        assert result.per_diem == Decimal("32.88")
        assert result.accrued_interest == Decimal("986.30")
        assert result.escrow_credit == Decimal("-500.00")
        assert result.recording_fee == Decimal("75.00")
        assert result.payoff_fee == Decimal("35.00")
        assert result.total_payoff == Decimal("200596.30")

    def test_total_is_sum_of_line_items(self):
        result = calculate_payoff(make_loan("123456.78", "0.0725", "1234.56"), date(2025, 3, 17), FEES, TODAY)

        assert result.total_payoff == (
            result.principal_balance + result.accrued_interest + result.escrow_credit
            + result.recording_fee + result.payoff_fee
        )

    def test_deterministic(self):
        first = calculate_payoff(make_loan(), date(2025, 2, 14), FEES, TODAY)
        second = calculate_payoff(make_loan(), date(2025, 2, 14), FEES, TODAY)

        assert first == second

    def test_same_day_accrues_nothing(self):
        result = calculate_payoff(make_loan(), TODAY, FEES, TODAY)

        assert result.days == 0
        assert result.accrued_interest == Decimal("0.00")
        assert result.total_payoff == Decimal("199610.00")

    @pytest.mark.parametrize("escrow", ["0.00", "-125.00"])
    def test_no_credit_without_positive_escrow(self, escrow):
        result = calculate_payoff(make_loan(escrow=escrow), TODAY, FEES, TODAY)

        assert result.escrow_credit == Decimal("0.00")

    def test_datetimes_truncated_to_midnight(self):
        assert days_between(
            datetime(2025, 1, 1, 23, 59, tzinfo=timezone.utc),
            datetime(2025, 1, 2, 0, 1, tzinfo=timezone.utc),
        ) == 1

    def test_to_api(self):
        api = calculate_payoff(make_loan(), date(2025, 1, 31), FEES, TODAY).to_api()

        assert api["totalPayoff"] == "200596.30"
        assert api["perDiem"] == "32.88"
        assert api["goodThroughDate"] == "2025-01-31"
        assert api["days"] == 30


class TestGoodThroughDate:

    def test_today_allowed(self):
        assert parse_good_through_date("2025-01-01", TODAY) == TODAY

    @pytest.mark.parametrize("value", ["2025-1-31", "01/31/2025", "2025-02-30", "", None, 20250131, "2025-01-31T00:00"])
    def test_malformed_rejected(self, value):
        with pytest.raises(InvalidInputError) as exc_info:
            parse_good_through_date(value, TODAY)
        assert exc_info.value.field == "goodThroughDate"

    def test_past_rejected(self):
        with pytest.raises(InvalidInputError) as exc_info:
            parse_good_through_date("2024-12-31", TODAY)
        assert "past" in exc_info.value.message


class TestTimezone:

    def test_utc(self):
        assert resolve_timezone("UTC") is timezone.utc

    def test_unknown_zone(self):
        with pytest.raises(ConfigurationError):
            resolve_timezone("Mars/Olympus_Mons")


WIRED = replace(
    DEFAULT_ORG_CONFIG,
    wire=WireInstructions(
        bank_name="First Bank", routing_number="021000021",
        account_number="123456789", account_name="Servicing Trust"
    ),
)


class TestPayoffStatementService:

    def _service(self, loan_manager, audit_trail, config=WIRED):
        cache = OrgConfigCache(lambda: config)
        return PayoffStatementService(loan_manager, cache, audit_trail)

    def test_generate_audits_document(self, loan_manager, audit_trail, loan):
        service = self._service(loan_manager, audit_trail)

        result = service.generate(loan.id, "2025-01-31", "Sam Servicer", today=TODAY, request_id="req-3")

        assert result.total_payoff == Decimal("200596.30")
        entry = audit_trail.get_loan_entries(loan.id)[0]
        assert entry.action_type is AuditActionType.DOCUMENT_GENERATED
        assert entry.details["documentType"] == "payoff_statement"
        assert entry.details["goodThroughDate"] == "2025-01-31"
        assert entry.details["payoffAmount"] == "200596.30"

    def test_wire_instructions_required(self, loan_manager, audit_trail, loan):
        service = self._service(loan_manager, audit_trail, config=DEFAULT_ORG_CONFIG)

        with pytest.raises(InvalidInputError) as exc_info:
            service.generate(loan.id, "2025-01-31", "Sam", today=TODAY)

        assert "Wire instructions not configured" in exc_info.value.message

    def test_partial_wire_instructions_rejected(self, loan_manager, audit_trail, loan):
        partial = replace(WIRED, wire=replace(WIRED.wire, account_name=""))
        service = self._service(loan_manager, audit_trail, config=partial)

        with pytest.raises(InvalidInputError):
            service.generate(loan.id, "2025-01-31", "Sam", today=TODAY)

    def test_date_checked_before_loan(self, loan_manager, audit_trail):
        service = self._service(loan_manager, audit_trail)

        with pytest.raises(InvalidInputError):
            service.generate("missing", "yesterday", "Sam", today=TODAY)

    def test_missing_loan(self, loan_manager, audit_trail):
        service = self._service(loan_manager, audit_trail)

        with pytest.raises(NotFoundError):
            service.generate("missing", "2025-01-31", "Sam", today=TODAY)

    def test_uses_cached_fees(self, loan_manager, audit_trail, loan):
        config = replace(WIRED, fees=FeeSchedule(recording=Decimal("0"), payoff_processing=Decimal("0")))
        service = self._service(loan_manager, audit_trail, config=config)

        result = service.generate(loan.id, "2025-01-01", "Sam", today=TODAY)

        assert result.total_payoff == Decimal("199500.00")
