"""
Tests for the servicing REST client
"""

import logging
from decimal import Decimal

import httpx
import pytest
from fastapi.testclient import TestClient
from unittest.mock import MagicMock

from conftest import make_config, make_token
from loan_servicing.api import create_app
from loan_servicing.api.deps import ServicingSystem
from loan_servicing.client import ServicingAPIError, ServicingClient


SERVICER = make_token("servicer-1", "servicer", name="Sam Servicer")


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def system():
    system = ServicingSystem(make_config())
    yield system
    system.close()


@pytest.fixture
def loan(system):
    return system.loan_manager.board_loan(
        "LN-1001", "borrower-1", "Jane Borrower", Decimal("1000.00"), Decimal("0.05")
    )


@pytest.fixture
def api(system):
    return TestClient(create_app(system))


class TestAgainstApi:

    def test_update_loan_with_csrf_handshake(self, api, loan):
        client = ServicingClient("http://testserver", bearer_token=SERVICER, http_client=api)

        updated = client.update_loan(loan.id, {"days_past_due": 12})

        assert updated["days_past_due"] == 12

    def test_create_transaction_created_then_replayed(self, api, loan):
        client = ServicingClient("http://testserver", bearer_token=SERVICER, http_client=api)
        payload = {"loan_id": loan.id, "type": "Payment", "amount": "100.00", "principal_amount": "90.00"}

        first = client.create_transaction(payload, idempotency_key="retry-safe-1")
        second = client.create_transaction(payload, idempotency_key="retry-safe-1")

        assert first.created is True
        assert second.created is False
        assert second.transaction["id"] == first.transaction["id"]
        assert client.get_transactions(loan.id)["totals"]["transaction_count"] == 1

    def test_generated_keys_are_distinct(self, api, loan):
        client = ServicingClient("http://testserver", bearer_token=SERVICER, http_client=api)
        payload = {"loan_id": loan.id, "type": "Late Fee", "amount": "75.00"}

        first = client.create_transaction(payload)
        second = client.create_transaction(payload)

        assert first.transaction["id"] != second.transaction["id"]

    def test_errors_raise(self, api):
        client = ServicingClient("http://testserver", bearer_token=SERVICER, http_client=api)

        with pytest.raises(ServicingAPIError) as exc_info:
            client.get_loan("missing")

        assert exc_info.value.status_code == 404

    def test_stale_token_refreshed_once(self, api, loan):
        client = ServicingClient("http://testserver", bearer_token=SERVICER, http_client=api)
        client._csrf_token = "0" * 64 + ":" + "0" * 64
        client._csrf_expires_at = float("inf")

        updated = client.update_loan(loan.id, {"days_past_due": 3})

        assert updated["days_past_due"] == 3
        assert client._csrf_token != "0" * 64 + ":" + "0" * 64


def response(status_code, body, method="GET", url="http://testserver/x"):
    return httpx.Response(status_code, json=body, request=httpx.Request(method, url))


class TestCsrfHandling:

    def setup_method(self):
        self.http = MagicMock()
        self.clock = FakeClock()
        self.client = ServicingClient(
            "http://testserver/", bearer_token="tok", http_client=self.http, clock=self.clock
        )

    def test_token_cached_for_five_minutes(self):
        self.http.get.return_value = response(200, {"csrfToken": "t1"})

        assert self.client.get_csrf_token() == "t1"
        self.clock.now = 299
        assert self.client.get_csrf_token() == "t1"
        assert self.http.get.call_count == 1

        self.http.get.return_value = response(200, {"csrfToken": "t2"})
        self.clock.now = 300
        assert self.client.get_csrf_token() == "t2"

    def test_read_requests_carry_no_token(self):
        self.http.request.return_value = response(200, {"id": "L1"})

        self.client.get_loan("L1")

        headers = self.http.request.call_args.kwargs["headers"]
        assert "X-CSRF-Token" not in headers
        assert headers["Authorization"] == "Bearer tok"
        self.http.get.assert_not_called()

    def test_retries_exactly_once(self):
        self.http.get.side_effect = [
            response(200, {"csrfToken": "t1"}),
            response(200, {"csrfToken": "t2"}),
        ]
        csrf_failure = response(403, {"error": "Invalid or missing CSRF token", "code": "CSRF_INVALID"}, "PATCH")
        self.http.request.side_effect = [csrf_failure, csrf_failure]

        with pytest.raises(ServicingAPIError) as exc_info:
            self.client.update_loan("L1", {"days_past_due": 1})

        assert exc_info.value.status_code == 403
        assert self.http.request.call_count == 2
        sent = [call.kwargs["headers"]["X-CSRF-Token"] for call in self.http.request.call_args_list]
        assert sent == ["t1", "t2"]

    def test_refresh_logged_through_servicing_logger(self, servicing_caplog):
        self.http.get.side_effect = [
            response(200, {"csrfToken": "t1"}),
            response(200, {"csrfToken": "t2"}),
        ]
        self.http.request.side_effect = [
            response(403, {"error": "Invalid or missing CSRF token", "code": "CSRF_INVALID"}, "PATCH"),
            response(200, {"id": "L1"}, "PATCH"),
        ]

        with servicing_caplog.at_level(logging.INFO, logger="servicing.client"):
            self.client.update_loan("L1", {"days_past_due": 1})

        refreshed = [r for r in servicing_caplog.records if getattr(r, "action", None) == "csrf_token_refreshed"]
        assert len(refreshed) == 1
        assert refreshed[0].name == "servicing.client"
        assert refreshed[0].resource == "/loans/L1"

    def test_other_forbidden_not_retried(self):
        self.http.get.return_value = response(200, {"csrfToken": "t1"})
        self.http.request.return_value = response(403, {"error": "Forbidden", "code": "FORBIDDEN"}, "PATCH")

        with pytest.raises(ServicingAPIError):
            self.client.update_loan("L1", {"days_past_due": 1})

        assert self.http.request.call_count == 1

    def test_idempotency_header_sent(self):
        self.http.get.return_value = response(200, {"csrfToken": "t1"})
        self.http.request.return_value = response(201, {"transaction": {"id": "T1"}, "created": True}, "POST")

        result = self.client.create_transaction({"loan_id": "L1"}, idempotency_key="k-1")

        assert result.created
        assert self.http.request.call_args.kwargs["headers"]["Idempotency-Key"] == "k-1"
        assert self.http.request.call_args.args[1] == "http://testserver/transactions"
