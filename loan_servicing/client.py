"""
Servicing API Client Module

REST client for the servicing API. Handles the CSRF handshake for
state-changing calls and attaches idempotency keys to transaction posts.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx

from .csrf import CSRF_HEADER_NAME, STATE_CHANGING_METHODS
from .logging_config import get_logger, log_action
from .transactions import generate_idempotency_key

logger = get_logger("servicing.client")


IDEMPOTENCY_HEADER = "Idempotency-Key"
CSRF_TOKEN_TTL_SECONDS = 5 * 60


class ServicingAPIError(Exception):
    """Non-success response from the servicing API"""

    def __init__(self, status_code: int, body: Any):
        message = body.get("error") if isinstance(body, dict) else str(body)
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.body = body


@dataclass
class CreatedTransaction:
    transaction: Dict[str, Any]
    created: bool  # False when the server replayed an earlier request


class ServicingClient:
    """REST client for the servicing API"""

    def __init__(
        self,
        base_url: str = "http://localhost:8090",
        bearer_token: Optional[str] = None,
        timeout: float = 10.0,
        http_client: Optional[httpx.Client] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.base_url = base_url.rstrip("/")
        self.bearer_token = bearer_token
        self._client = http_client or httpx.Client(timeout=timeout)
        self._clock = clock
        self._csrf_token: Optional[str] = None
        self._csrf_expires_at = 0.0

    def _auth_headers(self) -> Dict[str, str]:
        if self.bearer_token:
            return {"Authorization": f"Bearer {self.bearer_token}"}
        return {}

    def get_csrf_token(self, force_refresh: bool = False) -> str:
        """Return the cached token, fetching a new one when absent or older than 5 minutes"""
        if not force_refresh and self._csrf_token and self._clock() < self._csrf_expires_at:
            return self._csrf_token

        response = self._client.get(f"{self.base_url}/csrf", headers=self._auth_headers())
        if response.status_code != 200:
            raise ServicingAPIError(response.status_code, self._body(response))

        self._csrf_token = response.json()["csrfToken"]
        self._csrf_expires_at = self._clock() + CSRF_TOKEN_TTL_SECONDS
        return self._csrf_token

    def clear_csrf_token(self) -> None:
        self._csrf_token = None
        self._csrf_expires_at = 0.0

    def request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> httpx.Response:
        """
        Send a request. A state-changing request rejected for CSRF is retried
        exactly once with a freshly fetched token.
        """
        method = method.upper()
        state_changing = method in STATE_CHANGING_METHODS

        response = self._send(method, path, json, params, headers, state_changing)
        if state_changing and self._is_csrf_failure(response):
            log_action(
                logger, "info", "CSRF token rejected; refreshing and retrying once",
                action="csrf_token_refreshed", resource=path
            )
            self.clear_csrf_token()
            response = self._send(method, path, json, params, headers, state_changing)
        return response

    def _send(self, method, path, json, params, headers, state_changing) -> httpx.Response:
        request_headers = self._auth_headers()
        if headers:
            request_headers.update(headers)
        if state_changing:
            request_headers[CSRF_HEADER_NAME] = self.get_csrf_token()
        return self._client.request(
            method, f"{self.base_url}{path}", json=json, params=params, headers=request_headers
        )

    @staticmethod
    def _body(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text

    @classmethod
    def _is_csrf_failure(cls, response: httpx.Response) -> bool:
        if response.status_code != 403:
            return False
        body = cls._body(response)
        return isinstance(body, dict) and "CSRF" in str(body.get("error", ""))

    def _json_or_raise(self, response: httpx.Response) -> Any:
        body = self._body(response)
        if response.status_code >= 400:
            raise ServicingAPIError(response.status_code, body)
        return body

    # Convenience calls

    def get_loan(self, loan_id: str) -> Dict[str, Any]:
        return self._json_or_raise(self.request("GET", f"/loans/{loan_id}"))

    def update_loan(self, loan_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        return self._json_or_raise(self.request("PATCH", f"/loans/{loan_id}", json=changes))

    def create_transaction(
        self,
        payload: Dict[str, Any],
        idempotency_key: Optional[str] = None
    ) -> CreatedTransaction:
        """
        Post a transaction. Reuse the same idempotency_key when retrying so the
        server returns the original transaction instead of creating another.
        """
        key = idempotency_key or generate_idempotency_key()
        response = self.request(
            "POST", "/transactions", json=payload, headers={IDEMPOTENCY_HEADER: key}
        )
        body = self._json_or_raise(response)
        return CreatedTransaction(transaction=body["transaction"], created=response.status_code == 201)

    def get_transactions(self, loan_id: str) -> Dict[str, Any]:
        return self._json_or_raise(self.request("GET", "/transactions", params={"loanId": loan_id}))

    def generate_payoff(self, loan_id: str, good_through_date: str) -> Dict[str, Any]:
        return self._json_or_raise(self.request(
            "POST", f"/loans/{loan_id}/documents/payoff",
            json={"goodThroughDate": good_through_date}
        ))

    def close(self) -> None:
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()
