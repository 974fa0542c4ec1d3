"""
Request Integrity Module

Stateless CSRF tokens bound to a session: ``nonce:mac`` where
mac = HMAC-SHA256(secret, "session_id:nonce"). Nothing is stored server-side.
"""

import hashlib
import hmac
import re
import secrets
from typing import Optional

from .errors import ConfigurationError, CsrfValidationError
from .logging_config import get_logger, log_action


CSRF_HEADER_NAME = "X-CSRF-Token"
STATE_CHANGING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

NONCE_BYTES = 32
MIN_SECRET_LENGTH = 32

_HEX_DIGEST = re.compile(r"[0-9a-f]{64}")


class CsrfGuard:
    """Issues and verifies session-bound CSRF tokens"""

    def __init__(self, secret: str):
        if not secret or len(secret) < MIN_SECRET_LENGTH:
            raise ConfigurationError(
                f"CSRF secret must be at least {MIN_SECRET_LENGTH} characters"
            )
        self._secret = secret.encode("utf-8")
        self.logger = get_logger("servicing.csrf")

    def _mac(self, session_id: str, nonce: str) -> str:
        message = f"{session_id}:{nonce}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def issue_token(self, session_id: str) -> str:
        nonce = secrets.token_hex(NONCE_BYTES)
        return f"{nonce}:{self._mac(session_id, nonce)}"

    def verify_token(self, token: Optional[str], session_id: str) -> bool:
        """
        Check a token against the session it should have been minted for.

        Malformed input (wrong part count, empty parts, non-hex or wrong
        length) is rejected before any comparison takes place.
        """
        if not token or not session_id:
            return False

        parts = token.split(":")
        if len(parts) != 2:
            return False
        nonce, mac = parts
        if not _HEX_DIGEST.fullmatch(nonce) or not _HEX_DIGEST.fullmatch(mac):
            return False

        return hmac.compare_digest(self._mac(session_id, nonce), mac)

    def enforce(self, method: str, token: Optional[str], session_id: str) -> None:
        """
        Require a valid token for state-changing verbs; read-only verbs pass.

        Raises:
            CsrfValidationError: token missing or invalid
        """
        if method.upper() not in STATE_CHANGING_METHODS:
            return
        if not self.verify_token(token, session_id):
            log_action(
                self.logger, "warning", "CSRF validation failed",
                user_id=session_id, action="csrf_rejected",
                extra={"method": method.upper(), "token_present": bool(token)}
            )
            raise CsrfValidationError()
