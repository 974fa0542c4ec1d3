"""
Tests for session-bound CSRF tokens
"""

import pytest

from loan_servicing.csrf import CsrfGuard, STATE_CHANGING_METHODS
from loan_servicing.errors import ConfigurationError, CsrfValidationError


SECRET = "csrf-secret-for-tests-0123456789abcdef"


class TestTokenIssueAndVerify:

    def setup_method(self):
        self.guard = CsrfGuard(SECRET)

    def test_token_shape(self):
        token = self.guard.issue_token("session-1")
        nonce, mac = token.split(":")

        assert len(nonce) == 64
        assert len(mac) == 64
        int(nonce, 16)
        int(mac, 16)

    def test_tokens_are_unique(self):
        tokens = {self.guard.issue_token("session-1") for _ in range(50)}
        assert len(tokens) == 50

    def test_verify_same_session(self):
        token = self.guard.issue_token("session-1")
        assert self.guard.verify_token(token, "session-1") is True

    def test_verify_other_session_fails(self):
        token = self.guard.issue_token("session-1")
        assert self.guard.verify_token(token, "session-2") is False

    def test_every_single_character_mutation_fails(self):
        token = self.guard.issue_token("session-1")

        for i, ch in enumerate(token):
            for replacement in ("0", "f", "A", ":", "x"):
                if replacement == ch:
                    continue
                mutated = token[:i] + replacement + token[i + 1:]
                assert self.guard.verify_token(mutated, "session-1") is False, (i, replacement)

    def test_other_secret_fails(self):
        token = CsrfGuard("another-secret-that-is-long-enough-123").issue_token("session-1")
        assert self.guard.verify_token(token, "session-1") is False

    @pytest.mark.parametrize("token", [
        None,
        "",
        ":",
        "abc",
        "a:b:c",
        "nonce-only:",
        ":" + "0" * 64,
        "0" * 64 + ":" + "0" * 63,
        "0" * 64 + ":" + "z" * 64,
        "0" * 64 + ":" + "0" * 64,
    ])
    def test_malformed_tokens_rejected(self, token):
        assert self.guard.verify_token(token, "session-1") is False

    def test_trailing_newline_rejected(self):
        nonce, mac = self.guard.issue_token("session-1").split(":")

        assert self.guard.verify_token(f"{nonce}:{mac}\n", "session-1") is False
        assert self.guard.verify_token(f"{nonce}\n:{mac}", "session-1") is False

    def test_empty_session_rejected(self):
        token = self.guard.issue_token("")
        assert self.guard.verify_token(token, "") is False


class TestEnforce:

    def setup_method(self):
        self.guard = CsrfGuard(SECRET)

    @pytest.mark.parametrize("method", sorted(STATE_CHANGING_METHODS))
    def test_state_changing_methods_require_token(self, method):
        with pytest.raises(CsrfValidationError) as exc_info:
            self.guard.enforce(method, None, "session-1")

        error = exc_info.value
        assert error.http_status == 403
        assert "CSRF" in error.to_response()["error"]

    @pytest.mark.parametrize("method", ["GET", "HEAD", "OPTIONS", "get"])
    def test_read_only_methods_exempt(self, method):
        self.guard.enforce(method, None, "session-1")

    def test_valid_token_passes(self):
        token = self.guard.issue_token("session-1")
        self.guard.enforce("post", token, "session-1")


class TestSecretConfiguration:

    @pytest.mark.parametrize("secret", [None, "", "short"])
    def test_missing_or_short_secret_fails_fast(self, secret):
        with pytest.raises(ConfigurationError):
            CsrfGuard(secret)
