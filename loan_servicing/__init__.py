"""
Loan Servicing Core

The trust-and-integrity layer of a loan-servicing platform: per-loan access
control, CSRF request integrity, rate limiting, an append-only audit trail,
an idempotent transaction ledger and deterministic payoff quotes.
"""

__version__ = "1.0.0"
