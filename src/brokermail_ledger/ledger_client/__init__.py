"""
Portfolio ledger API client.

Provides:
- Create transactions (idempotent on the email fingerprint)
- Asset lookup/creation
- Portfolio listing/creation
- Transaction listing for duplicate checks
- Auto-insert configuration lookup

Treats ledger errors as loud failures with actionable messages.
"""

from .client import (
    LedgerAPIError,
    LedgerClient,
    LedgerConnectionError,
    LedgerDuplicateError,
    LedgerError,
    LedgerPortfolio,
    LedgerTransaction,
)

__all__ = [
    "LedgerAPIError",
    "LedgerClient",
    "LedgerConnectionError",
    "LedgerDuplicateError",
    "LedgerError",
    "LedgerPortfolio",
    "LedgerTransaction",
]
