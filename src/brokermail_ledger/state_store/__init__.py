"""
State Store (SQLite-based).

Durable state shared by every pipeline worker:
- Processed fingerprints and their outcome
- Transactions written to the ledger
- Manual review queue and rejected fingerprints
- Fingerprint locks, fill groups and portfolio mappings

Enforces uniqueness on fingerprint.
"""

from .sqlite_store import (
    EmailStatus,
    FillGroupRecord,
    PortfolioMappingRecord,
    ProcessedEmailRecord,
    StateStore,
    normalize_timestamp,
    utc_now,
)

__all__ = [
    "EmailStatus",
    "FillGroupRecord",
    "PortfolioMappingRecord",
    "ProcessedEmailRecord",
    "StateStore",
    "normalize_timestamp",
    "utc_now",
]
