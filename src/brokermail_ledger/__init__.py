"""
Brokerage confirmation email → Deduplicated transaction → Portfolio ledger

A deterministic, testable pipeline that turns broker trade confirmation
emails into ledger transactions with fingerprint-based idempotence,
multi-level duplicate detection and a human review queue for uncertain
extractions.
"""

__version__ = "0.1.0"
