"""
Portfolio mapping: brokerage account types to ledger portfolios.
"""

from .mapping import (
    ACCOUNT_TYPES,
    AccountTypeDefaults,
    PortfolioMappingService,
    normalize_account_type,
)

__all__ = [
    "ACCOUNT_TYPES",
    "AccountTypeDefaults",
    "PortfolioMappingService",
    "normalize_account_type",
]
