"""
Account type -> ledger portfolio mapping.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ..errors import PortfolioResolutionError
from ..ledger_client import LedgerClient, LedgerError, LedgerPortfolio
from ..state_store import StateStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccountTypeDefaults:
    """How a portfolio for an account type is named when auto-created."""

    default_name: str
    description: str
    currency: str = "CAD"
    auto_create: bool = True


ACCOUNT_TYPES: dict[str, AccountTypeDefaults] = {
    "TFSA": AccountTypeDefaults("Tax-Free Savings Account", "TFSA portfolio for tax-free growth"),
    "RRSP": AccountTypeDefaults(
        "Registered Retirement Savings Plan", "RRSP portfolio for retirement savings"
    ),
    "RESP": AccountTypeDefaults(
        "Registered Education Savings Plan", "RESP portfolio for education savings"
    ),
    "Margin": AccountTypeDefaults("Margin Account", "Non-registered margin account"),
    "Cash": AccountTypeDefaults("Cash Account", "Non-registered cash account"),
    "LIRA": AccountTypeDefaults(
        "Locked-In Retirement Account", "LIRA portfolio for locked-in retirement funds"
    ),
    "RRIF": AccountTypeDefaults(
        "Registered Retirement Income Fund", "RRIF portfolio for retirement income"
    ),
}

# Substring -> canonical account type, checked in order
ACCOUNT_TYPE_VARIATIONS: list[tuple[str, str]] = [
    ("TAX-FREE SAVINGS", "TFSA"),
    ("TAX FREE SAVINGS", "TFSA"),
    ("TFSA", "TFSA"),
    ("REGISTERED RETIREMENT SAVINGS", "RRSP"),
    ("RRSP", "RRSP"),
    ("REGISTERED EDUCATION", "RESP"),
    ("RESP", "RESP"),
    ("LOCKED-IN RETIREMENT", "LIRA"),
    ("LIRA", "LIRA"),
    ("RETIREMENT INCOME", "RRIF"),
    ("RRIF", "RRIF"),
    ("NON-REGISTERED", "Margin"),
    ("NON REGISTERED", "Margin"),
    ("MARGIN", "Margin"),
    ("CASH", "Cash"),
    ("PERSONAL", "Cash"),
]


def normalize_account_type(raw: Optional[str]) -> Optional[str]:
    """
    Map an account label from an email to a canonical account type.

    Examples:
        "TFSA - Tax-Free Savings Account" -> "TFSA"
        "Non-Registered" -> "Margin"
        "Personal" -> "Cash"

    Returns:
        One of ACCOUNT_TYPES, or None if the label is not recognised
    """
    if not raw:
        return None
    normalized = raw.upper().strip()
    for canonical in ACCOUNT_TYPES:
        if normalized == canonical.upper():
            return canonical
    for variation, canonical in ACCOUNT_TYPE_VARIATIONS:
        if variation in normalized:
            return canonical
    return None


def _matches(portfolio: LedgerPortfolio, account_type: str) -> bool:
    defaults = ACCOUNT_TYPES[account_type]
    name = portfolio.name.lower()
    description = (portfolio.description or "").lower()
    return (
        account_type.lower() in name
        or defaults.default_name.lower() in name
        or account_type.lower() in description
    )


class PortfolioMappingService:
    """
    Resolves account types to ledger portfolios.

    Mappings found or created are cached in the state store.
    """

    def __init__(self, ledger: LedgerClient, store: StateStore):
        self.ledger = ledger
        self.store = store

    def find_portfolio(self, raw_account_type: Optional[str]) -> Optional[str]:
        """
        Look up the portfolio for an account label without creating anything.

        Returns:
            Portfolio ID, or None if unknown or no portfolio matches

        Raises:
            LedgerError: Ledger unreachable while listing portfolios
        """
        account_type = normalize_account_type(raw_account_type)
        if account_type is None:
            return None

        cached = self.store.get_portfolio_mapping(account_type)
        if cached is not None:
            return cached.portfolio_id

        for portfolio in self.ledger.list_portfolios():
            if _matches(portfolio, account_type):
                logger.info(
                    f"Mapped account type {account_type} to portfolio '{portfolio.name}' "
                    f"({portfolio.id})"
                )
                self.store.save_portfolio_mapping(account_type, portfolio.id, portfolio.name)
                return portfolio.id
        return None

    def get_or_create_portfolio(
        self, raw_account_type: Optional[str], allow_create: bool = True
    ) -> str:
        """
        Resolve the portfolio for an account label, creating it if allowed.

        Raises:
            PortfolioResolutionError: Unknown label, or no portfolio and
                creation not allowed or failed
        """
        account_type = normalize_account_type(raw_account_type)
        if account_type is None:
            raise PortfolioResolutionError(raw_account_type)

        try:
            portfolio_id = self.find_portfolio(account_type)
        except LedgerError as e:
            raise PortfolioResolutionError(
                account_type, f"Cannot list portfolios for {account_type}: {e}"
            ) from e
        if portfolio_id is not None:
            return portfolio_id

        defaults = ACCOUNT_TYPES[account_type]
        if not (allow_create and defaults.auto_create):
            raise PortfolioResolutionError(
                account_type, f"No portfolio for account type {account_type}"
            )

        try:
            portfolio = self.ledger.create_portfolio(
                defaults.default_name, defaults.description, defaults.currency
            )
        except LedgerError as e:
            raise PortfolioResolutionError(
                account_type, f"Cannot create portfolio for {account_type}: {e}"
            ) from e

        self.store.save_portfolio_mapping(
            account_type, portfolio.id, portfolio.name, auto_created=True
        )
        logger.info(f"Auto-created portfolio '{portfolio.name}' for {account_type}")
        return portfolio.id
