"""
Base template parser interface and common helpers.
"""

import re
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum

from ..errors import ParseError
from ..schemas.email import RawEmail
from ..schemas.transaction import AssetType, ParsedTransactionCandidate

TICKER_RE = re.compile(r"^[A-Z]{1,5}(?:\.[A-Z]{1,2})?$")

OPTION_PATTERNS = [
    re.compile(r"CALL$", re.IGNORECASE),
    re.compile(r"PUT$", re.IGNORECASE),
    re.compile(r"\$\d+"),
    re.compile(r"\b(?:JAN|FEB|MAR|APR|MAY|JUN|JUL|AUG|SEP|OCT|NOV|DEC)\b", re.IGNORECASE),
    re.compile(r"\d{6}[CP]\d{8}$"),  # OCC option symbol
]

ETF_HINT_RE = re.compile(r"\b(?:ETF|FUND|INDEX)\b", re.IGNORECASE)
REIT_HINT_RE = re.compile(r"\b(?:REIT|REAL ESTATE|PROPERTIES)\b", re.IGNORECASE)


class SenderTemplate(str, Enum):
    """Known confirmation email templates, plus the explicit fallback."""

    WEALTHSIMPLE = "wealthsimple"
    UNKNOWN = "unknown"


def is_ticker(symbol: str | None) -> bool:
    """Check for a plain exchange ticker (AAPL, CNR.TO)."""
    return bool(symbol) and bool(TICKER_RE.match(symbol))


def is_option_symbol(symbol: str | None) -> bool:
    """Check if a symbol string describes an option contract."""
    if not symbol:
        return False
    return any(pattern.search(symbol) for pattern in OPTION_PATTERNS)


def infer_asset_type(symbol: str | None, asset_name: str | None = None) -> AssetType:
    """Guess the asset class from the symbol and security name."""
    if is_option_symbol(symbol):
        return AssetType.OPTION
    context = f"{symbol or ''} {asset_name or ''}"
    if ETF_HINT_RE.search(context):
        return AssetType.ETF
    if REIT_HINT_RE.search(context):
        return AssetType.REIT
    return AssetType.STOCK


def sender_domain(from_address: str) -> str:
    """Domain part of a normalized sender address."""
    return from_address.rsplit("@", 1)[-1].strip().lower() if "@" in from_address else ""


class BaseTemplateParser(ABC):
    """
    Base class for sender template parsers.

    Each parser handles exactly one SenderTemplate.
    """

    @property
    @abstractmethod
    def template(self) -> SenderTemplate:
        """Template this parser handles."""
        pass

    @abstractmethod
    def can_parse(self, from_address: str) -> bool:
        """
        Check if this parser recognizes the sender.

        Args:
            from_address: Normalized sender address

        Returns:
            True if the email should be parsed with this template
        """
        pass

    @abstractmethod
    def parse(self, email: RawEmail, received_at: datetime) -> ParsedTransactionCandidate:
        """
        Extract a transaction candidate from an email.

        Args:
            email: Raw email
            received_at: Fallback timestamp when the email states no date

        Returns:
            Candidate with parser_confidence and confidence set

        Raises:
            ParseError: If the email cannot be parsed
        """
        pass


class UnknownTemplateParser(BaseTemplateParser):
    """Fallback variant for senders with no known template."""

    @property
    def template(self) -> SenderTemplate:
        return SenderTemplate.UNKNOWN

    def can_parse(self, from_address: str) -> bool:
        return True

    def parse(self, email: RawEmail, received_at: datetime) -> ParsedTransactionCandidate:
        raise ParseError(
            f"Unrecognized sender template for '{email.from_email}'",
            template=SenderTemplate.UNKNOWN.value,
        )
