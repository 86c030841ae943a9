"""
Confirmation email parsers.

Sender templates are a closed set (SenderTemplate). Each template has one
parser; unknown senders fall through to UnknownTemplateParser.
"""

from .base import (
    BaseTemplateParser,
    SenderTemplate,
    UnknownTemplateParser,
    infer_asset_type,
    is_option_symbol,
    is_ticker,
)
from .router import TemplateRouter
from .transaction_parser import ParseOutcome, TransactionParser
from .wealthsimple import WealthsimpleParser

__all__ = [
    "BaseTemplateParser",
    "ParseOutcome",
    "SenderTemplate",
    "TemplateRouter",
    "TransactionParser",
    "UnknownTemplateParser",
    "WealthsimpleParser",
    "infer_asset_type",
    "is_option_symbol",
    "is_ticker",
]
