"""
Canonical parsed transaction candidate (SSOT).

This is THE single source of truth for a tentative trade extracted from a
confirmation email. Parsers produce it, the duplicate detector and review
queue consume it, and the ledger payload is built from it.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional


class TransactionType(str, Enum):
    """Trade direction / event kind as stated by the broker."""

    BUY = "buy"
    SELL = "sell"
    DIVIDEND = "dividend"
    OPTION_EXPIRED = "option_expired"


class AssetType(str, Enum):
    """Best guess at the instrument class."""

    STOCK = "stock"
    ETF = "etf"
    OPTION = "option"
    FOREX = "forex"
    CRYPTO = "crypto"
    REIT = "reit"


class SymbolSource(str, Enum):
    """
    Where symbol_resolved came from.

    EMAIL_DIRECT: Ticker taken verbatim from the email
    AI_ENHANCED: Email symbol confirmed or corrected by the AI resolver
    AI_FALLBACK: No usable ticker in the email, AI resolver supplied it
    UNRESOLVED: No symbol could be established
    """

    EMAIL_DIRECT = "email-direct"
    AI_ENHANCED = "email-ai-enhanced"
    AI_FALLBACK = "ai-fallback"
    UNRESOLVED = "unresolved"


def _decimal_or_none(value) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return Decimal(str(value))


def _str_or_none(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


@dataclass
class ParsedTransactionCandidate:
    """
    One parse attempt's view of a trade.

    ``confidence`` is the minimum of the contributing sub-confidences and is
    only ever lowered after creation (see ``lower_confidence``).
    """

    transaction_type: TransactionType
    symbol_raw: Optional[str] = None
    symbol_resolved: Optional[str] = None
    asset_type_guess: AssetType = AssetType.STOCK
    quantity: Optional[Decimal] = None
    price: Optional[Decimal] = None
    total_amount: Optional[Decimal] = None
    fees: Optional[Decimal] = None
    currency: str = "CAD"
    transaction_date: Optional[str] = None  # YYYY-MM-DD
    executed_at: Optional[str] = None  # ISO-8601 UTC, Z suffix
    account_type_raw: Optional[str] = None
    order_id: Optional[str] = None
    # Intended order size when the broker reports a partial fill ("40 of 100")
    order_quantity: Optional[Decimal] = None
    asset_name: Optional[str] = None
    template: str = "unknown"

    # Confidence (0.0 - 1.0)
    confidence: float = 0.0
    parser_confidence: float = 0.0
    resolver_confidence: Optional[float] = None
    symbol_source: SymbolSource = SymbolSource.UNRESOLVED

    # None = no stated total to reconcile against
    total_reconciled: Optional[bool] = None
    notes: list[str] = field(default_factory=list)

    @property
    def symbol(self) -> Optional[str]:
        """Effective symbol: resolved if available."""
        return self.symbol_resolved

    @property
    def computed_total(self) -> Optional[Decimal]:
        """quantity × price, without fees."""
        if self.quantity is None or self.price is None:
            return None
        return (self.quantity * self.price).quantize(Decimal("0.01"))

    @property
    def effective_total(self) -> Optional[Decimal]:
        """Stated total if present, else computed."""
        return self.total_amount if self.total_amount is not None else self.computed_total

    def lower_confidence(self, value: float, reason: str | None = None) -> None:
        """Lower confidence to ``value`` if it is below the current one."""
        if value < self.confidence:
            self.confidence = max(0.0, value)
            if reason:
                self.notes.append(reason)

    @classmethod
    def unparsed(cls, template: str, reason: str) -> "ParsedTransactionCandidate":
        """Placeholder candidate for an email that could not be parsed."""
        return cls(
            transaction_type=TransactionType.BUY,
            template=template,
            confidence=0.0,
            parser_confidence=0.0,
            notes=[reason],
        )

    @property
    def is_placeholder(self) -> bool:
        return self.quantity is None and self.symbol_raw is None and self.confidence == 0.0

    def to_dict(self) -> dict:
        """Serialize to dictionary for JSON storage."""
        return {
            "transaction_type": self.transaction_type.value,
            "symbol_raw": self.symbol_raw,
            "symbol_resolved": self.symbol_resolved,
            "asset_type_guess": self.asset_type_guess.value,
            "quantity": _str_or_none(self.quantity),
            "price": _str_or_none(self.price),
            "total_amount": _str_or_none(self.total_amount),
            "fees": _str_or_none(self.fees),
            "currency": self.currency,
            "transaction_date": self.transaction_date,
            "executed_at": self.executed_at,
            "account_type_raw": self.account_type_raw,
            "order_id": self.order_id,
            "order_quantity": _str_or_none(self.order_quantity),
            "asset_name": self.asset_name,
            "template": self.template,
            "confidence": self.confidence,
            "parser_confidence": self.parser_confidence,
            "resolver_confidence": self.resolver_confidence,
            "symbol_source": self.symbol_source.value,
            "total_reconciled": self.total_reconciled,
            "notes": list(self.notes),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ParsedTransactionCandidate":
        """Deserialize from dictionary."""
        return cls(
            transaction_type=TransactionType(data["transaction_type"]),
            symbol_raw=data.get("symbol_raw"),
            symbol_resolved=data.get("symbol_resolved"),
            asset_type_guess=AssetType(data.get("asset_type_guess", "stock")),
            quantity=_decimal_or_none(data.get("quantity")),
            price=_decimal_or_none(data.get("price")),
            total_amount=_decimal_or_none(data.get("total_amount")),
            fees=_decimal_or_none(data.get("fees")),
            currency=data.get("currency", "CAD"),
            transaction_date=data.get("transaction_date"),
            executed_at=data.get("executed_at"),
            account_type_raw=data.get("account_type_raw"),
            order_id=data.get("order_id"),
            order_quantity=_decimal_or_none(data.get("order_quantity")),
            asset_name=data.get("asset_name"),
            template=data.get("template", "unknown"),
            confidence=data.get("confidence", 0.0),
            parser_confidence=data.get("parser_confidence", 0.0),
            resolver_confidence=data.get("resolver_confidence"),
            symbol_source=SymbolSource(data.get("symbol_source", "unresolved")),
            total_reconciled=data.get("total_reconciled"),
            notes=data.get("notes", []),
        )
