"""Test fixtures and utilities."""

from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from brokermail_ledger.config import Config
from brokermail_ledger.errors import SymbolResolverError
from brokermail_ledger.ledger_client import (
    LedgerAPIError,
    LedgerDuplicateError,
    LedgerPortfolio,
    LedgerTransaction,
)
from brokermail_ledger.schemas.email import EmailIdentification, RawEmail
from brokermail_ledger.schemas.transaction import (
    ParsedTransactionCandidate,
    SymbolSource,
    TransactionType,
)
from brokermail_ledger.state_store import StateStore
from brokermail_ledger.symbol_resolver import SymbolResolution

WEALTHSIMPLE_SENDER = "Wealthsimple <notifications@wealthsimple.com>"

SAMPLE_BUY_SUBJECT = "Your order has been filled"

SAMPLE_BUY_TEXT = """Hi there,

Your order has been filled.

Bought 100 shares of AAPL at $150.50
Account: TFSA
Trade Date: 2025-01-15 10:30 AM EST
Total: $15,050.00

Thanks,
The Wealthsimple team
"""

SAMPLE_SELL_TEXT = """Hi there,

Your order has been filled.

Sold 25 shares of SHOP.TO at $98.40
Account: RRSP
Trade Date: 2025-02-03 2:15 PM EST
Total: $2,460.00
"""

SAMPLE_NAME_ONLY_TEXT = """Hi there,

Your order has been filled.

Bought 10 shares of Shopify Inc at $100.00
Account: TFSA
Trade Date: 2025-01-15 11:00 AM EST
Total: $1,000.00
"""

SAMPLE_DIVIDEND_TEXT = """Hi there,

You received a dividend.

Symbol: TD
Account: TFSA
Payment Date: 2025-01-31
Total: $42.18
"""

SAMPLE_OPTION_EXPIRY_TEXT = """Hi there,

Your option contract expired worthless.

AAPL JAN 17 2025 $200 CALL
2 contracts
Account: Margin
Expiration Date: 2025-01-17
"""

SAMPLE_FILL_TEMPLATE = """Hi there,

Your order was partially filled.

Filled {quantity} of {order_quantity} shares of AAPL at ${price}
Order ID: {order_id}
Action: Buy
Account: TFSA
Trade Date: 2025-01-15 {time} AM EST
"""


class InMemoryLedger:
    """
    Ledger double with the LedgerClient interface.

    auto_insert maps config_id to a flag, or to an exception the lookup raises.
    """

    def __init__(self, portfolios=None, auto_insert=None):
        self.portfolios: list[LedgerPortfolio] = list(portfolios or [])
        self.assets: dict[str, str] = {}
        self.transactions: list[LedgerTransaction] = []
        self.auto_insert = dict(auto_insert or {})
        self.fail_writes = False
        self.lookups: list[str] = []
        self._next_id = 1

    def _new_id(self, prefix: str) -> str:
        value = f"{prefix}-{self._next_id}"
        self._next_id += 1
        return value

    def test_connection(self) -> bool:
        return True

    def list_portfolios(self) -> list[LedgerPortfolio]:
        return list(self.portfolios)

    def create_portfolio(self, name, description=None, currency="CAD") -> LedgerPortfolio:
        portfolio = LedgerPortfolio(
            id=self._new_id("p"), name=name, description=description, currency=currency
        )
        self.portfolios.append(portfolio)
        return portfolio

    def get_or_create_asset(self, symbol, asset_type="stock") -> str:
        if symbol not in self.assets:
            self.assets[symbol] = self._new_id("a")
        return self.assets[symbol]

    def create_transaction(
        self,
        portfolio_id,
        asset_id,
        transaction_type,
        quantity,
        price,
        transaction_date,
        idempotency_key,
        executed_at=None,
        total_amount=None,
        fees=None,
        currency="CAD",
        notes=None,
        meta=None,
        skip_duplicates=True,
    ) -> LedgerTransaction:
        if self.fail_writes:
            raise LedgerAPIError(503, "Service unavailable")
        for existing in self.transactions:
            if existing.external_id == idempotency_key:
                if skip_duplicates:
                    return existing
                raise LedgerDuplicateError(idempotency_key, existing.id)

        symbol = next((s for s, a in self.assets.items() if a == asset_id), None)
        transaction = LedgerTransaction(
            id=self._new_id("t"),
            portfolio_id=portfolio_id,
            symbol=symbol,
            transaction_type=transaction_type,
            quantity=Decimal(str(quantity)),
            price=Decimal(str(price)),
            transaction_date=transaction_date,
            executed_at=executed_at,
            asset_id=asset_id,
            total_amount=total_amount,
            external_id=idempotency_key,
            meta=dict(meta or {}),
        )
        self.transactions.append(transaction)
        return transaction

    def get_transactions(self, portfolio_id, symbol=None, since=None) -> list[LedgerTransaction]:
        return [
            tx
            for tx in self.transactions
            if tx.portfolio_id == portfolio_id
            and (symbol is None or tx.symbol == symbol)
            and (since is None or (tx.transaction_date or "") >= since)
        ]

    def get_auto_insert_setting(self, config_id):
        self.lookups.append(config_id)
        value = self.auto_insert.get(config_id)
        if isinstance(value, Exception):
            raise value
        return value


class StubResolver:
    """Symbol resolver double: returns a fixed answer or raises."""

    def __init__(self, resolution=None, error=None):
        self.resolution = resolution
        self.error = error
        self.calls: list[str] = []

    def resolve_symbol(self, text: str) -> SymbolResolution:
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        if self.resolution is None:
            raise SymbolResolverError("no answer configured")
        return self.resolution


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path for testing."""
    return tmp_path / "test_state.db"


@pytest.fixture
def store(temp_db) -> StateStore:
    """Fresh state store."""
    return StateStore(temp_db)


@pytest.fixture
def config(temp_db) -> Config:
    """Default config pointed at the temporary database."""
    cfg = Config(state_db_path=temp_db)
    cfg.pipeline.lock_wait_seconds = 5.0
    return cfg


@pytest.fixture
def ledger() -> InMemoryLedger:
    """Ledger with one existing TFSA portfolio."""
    return InMemoryLedger(
        portfolios=[LedgerPortfolio(id="p-tfsa", name="My TFSA", description="Tax free")],
    )


@pytest.fixture
def sample_buy_email() -> RawEmail:
    """Wealthsimple buy confirmation: 100 AAPL @ $150.50."""
    return RawEmail(
        subject=SAMPLE_BUY_SUBJECT,
        from_email=WEALTHSIMPLE_SENDER,
        text_content=SAMPLE_BUY_TEXT,
    )


@pytest.fixture
def sample_emails() -> dict[str, str]:
    """Plain text bodies of the sample confirmations."""
    return {
        "buy": SAMPLE_BUY_TEXT,
        "sell": SAMPLE_SELL_TEXT,
        "name_only": SAMPLE_NAME_ONLY_TEXT,
        "dividend": SAMPLE_DIVIDEND_TEXT,
        "option_expiry": SAMPLE_OPTION_EXPIRY_TEXT,
    }


@pytest.fixture
def wealthsimple_sender() -> str:
    return WEALTHSIMPLE_SENDER


@pytest.fixture
def make_fill_email():
    """Factory for partial-fill confirmations of one AAPL order."""

    def _make(quantity, price, time, order_quantity=100, order_id="WS1234567") -> RawEmail:
        return RawEmail(
            subject="Your buy order was partially filled",
            from_email=WEALTHSIMPLE_SENDER,
            text_content=SAMPLE_FILL_TEMPLATE.format(
                quantity=quantity,
                order_quantity=order_quantity,
                price=price,
                order_id=order_id,
                time=time,
            ),
        )

    return _make


@pytest.fixture
def stub_resolver():
    """Factory for StubResolver instances."""
    return StubResolver


@pytest.fixture
def make_candidate():
    """Factory for parsed candidates with sensible defaults (100 AAPL @ 150.50)."""

    def _make(
        symbol="AAPL",
        quantity="100",
        price="150.50",
        transaction_type=TransactionType.BUY,
        transaction_date="2025-01-15",
        executed_at="2025-01-15T15:30:00Z",
        confidence=0.9,
        **kwargs,
    ) -> ParsedTransactionCandidate:
        return ParsedTransactionCandidate(
            transaction_type=transaction_type,
            symbol_raw=symbol,
            symbol_resolved=symbol,
            quantity=Decimal(quantity) if quantity is not None else None,
            price=Decimal(price) if price is not None else None,
            transaction_date=transaction_date,
            executed_at=executed_at,
            confidence=confidence,
            parser_confidence=confidence,
            symbol_source=SymbolSource.EMAIL_DIRECT,
            template="wealthsimple",
            account_type_raw=kwargs.pop("account_type_raw", "TFSA"),
            **kwargs,
        )

    return _make


@pytest.fixture
def make_identification():
    """Factory for EmailIdentification records."""

    def _make(fingerprint="a" * 64, **kwargs) -> EmailIdentification:
        return EmailIdentification(
            fingerprint_hash=fingerprint,
            source_email_id=kwargs.pop("source_email_id", None),
            received_at=kwargs.pop("received_at", datetime(2025, 1, 15, 16, 0, tzinfo=timezone.utc)),
            from_address="notifications@wealthsimple.com",
            subject_normalized="your order has been filled",
            email_hash=fingerprint[:16],
            **kwargs,
        )

    return _make
