"""Tests for template routing, the Wealthsimple parser and TransactionParser."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from brokermail_ledger.config import ParsingConfig
from brokermail_ledger.errors import ParseError, ResolverTimeoutError
from brokermail_ledger.identification import EmailIdentifier
from brokermail_ledger.parsers import (
    SenderTemplate,
    TemplateRouter,
    TransactionParser,
    infer_asset_type,
    is_option_symbol,
    is_ticker,
)
from brokermail_ledger.schemas.email import RawEmail
from brokermail_ledger.schemas.transaction import AssetType, SymbolSource, TransactionType
from brokermail_ledger.symbol_resolver import SymbolResolution

RECEIVED = datetime(2025, 1, 15, 16, 0, tzinfo=timezone.utc)


def _email(text, sender, subject="Your order has been filled", html=None):
    return RawEmail(
        subject=subject,
        from_email=sender,
        text_content=text,
        html_content=html,
        received_at=RECEIVED,
    )


class TestSymbolHelpers:
    """Tests for ticker and option detection."""

    def test_plain_tickers(self):
        assert is_ticker("AAPL")
        assert is_ticker("SHOP.TO")
        assert not is_ticker("Shopify Inc")
        assert not is_ticker(None)

    def test_option_symbols(self):
        assert is_option_symbol("AAPL JAN 17 2025 $200 CALL")
        assert is_option_symbol("AAPL250117C00200000")
        assert not is_option_symbol("AAPL")

    def test_asset_type_inference(self):
        assert infer_asset_type("AAPL JAN 17 2025 $200 CALL") == AssetType.OPTION
        assert infer_asset_type("XEQT", "iShares Core Equity ETF Portfolio") == AssetType.ETF
        assert infer_asset_type("REI.UN", "RioCan Real Estate Investment Trust") == AssetType.REIT
        assert infer_asset_type("AAPL") == AssetType.STOCK


class TestTemplateRouter:
    """Tests for sender template detection."""

    def test_known_domains(self):
        router = TemplateRouter()
        assert router.detect_template("notifications@wealthsimple.com") == (
            SenderTemplate.WEALTHSIMPLE
        )
        assert router.detect_template("Wealthsimple <no-reply@trade.wealthsimple.com>") == (
            SenderTemplate.WEALTHSIMPLE
        )

    def test_lookalike_domain_is_unknown(self):
        router = TemplateRouter()
        assert router.detect_template("alerts@notwealthsimple.com") == SenderTemplate.UNKNOWN

    def test_domains_come_from_config(self):
        router = TemplateRouter(ParsingConfig(known_senders={"wealthsimple": ["ws.example"]}))
        assert router.detect_template("a@ws.example") == SenderTemplate.WEALTHSIMPLE
        assert router.detect_template("a@wealthsimple.com") == SenderTemplate.UNKNOWN

    def test_unknown_sender_raises_parse_error(self, sample_emails):
        router = TemplateRouter()
        email = _email(sample_emails["buy"], "alerts@otherbank.com")

        with pytest.raises(ParseError) as exc_info:
            router.parse(email, RECEIVED)

        assert exc_info.value.template == "unknown"


class TestWealthsimpleParser:
    """Tests for the Wealthsimple template."""

    @pytest.fixture
    def router(self):
        return TemplateRouter()

    def test_buy_confirmation(self, router, sample_emails, wealthsimple_sender):
        candidate = router.parse(_email(sample_emails["buy"], wealthsimple_sender), RECEIVED)

        assert candidate.transaction_type == TransactionType.BUY
        assert candidate.symbol_raw == "AAPL"
        assert candidate.quantity == Decimal("100")
        assert candidate.price == Decimal("150.50")
        assert candidate.total_amount == Decimal("15050.00")
        assert candidate.account_type_raw == "TFSA"
        assert candidate.transaction_date == "2025-01-15"
        assert candidate.executed_at == "2025-01-15T15:30:00Z"
        assert candidate.currency == "CAD"
        assert candidate.parser_confidence == 0.9

    def test_sell_confirmation(self, router, sample_emails, wealthsimple_sender):
        candidate = router.parse(_email(sample_emails["sell"], wealthsimple_sender), RECEIVED)

        assert candidate.transaction_type == TransactionType.SELL
        assert candidate.symbol_raw == "SHOP.TO"
        assert candidate.quantity == Decimal("25")
        assert candidate.price == Decimal("98.40")
        assert candidate.account_type_raw == "RRSP"
        assert candidate.executed_at == "2025-02-03T19:15:00Z"

    def test_dividend_notice(self, router, sample_emails, wealthsimple_sender):
        candidate = router.parse(
            _email(sample_emails["dividend"], wealthsimple_sender, subject="Dividend received"),
            RECEIVED,
        )

        assert candidate.transaction_type == TransactionType.DIVIDEND
        assert candidate.symbol_raw == "TD"
        assert candidate.quantity == Decimal("1")
        assert candidate.price == Decimal("42.18")
        assert candidate.transaction_date == "2025-01-31"

    def test_option_expiry(self, router, sample_emails, wealthsimple_sender):
        candidate = router.parse(
            _email(sample_emails["option_expiry"], wealthsimple_sender, subject="Option expired"),
            RECEIVED,
        )

        assert candidate.transaction_type == TransactionType.OPTION_EXPIRED
        assert candidate.symbol_raw == "AAPL JAN 17 2025 $200 CALL"
        assert candidate.asset_type_guess == AssetType.OPTION
        assert candidate.quantity == Decimal("2")
        assert candidate.price == Decimal("0")
        assert candidate.account_type_raw == "Margin"

    def test_partial_fill_quantities(self, router, make_fill_email):
        candidate = router.parse(make_fill_email(40, "150.00", "10:30"), RECEIVED)

        assert candidate.transaction_type == TransactionType.BUY
        assert candidate.symbol_raw == "AAPL"
        assert candidate.quantity == Decimal("40")
        assert candidate.order_quantity == Decimal("100")
        assert candidate.order_id == "WS1234567"

    def test_html_only_body(self, router, wealthsimple_sender):
        html = (
            "<html><body>"
            "<p>Bought 100 shares of AAPL at $150.50</p>"
            "<p>Account: TFSA</p>"
            "<p>Trade Date: 2025-01-15 10:30 AM EST</p>"
            "</body></html>"
        )
        candidate = router.parse(_email(None, wealthsimple_sender, html=html), RECEIVED)

        assert candidate.symbol_raw == "AAPL"
        assert candidate.quantity == Decimal("100")
        assert candidate.account_type_raw == "TFSA"

    def test_missing_date_falls_back_to_received(self, router, wealthsimple_sender):
        candidate = router.parse(
            _email("Bought 3 shares of AAPL at $150.00\n", wealthsimple_sender), RECEIVED
        )

        assert candidate.transaction_date == "2025-01-15"
        assert candidate.parser_confidence == 0.5
        assert "trade date missing, using received date" in candidate.notes

    def test_no_transaction_raises(self, router, wealthsimple_sender):
        with pytest.raises(ParseError):
            router.parse(
                _email("Your monthly statement is ready.", wealthsimple_sender, subject="Statement"),
                RECEIVED,
            )


class TestTransactionParser:
    """Tests for TransactionParser: reconciliation and symbol resolution."""

    def _parse(self, parser, email):
        identification = EmailIdentifier().identify(email)
        return parser.parse(email, identification)

    def test_direct_symbol_keeps_parser_confidence(self, sample_emails, wealthsimple_sender):
        outcome = self._parse(
            TransactionParser(), _email(sample_emails["buy"], wealthsimple_sender)
        )

        candidate = outcome.candidate
        assert candidate.symbol_resolved == "AAPL"
        assert candidate.symbol_source == SymbolSource.EMAIL_DIRECT
        assert candidate.total_reconciled is True
        assert candidate.confidence == 0.9
        assert outcome.errors == []

    def test_total_mismatch_lowers_confidence(self, wealthsimple_sender):
        text = (
            "Bought 100 shares of AAPL at $150.50\n"
            "Account: TFSA\n"
            "Trade Date: 2025-01-15 10:30 AM EST\n"
            "Total: $14,000.00\n"
        )
        candidate = self._parse(TransactionParser(), _email(text, wealthsimple_sender)).candidate

        assert candidate.total_reconciled is False
        assert candidate.confidence == 0.5

    def test_resolver_supplies_missing_symbol(
        self, sample_emails, wealthsimple_sender, stub_resolver
    ):
        resolver = stub_resolver(SymbolResolution("SHOP", AssetType.STOCK, 0.85))
        parser = TransactionParser(resolver=resolver)

        outcome = self._parse(parser, _email(sample_emails["name_only"], wealthsimple_sender))

        candidate = outcome.candidate
        assert candidate.symbol_raw is None
        assert candidate.asset_name == "Shopify Inc"
        assert candidate.symbol_resolved == "SHOP"
        assert candidate.symbol_source == SymbolSource.AI_FALLBACK
        assert candidate.resolver_confidence == 0.85
        assert candidate.confidence == 0.85
        assert "Shopify Inc" in resolver.calls[0]

    def test_resolver_timeout_caps_confidence(
        self, sample_emails, wealthsimple_sender, stub_resolver
    ):
        resolver = stub_resolver(error=ResolverTimeoutError(10.0))
        parser = TransactionParser(resolver=resolver)

        outcome = self._parse(parser, _email(sample_emails["name_only"], wealthsimple_sender))

        candidate = outcome.candidate
        assert candidate.symbol_resolved is None
        assert candidate.symbol_source == SymbolSource.UNRESOLVED
        assert candidate.confidence < 0.6
        assert outcome.errors and outcome.errors[0].startswith("ResolverTimeoutError")

    def test_resolver_not_called_for_plain_ticker(
        self, sample_emails, wealthsimple_sender, stub_resolver
    ):
        resolver = stub_resolver(SymbolResolution("MSFT", AssetType.STOCK, 0.99))
        parser = TransactionParser(resolver=resolver)

        candidate = self._parse(parser, _email(sample_emails["buy"], wealthsimple_sender)).candidate

        assert candidate.symbol_resolved == "AAPL"
        assert resolver.calls == []

    def test_option_without_resolver_goes_unresolved(self, sample_emails, wealthsimple_sender):
        candidate = self._parse(
            TransactionParser(),
            _email(sample_emails["option_expiry"], wealthsimple_sender, subject="Option expired"),
        ).candidate

        assert candidate.symbol_resolved is None
        assert candidate.confidence < 0.6

    def test_enhancement_can_be_disabled(self, sample_emails, wealthsimple_sender, stub_resolver):
        resolver = stub_resolver(SymbolResolution("SHOP", AssetType.STOCK, 0.85))
        parser = TransactionParser(resolver=resolver)
        email = _email(sample_emails["name_only"], wealthsimple_sender)

        outcome = parser.parse(email, EmailIdentifier().identify(email), enhance_symbols=False)

        assert resolver.calls == []
        assert outcome.candidate.symbol_resolved is None

    def test_order_id_taken_from_identification(self, wealthsimple_sender):
        text = "Bought 5 shares of AAPL at $10.00\nReference: WS7654321\n"
        candidate = self._parse(TransactionParser(), _email(text, wealthsimple_sender)).candidate

        assert candidate.order_id == "WS7654321"
