"""Tests for time-window pattern analysis."""

from decimal import Decimal

import pytest

from brokermail_ledger.config import TimeWindowConfig
from brokermail_ledger.duplicates import TimeWindowAnalyzer
from brokermail_ledger.schemas.duplicates import (
    ExistingTransaction,
    PatternType,
    RapidKind,
    Recommendation,
)
from brokermail_ledger.schemas.transaction import TransactionType


def _tx(tx_id, executed_at, quantity="40", price="150.00", transaction_type="buy", **kwargs):
    return ExistingTransaction(
        id=tx_id,
        symbol=kwargs.pop("symbol", "AAPL"),
        transaction_type=transaction_type,
        quantity=Decimal(quantity),
        price=Decimal(price),
        transaction_date=executed_at[:10],
        executed_at=executed_at,
        **kwargs,
    )


@pytest.fixture
def analyzer():
    return TimeWindowAnalyzer(TimeWindowConfig())


class TestPartialFills:
    """Tests for partial fill detection."""

    def test_first_fill_of_larger_order(self, analyzer, make_candidate):
        candidate = make_candidate(
            quantity="40", price="150.00", order_id="WS1", order_quantity=Decimal("100")
        )

        analysis = analyzer.analyze(candidate, [])

        assert analysis.pattern == PatternType.PARTIAL_FILL
        assert analysis.recommendation == Recommendation.AUTO_MERGE
        assert analysis.confidence == 0.7
        assert analysis.related_transaction_ids == []
        assert analysis.total_quantity == Decimal("40")
        assert analysis.target_quantity == Decimal("100")
        assert not analysis.is_complete_fill

    def test_fills_sharing_order_id(self, analyzer, make_candidate):
        existing = [
            _tx("t-1", "2025-01-15T15:30:00Z", quantity="40", order_id="WS1", fill_group_id=5)
        ]
        candidate = make_candidate(
            quantity="30",
            price="150.10",
            order_id="WS1",
            order_quantity=Decimal("100"),
            executed_at="2025-01-15T15:32:00Z",
        )

        analysis = analyzer.analyze(candidate, existing)

        assert analysis.pattern == PatternType.PARTIAL_FILL
        assert analysis.related_transaction_ids == ["t-1"]
        assert analysis.total_quantity == Decimal("70")
        assert analysis.fill_group_id == 5
        assert analysis.window_seconds == 120
        assert analysis.tags == ["partial-fill"]

    def test_complete_fill(self, analyzer, make_candidate):
        existing = [
            _tx("t-1", "2025-01-15T15:30:00Z", quantity="40", price="150.00", order_id="WS1"),
            _tx("t-2", "2025-01-15T15:32:00Z", quantity="30", price="150.10", order_id="WS1"),
        ]
        candidate = make_candidate(
            quantity="30",
            price="150.20",
            order_id="WS1",
            order_quantity=Decimal("100"),
            executed_at="2025-01-15T15:34:00Z",
        )

        analysis = analyzer.analyze(candidate, existing)

        assert analysis.is_complete_fill
        assert analysis.confidence == 0.9
        assert "fill-complete" in analysis.tags
        assert analysis.average_price == Decimal("150.0900")

    def test_order_size_links_fills_without_order_id(self, analyzer, make_candidate):
        existing = [
            _tx("t-1", "2025-01-15T15:30:00Z", quantity="50", order_quantity=Decimal("100"))
        ]
        candidate = make_candidate(
            quantity="50",
            price="150.00",
            order_quantity=Decimal("100"),
            executed_at="2025-01-15T15:31:00Z",
        )

        analysis = analyzer.analyze(candidate, existing)

        assert analysis.pattern == PatternType.PARTIAL_FILL
        assert analysis.is_complete_fill

    def test_overfill_is_not_partial(self, analyzer, make_candidate):
        existing = [_tx("t-1", "2025-01-15T15:30:00Z", quantity="80", order_id="WS1")]
        candidate = make_candidate(
            quantity="30",
            price="150.00",
            order_id="WS1",
            order_quantity=Decimal("100"),
            executed_at="2025-01-15T15:31:00Z",
        )

        analysis = analyzer.analyze(candidate, existing)

        assert analysis.pattern == PatternType.NONE

    def test_fill_outside_window_not_related(self, analyzer, make_candidate):
        existing = [_tx("t-1", "2025-01-15T14:00:00Z", quantity="40", order_id="WS1")]
        candidate = make_candidate(
            quantity="30",
            price="150.00",
            order_id="WS1",
            order_quantity=Decimal("100"),
            executed_at="2025-01-15T15:31:00Z",
        )

        analysis = analyzer.analyze(candidate, existing)

        assert analysis.pattern == PatternType.PARTIAL_FILL
        assert analysis.related_transaction_ids == []


class TestSplitOrders:
    """Tests for split order detection."""

    def test_similar_orders_within_window(self, analyzer, make_candidate):
        existing = [
            _tx("t-1", "2025-01-15T15:00:00Z", quantity="100", price="150.00"),
            _tx("t-2", "2025-01-15T15:45:00Z", quantity="100", price="150.00"),
        ]
        candidate = make_candidate(
            quantity="110", price="151.00", executed_at="2025-01-15T16:00:00Z"
        )

        analysis = analyzer.analyze(candidate, existing)

        assert analysis.pattern == PatternType.SPLIT_ORDER
        assert analysis.recommendation == Recommendation.REVIEW
        assert analysis.tags == ["split-order"]
        assert analysis.total_quantity == Decimal("310")
        assert sorted(analysis.related_transaction_ids) == ["t-1", "t-2"]

    def test_price_gap_breaks_split(self, analyzer, make_candidate):
        existing = [_tx("t-1", "2025-01-15T15:00:00Z", quantity="100", price="100.00")]
        candidate = make_candidate(
            quantity="100", price="150.00", executed_at="2025-01-15T16:00:00Z"
        )

        assert analyzer.analyze(candidate, existing).pattern == PatternType.NONE

    def test_opposite_direction_is_not_split(self, analyzer, make_candidate):
        existing = [
            _tx("t-1", "2025-01-15T15:00:00Z", quantity="100", transaction_type="sell")
        ]
        candidate = make_candidate(
            quantity="100", price="150.00", executed_at="2025-01-15T16:00:00Z"
        )

        assert analyzer.analyze(candidate, existing).pattern == PatternType.NONE


class TestRapidTrading:
    """Tests for rapid trading classification."""

    def test_burst(self, analyzer, make_candidate):
        existing = [
            _tx("t-1", "2025-01-15T15:00:00Z", transaction_type="sell"),
            _tx("t-2", "2025-01-15T15:00:10Z", transaction_type="sell"),
        ]
        candidate = make_candidate(executed_at="2025-01-15T15:00:20Z")

        analysis = analyzer.analyze(candidate, existing)

        assert analysis.pattern == PatternType.RAPID_TRADING
        assert analysis.recommendation == Recommendation.CHECK_PASSED
        assert analysis.rapid_kind == RapidKind.BURST
        assert analysis.window_seconds == 20
        assert "rapid:burst" in analysis.tags

    def test_systematic(self, analyzer, make_candidate):
        existing = [
            _tx("t-1", "2025-01-15T15:00:00Z", transaction_type="sell"),
            _tx("t-2", "2025-01-15T15:01:00Z", transaction_type="sell"),
        ]
        candidate = make_candidate(executed_at="2025-01-15T15:02:00Z")

        analysis = analyzer.analyze(candidate, existing)

        assert analysis.rapid_kind == RapidKind.SYSTEMATIC

    def test_single_neighbour_is_not_rapid(self, analyzer, make_candidate):
        existing = [_tx("t-1", "2025-01-15T15:00:00Z", transaction_type="sell")]
        candidate = make_candidate(executed_at="2025-01-15T15:01:00Z")

        assert analyzer.analyze(candidate, existing).pattern == PatternType.NONE


class TestNoPattern:
    """Inputs the analyzer ignores."""

    def test_identical_trade_is_not_a_pattern(self, analyzer, make_candidate):
        existing = [_tx("t-1", "2025-01-15T15:30:00Z", quantity="100", price="150.50")]

        analysis = analyzer.analyze(make_candidate(), existing)

        assert analysis.pattern == PatternType.NONE

    def test_other_symbols_ignored(self, analyzer, make_candidate):
        existing = [
            _tx("t-1", "2025-01-15T15:29:00Z", symbol="MSFT"),
            _tx("t-2", "2025-01-15T15:29:30Z", symbol="MSFT"),
        ]

        assert analyzer.analyze(make_candidate(), existing).pattern == PatternType.NONE

    def test_missing_execution_time(self, analyzer, make_candidate):
        analysis = analyzer.analyze(
            make_candidate(executed_at=None, transaction_type=TransactionType.SELL), []
        )

        assert analysis.pattern == PatternType.NONE
        assert analysis.recommendation is None
