"""Tests for multi-level duplicate detection."""

import sqlite3
from decimal import Decimal
from unittest.mock import Mock, patch

import pytest

from brokermail_ledger.config import Config
from brokermail_ledger.duplicates import (
    MultiLevelDuplicateDetector,
    fill_group_key,
    risk_for_score,
)
from brokermail_ledger.errors import DuplicateCheckError
from brokermail_ledger.ledger_client import LedgerAPIError
from brokermail_ledger.schemas.duplicates import MatchLevel, Recommendation, RiskLevel
from brokermail_ledger.state_store import EmailStatus


@pytest.fixture
def detector(store):
    return MultiLevelDuplicateDetector(store, Config())


class TestFingerprintLevel:
    """Level 1: exact fingerprint."""

    def test_unknown_fingerprint_passes(self, detector, make_identification):
        assert detector.check_fingerprint(make_identification("fp1")) is None

    def test_settled_fingerprint_is_skipped(self, store, detector, make_identification):
        store.mark_email("fp1", EmailStatus.CREATED, transaction_id="t-1")

        result = detector.check_fingerprint(make_identification("fp1"))

        assert result.is_duplicate
        assert result.recommendation == Recommendation.AUTO_SKIP
        assert result.match_level == MatchLevel.EXACT_FINGERPRINT
        assert result.matched_transaction_id == "t-1"
        assert result.tags == ["exact-duplicate"]

    def test_failed_fingerprint_is_retried(self, store, detector, make_identification):
        store.mark_email("fp1", EmailStatus.FAILED, error_message="LedgerWriteError: 503")

        assert detector.check_fingerprint(make_identification("fp1")) is None

    def test_rejected_fingerprint(self, store, detector, make_identification):
        store.remember_rejected("fp1", reason="not mine")

        result = detector.check_fingerprint(make_identification("fp1"))

        assert result.recommendation == Recommendation.AUTO_SKIP
        assert result.tags == ["previously-rejected"]

    def test_store_failure_raises(self, store, detector, make_identification):
        with patch.object(store, "is_rejected", side_effect=sqlite3.OperationalError("locked")):
            with pytest.raises(DuplicateCheckError):
                detector.check_fingerprint(make_identification("fp1"))


class TestContentSimilarity:
    """Level 3: same trade recorded under another fingerprint."""

    def test_no_history_passes(self, detector, make_candidate, make_identification):
        result = detector.detect(make_identification("fp1"), make_candidate())

        assert not result.is_duplicate
        assert result.recommendation == Recommendation.CHECK_PASSED

    def test_low_confidence_needs_review(self, detector, make_candidate, make_identification):
        result = detector.detect(make_identification("fp1"), make_candidate(confidence=0.4))

        assert not result.is_duplicate
        assert result.recommendation == Recommendation.REVIEW
        assert result.needs_review

    def test_identical_trade_merges(self, store, detector, make_candidate, make_identification):
        store.record_transaction("fp-old", make_candidate(), "t-1", "p-tfsa")

        result = detector.detect(make_identification("fp-new"), make_candidate(), "p-tfsa")

        assert result.is_duplicate
        assert result.recommendation == Recommendation.AUTO_MERGE
        assert result.match_level == MatchLevel.CONTENT_SIMILARITY
        assert result.matched_transaction_id == "t-1"
        assert result.similarity_score == 1.0

    def test_similar_trade_needs_review(
        self, store, detector, make_candidate, make_identification
    ):
        store.record_transaction("fp-old", make_candidate(), "t-1", "p-tfsa")
        candidate = make_candidate(price="150.60", executed_at=None)

        result = detector.detect(make_identification("fp-new"), candidate, "p-tfsa")

        assert result.is_duplicate
        assert result.recommendation == Recommendation.REVIEW
        assert result.tags == ["possible-duplicate"]
        assert result.risk_level == RiskLevel.CRITICAL
        assert 0.9 < result.similarity_score < 1.0

    def test_outside_tolerance_passes(self, store, detector, make_candidate, make_identification):
        store.record_transaction("fp-old", make_candidate(), "t-1", "p-tfsa")
        candidate = make_candidate(price="152.00", executed_at=None)

        result = detector.detect(make_identification("fp-new"), candidate, "p-tfsa")

        assert not result.is_duplicate
        assert result.recommendation == Recommendation.CHECK_PASSED

    def test_other_day_is_not_a_match(self, store, detector, make_candidate, make_identification):
        store.record_transaction(
            "fp-old",
            make_candidate(transaction_date="2025-01-14", executed_at="2025-01-14T15:30:00Z"),
            "t-1",
            "p-tfsa",
        )

        result = detector.detect(make_identification("fp-new"), make_candidate(), "p-tfsa")

        assert not result.is_duplicate

    def test_skip_content(self, store, detector, make_candidate, make_identification):
        store.record_transaction("fp-old", make_candidate(), "t-1", "p-tfsa")

        result = detector.detect(
            make_identification("fp-new"), make_candidate(), "p-tfsa", skip_content=True
        )

        assert result.recommendation == Recommendation.CHECK_PASSED

    def test_history_failure_fails_closed(
        self, store, detector, make_candidate, make_identification
    ):
        with patch.object(
            store, "get_recent_transactions", side_effect=sqlite3.OperationalError("disk I/O")
        ):
            with pytest.raises(DuplicateCheckError):
                detector.detect(make_identification("fp1"), make_candidate(), "p-tfsa")


class TestTimeWindowLevel:
    """Level 2: patterns take precedence over content similarity."""

    def test_partial_fill_is_not_a_duplicate(
        self, store, detector, make_candidate, make_identification
    ):
        store.record_transaction(
            "fp-1",
            make_candidate(
                quantity="40", price="150.00", order_id="WS1", order_quantity=Decimal("100")
            ),
            "t-1",
            "p-tfsa",
        )
        second = make_candidate(
            quantity="40",
            price="150.00",
            order_id="WS1",
            order_quantity=Decimal("100"),
            executed_at="2025-01-15T15:31:00Z",
        )

        result = detector.detect(make_identification("fp-2"), second, "p-tfsa")

        assert not result.is_duplicate
        assert result.is_partial_fill
        assert result.match_level == MatchLevel.TIME_WINDOW
        assert result.matched_transaction_id == "t-1"


class TestLedgerHistory:
    """History from the ledger joins the local record."""

    def test_ledger_transaction_matches(self, store, ledger, make_candidate, make_identification):
        asset_id = ledger.get_or_create_asset("AAPL")
        ledger.create_transaction(
            "p-tfsa",
            asset_id,
            "buy",
            Decimal("100"),
            Decimal("150.50"),
            "2025-01-15",
            idempotency_key="other-key",
            executed_at="2025-01-15T15:30:00Z",
        )
        detector = MultiLevelDuplicateDetector(store, Config(), ledger=ledger)

        result = detector.detect(make_identification("fp1"), make_candidate(), "p-tfsa")

        assert result.recommendation == Recommendation.AUTO_MERGE
        assert result.matched_transaction_id == ledger.transactions[0].id

    def test_ledger_failure_fails_closed(self, store, make_candidate, make_identification):
        ledger = Mock()
        ledger.get_transactions.side_effect = LedgerAPIError(500, "boom")
        detector = MultiLevelDuplicateDetector(store, Config(), ledger=ledger)

        with pytest.raises(DuplicateCheckError):
            detector.detect(make_identification("fp1"), make_candidate(), "p-tfsa")


class TestHelpers:
    """Tests for module helpers."""

    def test_risk_for_score(self):
        assert risk_for_score(0.95) == RiskLevel.CRITICAL
        assert risk_for_score(0.8) == RiskLevel.HIGH
        assert risk_for_score(0.6) == RiskLevel.MEDIUM
        assert risk_for_score(0.1) == RiskLevel.LOW

    def test_fill_group_key(self, make_candidate):
        candidate = make_candidate(order_id="WS1234567")
        assert fill_group_key(candidate, "p-tfsa") == "p-tfsa:AAPL:buy:WS1234567:2025-01-15"

    def test_fill_group_key_by_order_size(self, make_candidate):
        candidate = make_candidate(order_quantity=Decimal("100"))
        assert fill_group_key(candidate, None) == "-:AAPL:buy:qty100:2025-01-15"
