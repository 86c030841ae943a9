"""
Multi-level duplicate detection.

Levels run in order and the first conclusive one wins:
1. Exact fingerprint: the email was already handled (or rejected)
2. Time-window patterns: partial fills and split orders
3. Content similarity: same symbol, type and date with quantity and price
   within a relative tolerance
"""

import logging
import sqlite3
from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

from ..config import Config
from ..confidence import ConfidenceScorer, ConfidenceThresholds
from ..errors import DuplicateCheckError
from ..ledger_client import LedgerClient, LedgerError, LedgerTransaction
from ..schemas.duplicates import (
    DuplicateDetectionResult,
    ExistingTransaction,
    MatchLevel,
    PatternType,
    Recommendation,
    RiskLevel,
    TimeWindowAnalysis,
)
from ..schemas.email import EmailIdentification
from ..schemas.transaction import ParsedTransactionCandidate
from ..state_store import StateStore
from .time_window import TimeWindowAnalyzer

logger = logging.getLogger(__name__)

# Similarity score at or above which the risk level is raised
CRITICAL_RISK_SCORE = 0.9
HIGH_RISK_SCORE = 0.75
MEDIUM_RISK_SCORE = 0.6


def risk_for_score(score: float) -> RiskLevel:
    """Map a similarity score to a risk level."""
    if score >= CRITICAL_RISK_SCORE:
        return RiskLevel.CRITICAL
    if score >= HIGH_RISK_SCORE:
        return RiskLevel.HIGH
    if score >= MEDIUM_RISK_SCORE:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def _relative_diff(a: Decimal, b: Decimal) -> float:
    largest = max(abs(a), abs(b))
    if largest == 0:
        return 0.0
    return float(abs(a - b) / largest)


def _trade_date(candidate: ParsedTransactionCandidate) -> Optional[date]:
    value = candidate.transaction_date or (candidate.executed_at or "")[:10]
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def _from_ledger(tx: LedgerTransaction, symbol: str) -> ExistingTransaction:
    meta = tx.meta or {}
    order_quantity = meta.get("order_quantity")
    return ExistingTransaction(
        id=tx.id,
        symbol=tx.symbol or symbol,
        transaction_type=tx.transaction_type,
        quantity=tx.quantity,
        price=tx.price,
        transaction_date=tx.transaction_date,
        executed_at=tx.executed_at,
        order_id=meta.get("order_id"),
        order_quantity=Decimal(str(order_quantity)) if order_quantity is not None else None,
        portfolio_id=tx.portfolio_id or None,
        fill_group_id=meta.get("fill_group_id"),
        source="ledger",
    )


class MultiLevelDuplicateDetector:
    """
    Cascading duplicate checks for one candidate.

    Read-only. Storage failures surface as DuplicateCheckError so the caller
    can fail closed.
    """

    def __init__(
        self,
        store: StateStore,
        config: Optional[Config] = None,
        analyzer: Optional[TimeWindowAnalyzer] = None,
        ledger: Optional[LedgerClient] = None,
        scorer: Optional[ConfidenceScorer] = None,
    ):
        self.store = store
        self.config = config or Config()
        self.analyzer = analyzer or TimeWindowAnalyzer(self.config.time_window)
        self.ledger = ledger
        self.scorer = scorer or ConfidenceScorer(
            ConfidenceThresholds(auto_insert=self.config.pipeline.auto_insert_threshold)
        )

    # Level 1

    def check_fingerprint(
        self, identification: EmailIdentification
    ) -> Optional[DuplicateDetectionResult]:
        """
        Exact fingerprint level.

        Returns:
            AUTO_SKIP result for a rejected or settled fingerprint, else None

        Raises:
            DuplicateCheckError: State store unreadable
        """
        fingerprint = identification.fingerprint_hash
        try:
            rejected = self.store.is_rejected(fingerprint)
            record = None if rejected else self.store.get_processed_email(fingerprint)
        except sqlite3.Error as e:
            raise DuplicateCheckError(f"Fingerprint lookup failed: {e}") from e

        if rejected:
            return DuplicateDetectionResult(
                is_duplicate=True,
                recommendation=Recommendation.AUTO_SKIP,
                match_level=MatchLevel.EXACT_FINGERPRINT,
                similarity_score=1.0,
                risk_level=RiskLevel.CRITICAL,
                tags=["previously-rejected"],
                reasons=["fingerprint was rejected by a reviewer"],
            )

        if record is not None and record.is_settled:
            return DuplicateDetectionResult(
                is_duplicate=True,
                recommendation=Recommendation.AUTO_SKIP,
                match_level=MatchLevel.EXACT_FINGERPRINT,
                matched_transaction_id=record.transaction_id,
                similarity_score=1.0,
                risk_level=RiskLevel.CRITICAL,
                tags=["exact-duplicate"],
                reasons=[f"fingerprint already processed ({record.status.value})"],
            )
        return None

    # Levels 2 and 3

    def gather_existing(
        self, candidate: ParsedTransactionCandidate, portfolio_id: Optional[str] = None
    ) -> list[ExistingTransaction]:
        """
        Recent same-symbol transactions from the local store and the ledger.

        Raises:
            DuplicateCheckError: Store or ledger unreadable
        """
        symbol = candidate.symbol
        trade_date = _trade_date(candidate)
        if not symbol or trade_date is None:
            return []

        dup_config = self.config.duplicates
        since = (trade_date - timedelta(days=dup_config.lookback_days)).isoformat()
        until = (trade_date + timedelta(days=dup_config.date_window_days)).isoformat()

        try:
            existing = self.store.get_recent_transactions(symbol, since, until, portfolio_id)
        except sqlite3.Error as e:
            raise DuplicateCheckError(f"Transaction history lookup failed: {e}") from e

        if self.ledger is not None and portfolio_id:
            try:
                remote = self.ledger.get_transactions(portfolio_id, symbol=symbol, since=since)
            except LedgerError as e:
                raise DuplicateCheckError(f"Ledger history lookup failed: {e}") from e
            known = {tx.id for tx in existing}
            for tx in remote:
                if tx.id not in known and (tx.transaction_date or "") <= until:
                    existing.append(_from_ledger(tx, symbol))

        return existing

    def detect(
        self,
        identification: EmailIdentification,
        candidate: ParsedTransactionCandidate,
        portfolio_id: Optional[str] = None,
        existing: Optional[list[ExistingTransaction]] = None,
        skip_content: bool = False,
    ) -> DuplicateDetectionResult:
        """
        Run all levels for one candidate.

        Args:
            identification: Email identity (level 1)
            candidate: Parsed candidate (levels 2 and 3)
            portfolio_id: Limit history to this portfolio
            existing: Pre-fetched history; gathered when None
            skip_content: Stop after the fingerprint level

        Raises:
            DuplicateCheckError: Any storage the checks depend on is unreadable
        """
        fingerprint_result = self.check_fingerprint(identification)
        if fingerprint_result is not None:
            return fingerprint_result

        if skip_content or not candidate.symbol:
            return self._no_match(candidate)

        if existing is None:
            existing = self.gather_existing(candidate, portfolio_id)

        analysis = self.analyzer.analyze(candidate, existing)
        if analysis.pattern in (PatternType.PARTIAL_FILL, PatternType.SPLIT_ORDER):
            return self._pattern_result(analysis)

        content_result = self._check_content(candidate, existing)
        if content_result is not None:
            content_result.time_window = analysis if analysis.is_pattern else None
            return content_result

        return self._no_match(candidate, analysis)

    def _pattern_result(self, analysis: TimeWindowAnalysis) -> DuplicateDetectionResult:
        partial = analysis.pattern == PatternType.PARTIAL_FILL
        return DuplicateDetectionResult(
            is_duplicate=False,
            recommendation=analysis.recommendation or Recommendation.REVIEW,
            match_level=MatchLevel.TIME_WINDOW,
            matched_transaction_id=(
                analysis.related_transaction_ids[0] if analysis.related_transaction_ids else None
            ),
            similarity_score=analysis.confidence,
            risk_level=RiskLevel.LOW if partial else RiskLevel.MEDIUM,
            time_window=analysis,
            tags=list(analysis.tags),
            reasons=[analysis.reason],
        )

    def _check_content(
        self, candidate: ParsedTransactionCandidate, existing: list[ExistingTransaction]
    ) -> Optional[DuplicateDetectionResult]:
        if candidate.quantity is None or candidate.price is None:
            return None

        tolerance = self.config.duplicates.similarity_tolerance
        near_exact = self.config.duplicates.near_exact_tolerance
        trade_date = _trade_date(candidate)
        direction = candidate.transaction_type.value

        best: Optional[tuple[float, ExistingTransaction, bool]] = None
        for tx in existing:
            if tx.symbol != candidate.symbol or tx.transaction_type != direction:
                continue
            if trade_date is not None and tx.transaction_date:
                try:
                    days = abs((date.fromisoformat(tx.transaction_date) - trade_date).days)
                except ValueError:
                    continue
                if days > self.config.duplicates.date_window_days:
                    continue

            q_diff = _relative_diff(candidate.quantity, tx.quantity)
            p_diff = _relative_diff(candidate.price, tx.price)
            if q_diff > tolerance or p_diff > tolerance:
                continue

            score = 1.0 - ((q_diff + p_diff) / (2 * tolerance)) * 0.5 if tolerance else 1.0
            identical = q_diff <= near_exact and p_diff <= near_exact and self._same_moment(
                candidate, tx
            )
            if best is None or score > best[0]:
                best = (score, tx, identical)

        if best is None:
            return None

        score, tx, identical = best
        if identical:
            return DuplicateDetectionResult(
                is_duplicate=True,
                recommendation=Recommendation.AUTO_MERGE,
                match_level=MatchLevel.CONTENT_SIMILARITY,
                matched_transaction_id=tx.id,
                similarity_score=round(score, 4),
                risk_level=RiskLevel.CRITICAL,
                tags=["content-duplicate"],
                reasons=[f"identical trade already recorded as {tx.id}"],
            )

        return DuplicateDetectionResult(
            is_duplicate=True,
            recommendation=Recommendation.REVIEW,
            match_level=MatchLevel.CONTENT_SIMILARITY,
            matched_transaction_id=tx.id,
            similarity_score=round(score, 4),
            risk_level=risk_for_score(score),
            tags=["possible-duplicate"],
            reasons=[
                f"similar to {tx.id}: {tx.quantity} @ {tx.price} on {tx.transaction_date}"
            ],
        )

    @staticmethod
    def _same_moment(candidate: ParsedTransactionCandidate, tx: ExistingTransaction) -> bool:
        if candidate.executed_at and tx.executed_at:
            return candidate.executed_at == tx.executed_at
        return bool(candidate.order_id) and candidate.order_id == tx.order_id

    def _no_match(
        self,
        candidate: ParsedTransactionCandidate,
        analysis: Optional[TimeWindowAnalysis] = None,
    ) -> DuplicateDetectionResult:
        pattern = analysis if analysis is not None and analysis.is_pattern else None
        if self.scorer.meets_auto_insert(candidate.confidence):
            recommendation = Recommendation.CHECK_PASSED
            reasons = ["no duplicate found"]
        else:
            recommendation = Recommendation.REVIEW
            reasons = [f"no duplicate found, confidence {candidate.confidence:.2f} too low"]
        if pattern is not None:
            reasons.append(pattern.reason)
        return DuplicateDetectionResult(
            is_duplicate=False,
            recommendation=recommendation,
            time_window=pattern,
            tags=list(pattern.tags) if pattern else [],
            reasons=reasons,
        )


def fill_group_key(candidate: ParsedTransactionCandidate, portfolio_id: Optional[str]) -> str:
    """Key grouping the fills of one broker order."""
    order = candidate.order_id or f"qty{candidate.order_quantity}"
    return ":".join(
        [
            portfolio_id or "-",
            candidate.symbol or "-",
            candidate.transaction_type.value,
            order,
            candidate.transaction_date or "-",
        ]
    )

