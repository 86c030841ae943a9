"""
Time-window pattern analysis.

Classifies a candidate against recent same-symbol trades:
- partial fill: pieces of one broker order (shared order id or order size)
- split order: similar orders placed separately within a couple of hours
- rapid trading: several trades within a few minutes

Read-only: the analyzer never writes anything.
"""

import logging
import statistics
from datetime import datetime
from decimal import Decimal
from typing import Optional

from ..config import TimeWindowConfig
from ..schemas.duplicates import (
    ExistingTransaction,
    PatternType,
    RapidKind,
    Recommendation,
    TimeWindowAnalysis,
)
from ..schemas.email import parse_timestamp
from ..schemas.transaction import ParsedTransactionCandidate

logger = logging.getLogger(__name__)

PARTIAL_FILL_CONFIDENCE = 0.7
COMPLETE_FILL_CONFIDENCE = 0.9
SPLIT_ORDER_CONFIDENCE = 0.7
RAPID_TRADING_CONFIDENCE = 0.6

# Intervals at or below this are a burst regardless of trend
BURST_INTERVAL_SECONDS = 10
# Interval coefficient of variation below this is systematic
SYSTEMATIC_INTERVAL_CV = 0.2


def _parse(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return parse_timestamp(value)
    except ValueError:
        return None


def _relative_spread(values: list[Decimal]) -> float:
    low, high = min(values), max(values)
    if low <= 0:
        return 0.0 if high == low else float("inf")
    return float((high - low) / low)


def _coefficient_of_variation(values: list[float]) -> float:
    mean = statistics.fmean(values)
    if mean == 0 or len(values) < 2:
        return 0.0
    return statistics.pstdev(values) / mean


class TimeWindowAnalyzer:
    """Detects partial fills, split orders and rapid trading."""

    def __init__(self, config: Optional[TimeWindowConfig] = None):
        self.config = config or TimeWindowConfig()

    def analyze(
        self, candidate: ParsedTransactionCandidate, recent: list[ExistingTransaction]
    ) -> TimeWindowAnalysis:
        """
        Classify the candidate against recent transactions.

        Args:
            candidate: Parsed candidate with symbol and executed_at
            recent: Recorded transactions (any symbol; filtered here)

        Returns:
            TimeWindowAnalysis; pattern NONE when nothing applies
        """
        executed_at = _parse(candidate.executed_at)
        if executed_at is None or not candidate.symbol or candidate.quantity is None:
            return TimeWindowAnalysis(reason="no execution time or symbol")

        timed: list[tuple[ExistingTransaction, datetime]] = []
        for tx in recent:
            tx_time = _parse(tx.executed_at)
            if tx.symbol != candidate.symbol or tx_time is None:
                continue
            # Same time, quantity and price is a duplicate, not a pattern
            if (
                tx_time == executed_at
                and tx.quantity == candidate.quantity
                and tx.price == candidate.price
            ):
                continue
            timed.append((tx, tx_time))

        for detector in (self._detect_partial_fill, self._detect_split_order, self._detect_rapid):
            analysis = detector(candidate, executed_at, timed)
            if analysis is not None:
                logger.debug(
                    f"Time-window pattern {analysis.pattern.value} for {candidate.symbol}: "
                    f"{analysis.reason}"
                )
                return analysis

        return TimeWindowAnalysis(reason="no pattern")

    def _detect_partial_fill(
        self,
        candidate: ParsedTransactionCandidate,
        executed_at: datetime,
        timed: list[tuple[ExistingTransaction, datetime]],
    ) -> Optional[TimeWindowAnalysis]:
        window = self.config.partial_fill_minutes * 60
        direction = candidate.transaction_type.value

        related = [
            (tx, t)
            for tx, t in timed
            if tx.transaction_type == direction
            and abs((t - executed_at).total_seconds()) <= window
            and self._same_order(candidate, tx)
        ]

        target = candidate.order_quantity
        if target is None:
            target = next((tx.order_quantity for tx, _ in related if tx.order_quantity), None)

        if not related and not (target is not None and candidate.quantity < target):
            return None

        total = candidate.quantity + sum((tx.quantity for tx, _ in related), Decimal("0"))
        if target is not None and total > target:
            return None

        prices = [candidate.price] + [tx.price for tx, _ in related]
        if candidate.price is None or any(p is None for p in prices):
            return None
        if _relative_spread(prices) >= self.config.partial_fill_price_tolerance:
            return None

        value = candidate.quantity * candidate.price + sum(
            (tx.quantity * tx.price for tx, _ in related), Decimal("0")
        )
        average = (value / total).quantize(Decimal("0.0001"))
        complete = target is not None and total == target
        times = [executed_at] + [t for _, t in related]

        tags = ["partial-fill"]
        if complete:
            tags.append("fill-complete")
        return TimeWindowAnalysis(
            pattern=PatternType.PARTIAL_FILL,
            confidence=COMPLETE_FILL_CONFIDENCE if complete else PARTIAL_FILL_CONFIDENCE,
            recommendation=Recommendation.AUTO_MERGE,
            related_transaction_ids=[tx.id for tx, _ in related],
            window_seconds=int((max(times) - min(times)).total_seconds()),
            total_quantity=total,
            target_quantity=target,
            average_price=average,
            fill_group_id=next((tx.fill_group_id for tx, _ in related if tx.fill_group_id), None),
            tags=tags,
            reason=(
                f"fill {len(related) + 1}: {total} of {target if target is not None else '?'} "
                f"@ avg {average}"
            ),
        )

    def _detect_split_order(
        self,
        candidate: ParsedTransactionCandidate,
        executed_at: datetime,
        timed: list[tuple[ExistingTransaction, datetime]],
    ) -> Optional[TimeWindowAnalysis]:
        window = self.config.split_order_minutes * 60
        direction = candidate.transaction_type.value

        related = [
            (tx, t)
            for tx, t in timed
            if tx.transaction_type == direction
            and abs((t - executed_at).total_seconds()) <= window
            and not self._same_order(candidate, tx)
        ]
        if not related or candidate.price is None:
            return None

        prices = [candidate.price] + [tx.price for tx, _ in related]
        mean_price = sum(prices) / len(prices)
        if mean_price <= 0:
            return None
        price_variation = float((max(prices) - min(prices)) / mean_price)
        if price_variation >= self.config.split_order_price_tolerance:
            return None

        quantities = [float(candidate.quantity)] + [float(tx.quantity) for tx, _ in related]
        quantity_cv = _coefficient_of_variation(quantities)
        if quantity_cv >= self.config.split_order_quantity_tolerance:
            return None

        times = [executed_at] + [t for _, t in related]
        total = candidate.quantity + sum((tx.quantity for tx, _ in related), Decimal("0"))
        return TimeWindowAnalysis(
            pattern=PatternType.SPLIT_ORDER,
            confidence=SPLIT_ORDER_CONFIDENCE,
            recommendation=Recommendation.REVIEW,
            related_transaction_ids=[tx.id for tx, _ in related],
            window_seconds=int((max(times) - min(times)).total_seconds()),
            total_quantity=total,
            tags=["split-order"],
            reason=(
                f"{len(related) + 1} similar {direction} orders, "
                f"price variation {price_variation:.1%}, quantity cv {quantity_cv:.2f}"
            ),
        )

    def _detect_rapid(
        self,
        candidate: ParsedTransactionCandidate,
        executed_at: datetime,
        timed: list[tuple[ExistingTransaction, datetime]],
    ) -> Optional[TimeWindowAnalysis]:
        window = self.config.rapid_trading_seconds
        nearby = [
            (tx, t) for tx, t in timed if abs((t - executed_at).total_seconds()) <= window
        ]
        if len(nearby) < 2:
            return None

        times = sorted([executed_at] + [t for _, t in nearby])
        intervals = [(b - a).total_seconds() for a, b in zip(times, times[1:])]
        kind = self._rapid_kind(intervals)

        return TimeWindowAnalysis(
            pattern=PatternType.RAPID_TRADING,
            confidence=RAPID_TRADING_CONFIDENCE,
            recommendation=Recommendation.CHECK_PASSED,
            related_transaction_ids=[tx.id for tx, _ in nearby],
            window_seconds=int((times[-1] - times[0]).total_seconds()),
            rapid_kind=kind,
            tags=["rapid-trading", f"rapid:{kind.value}"],
            reason=f"{len(nearby) + 1} trades within {window}s ({kind.value})",
        )

    @staticmethod
    def _rapid_kind(intervals: list[float]) -> RapidKind:
        if all(i <= BURST_INTERVAL_SECONDS for i in intervals):
            return RapidKind.BURST
        if len(intervals) >= 2 and all(b < a for a, b in zip(intervals, intervals[1:])):
            return RapidKind.BURST
        if _coefficient_of_variation(intervals) < SYSTEMATIC_INTERVAL_CV:
            return RapidKind.SYSTEMATIC
        return RapidKind.RANDOM

    @staticmethod
    def _same_order(candidate: ParsedTransactionCandidate, tx: ExistingTransaction) -> bool:
        if candidate.order_id and tx.order_id:
            return candidate.order_id == tx.order_id
        if candidate.order_quantity is not None and tx.order_quantity is not None:
            return candidate.order_quantity == tx.order_quantity
        return False
