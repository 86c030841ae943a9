"""
Confidence scoring implementation.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from ..config import DEFAULT_AUTO_INSERT_THRESHOLD
from ..schemas.transaction import ParsedTransactionCandidate


@dataclass
class ConfidenceThresholds:
    """Configurable thresholds for the auto-insert decision."""

    auto_insert: float = DEFAULT_AUTO_INSERT_THRESHOLD  # At or above: write without review
    # Capped confidences land this far below auto_insert
    cap_margin: float = 0.01
    # Confidence after a stated/computed total mismatch
    total_mismatch: float = 0.5
    # Stated total may differ from quantity × price ± fees by this much
    total_tolerance: Decimal = Decimal("0.01")


class ConfidenceScorer:
    """
    Combines sub-confidences into the candidate confidence.

    Confidence sources:
    1. Template parser: 0.3-1.0 from which fields were found
    2. AI symbol resolver: model-reported, only for ambiguous symbols
    3. Total reconciliation: drops to 0.5 on mismatch

    The candidate confidence is the minimum of the sources, never an average.
    """

    def __init__(self, thresholds: Optional[ConfidenceThresholds] = None):
        """Initialize scorer with thresholds."""
        self.thresholds = thresholds or ConfidenceThresholds()

    def combine(self, *sub_confidences: Optional[float]) -> float:
        """Minimum of the present sub-confidences, clamped to [0, 1]."""
        present = [c for c in sub_confidences if c is not None]
        if not present:
            return 0.0
        return max(0.0, min(1.0, min(present)))

    def cap_below_threshold(self, value: float) -> float:
        """Largest confidence that still routes to review."""
        return min(value, max(0.0, self.thresholds.auto_insert - self.thresholds.cap_margin))

    def meets_auto_insert(self, value: float) -> bool:
        return value >= self.thresholds.auto_insert

    def reconcile_total(self, candidate: ParsedTransactionCandidate) -> Optional[bool]:
        """
        Compare the stated total with quantity × price, with and without fees.

        Returns:
            True/False for a match/mismatch, None when there is nothing to compare
        """
        computed = candidate.computed_total
        if candidate.total_amount is None or computed is None:
            return None

        fees = candidate.fees or Decimal("0")
        tolerance = self.thresholds.total_tolerance
        for expected in (computed, computed + fees, computed - fees):
            if abs(candidate.total_amount - expected) <= tolerance:
                return True
        return False

    def reconciliation_confidence(self, reconciled: Optional[bool]) -> Optional[float]:
        """Sub-confidence contributed by total reconciliation."""
        if reconciled is False:
            return self.thresholds.total_mismatch
        return None
