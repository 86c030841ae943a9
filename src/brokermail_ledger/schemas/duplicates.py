"""
Duplicate detection and time-window analysis results.

DuplicateDetectionResult is produced fresh per candidate. It is never
persisted on its own: it travels inside ProcessingResult and is embedded in
review queue items.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional


class MatchLevel(str, Enum):
    """Which detection level produced the match."""

    EXACT_FINGERPRINT = "exact-fingerprint"
    CONTENT_SIMILARITY = "content-similarity"
    TIME_WINDOW = "time-window-heuristic"


class Recommendation(str, Enum):
    """
    Disposition suggested to the orchestrator.

    AUTO_SKIP: Known email, nothing to do
    AUTO_MERGE: Fold into an existing transaction or running fill
    REVIEW: A human has to decide
    CHECK_PASSED: No duplicate found, safe to proceed
    """

    AUTO_SKIP = "auto-skip"
    AUTO_MERGE = "auto-merge"
    REVIEW = "review"
    CHECK_PASSED = "auto-skip-check-passed"


class RiskLevel(str, Enum):
    """Duplicate risk derived from the similarity score."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class PatternType(str, Enum):
    """Time-window classification."""

    NONE = "none"
    RAPID_TRADING = "rapid-trading"
    PARTIAL_FILL = "partial-fill"
    SPLIT_ORDER = "split-order"


class RapidKind(str, Enum):
    """Shape of a rapid trading sequence."""

    BURST = "burst"  # Intervals shrinking or all within a few seconds
    SYSTEMATIC = "systematic"  # Nearly regular intervals
    RANDOM = "random"


def _str_or_none(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _decimal_or_none(value) -> Optional[Decimal]:
    return Decimal(str(value)) if value not in (None, "") else None


@dataclass
class ExistingTransaction:
    """A previously recorded trade, from the local store or the ledger."""

    id: str
    symbol: str
    transaction_type: str
    quantity: Decimal
    price: Decimal
    transaction_date: Optional[str] = None  # YYYY-MM-DD
    executed_at: Optional[str] = None  # ISO-8601 UTC
    order_id: Optional[str] = None
    order_quantity: Optional[Decimal] = None
    portfolio_id: Optional[str] = None
    fill_group_id: Optional[int] = None
    source: str = "local"


@dataclass
class TimeWindowAnalysis:
    """Annotation produced by the time-window analyzer."""

    pattern: PatternType = PatternType.NONE
    confidence: float = 0.0
    recommendation: Optional[Recommendation] = None
    related_transaction_ids: list[str] = field(default_factory=list)
    window_seconds: int = 0
    total_quantity: Optional[Decimal] = None
    target_quantity: Optional[Decimal] = None
    average_price: Optional[Decimal] = None
    fill_group_id: Optional[int] = None
    rapid_kind: Optional[RapidKind] = None
    tags: list[str] = field(default_factory=list)
    reason: str = ""

    @property
    def is_pattern(self) -> bool:
        return self.pattern != PatternType.NONE

    @property
    def is_complete_fill(self) -> bool:
        """Running fill quantity reached the stated order size."""
        return (
            self.pattern == PatternType.PARTIAL_FILL
            and self.target_quantity is not None
            and self.total_quantity == self.target_quantity
        )

    def to_dict(self) -> dict:
        """Serialize to dictionary for JSON storage."""
        return {
            "pattern": self.pattern.value,
            "confidence": self.confidence,
            "recommendation": self.recommendation.value if self.recommendation else None,
            "related_transaction_ids": list(self.related_transaction_ids),
            "window_seconds": self.window_seconds,
            "total_quantity": _str_or_none(self.total_quantity),
            "target_quantity": _str_or_none(self.target_quantity),
            "average_price": _str_or_none(self.average_price),
            "fill_group_id": self.fill_group_id,
            "rapid_kind": self.rapid_kind.value if self.rapid_kind else None,
            "tags": list(self.tags),
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TimeWindowAnalysis":
        """Deserialize from dictionary."""
        return cls(
            pattern=PatternType(data.get("pattern", "none")),
            confidence=data.get("confidence", 0.0),
            recommendation=(
                Recommendation(data["recommendation"]) if data.get("recommendation") else None
            ),
            related_transaction_ids=data.get("related_transaction_ids", []),
            window_seconds=data.get("window_seconds", 0),
            total_quantity=_decimal_or_none(data.get("total_quantity")),
            target_quantity=_decimal_or_none(data.get("target_quantity")),
            average_price=_decimal_or_none(data.get("average_price")),
            fill_group_id=data.get("fill_group_id"),
            rapid_kind=RapidKind(data["rapid_kind"]) if data.get("rapid_kind") else None,
            tags=data.get("tags", []),
            reason=data.get("reason", ""),
        )


@dataclass
class DuplicateDetectionResult:
    """Outcome of the cascading duplicate checks for one candidate."""

    is_duplicate: bool
    recommendation: Recommendation
    match_level: Optional[MatchLevel] = None
    matched_transaction_id: Optional[str] = None
    similarity_score: float = 0.0
    risk_level: RiskLevel = RiskLevel.LOW
    time_window: Optional[TimeWindowAnalysis] = None
    tags: list[str] = field(default_factory=list)
    reasons: list[str] = field(default_factory=list)

    @property
    def needs_review(self) -> bool:
        """Unresolved duplicate ambiguity blocks auto-insert."""
        return self.recommendation == Recommendation.REVIEW

    @property
    def is_partial_fill(self) -> bool:
        return (
            self.time_window is not None
            and self.time_window.pattern == PatternType.PARTIAL_FILL
            and self.recommendation == Recommendation.AUTO_MERGE
        )

    def to_dict(self) -> dict:
        """Serialize to dictionary for JSON storage."""
        return {
            "is_duplicate": self.is_duplicate,
            "recommendation": self.recommendation.value,
            "match_level": self.match_level.value if self.match_level else None,
            "matched_transaction_id": self.matched_transaction_id,
            "similarity_score": self.similarity_score,
            "risk_level": self.risk_level.value,
            "time_window": self.time_window.to_dict() if self.time_window else None,
            "tags": list(self.tags),
            "reasons": list(self.reasons),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DuplicateDetectionResult":
        """Deserialize from dictionary."""
        return cls(
            is_duplicate=data["is_duplicate"],
            recommendation=Recommendation(data["recommendation"]),
            match_level=MatchLevel(data["match_level"]) if data.get("match_level") else None,
            matched_transaction_id=data.get("matched_transaction_id"),
            similarity_score=data.get("similarity_score", 0.0),
            risk_level=RiskLevel(data.get("risk_level", "low")),
            time_window=(
                TimeWindowAnalysis.from_dict(data["time_window"])
                if data.get("time_window")
                else None
            ),
            tags=data.get("tags", []),
            reasons=data.get("reasons", []),
        )
