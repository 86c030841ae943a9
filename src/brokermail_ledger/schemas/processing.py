"""
Orchestrator options and results.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .duplicates import DuplicateDetectionResult
from .transaction import ParsedTransactionCandidate


@dataclass
class ProcessingOptions:
    """Per-call options for process_email."""

    # Key for the external auto-insert setting lookup
    config_id: Optional[str] = None
    # Use this portfolio instead of mapping the account type
    portfolio_id_hint: Optional[str] = None
    create_missing_portfolios: bool = True
    # Skips content-similarity and time-window levels, never the fingerprint
    skip_duplicate_check: bool = False
    enhance_symbols: bool = True
    # Run every check, write nothing
    dry_run: bool = False
    # Stop after parsing
    validate_only: bool = False


class ProcessingOutcome(str, Enum):
    """What process_email did with the email."""

    CREATED = "created"
    QUEUED = "queued"
    SKIPPED_DUPLICATE = "skipped-duplicate"
    MERGED = "merged"
    REJECTED_PREVIOUSLY = "rejected-previously"
    VALIDATED = "validated"
    FAILED = "failed"


@dataclass
class ProcessingResult:
    """
    Return value of process_email.

    On a successful create-or-queue outcome exactly one of
    transaction_created / queued_for_review is True. No-op outcomes
    (known fingerprint, merged duplicate) succeed with both False.
    """

    success: bool
    outcome: ProcessingOutcome
    fingerprint: Optional[str] = None
    transaction_created: bool = False
    queued_for_review: bool = False
    review_queue_id: Optional[int] = None
    transaction: Optional[dict[str, Any]] = None
    candidate: Optional[ParsedTransactionCandidate] = None
    duplicate_result: Optional[DuplicateDetectionResult] = None
    portfolio_id: Optional[str] = None
    # Existing transaction id or fill group the email was folded into
    merged_into: Optional[str] = None
    errors: list[str] = field(default_factory=list)
    processing_time_ms: int = 0

    @property
    def is_noop(self) -> bool:
        return self.success and not self.transaction_created and not self.queued_for_review

    def to_dict(self) -> dict:
        """Serialize for JSON output."""
        return {
            "success": self.success,
            "outcome": self.outcome.value,
            "fingerprint": self.fingerprint,
            "transaction_created": self.transaction_created,
            "queued_for_review": self.queued_for_review,
            "review_queue_id": self.review_queue_id,
            "transaction": self.transaction,
            "candidate": self.candidate.to_dict() if self.candidate else None,
            "duplicate_result": self.duplicate_result.to_dict() if self.duplicate_result else None,
            "portfolio_id": self.portfolio_id,
            "merged_into": self.merged_into,
            "errors": list(self.errors),
            "processing_time_ms": self.processing_time_ms,
        }


@dataclass
class BatchResult:
    """Aggregate of process_batch."""

    results: list[ProcessingResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def created(self) -> int:
        return sum(1 for r in self.results if r.transaction_created)

    @property
    def queued(self) -> int:
        return sum(1 for r in self.results if r.queued_for_review)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.results if r.is_noop)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)
