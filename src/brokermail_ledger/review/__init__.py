"""
Manual review queue for candidates that cannot be auto-inserted.
"""

from .queue import (
    ManualReviewQueue,
    QueueStats,
    SweepResult,
    TransactionWriter,
    apply_candidate_edits,
)

__all__ = [
    "ManualReviewQueue",
    "QueueStats",
    "SweepResult",
    "TransactionWriter",
    "apply_candidate_edits",
]
