"""
Duplicate detection.

Fingerprint, time-window and content-similarity checks for parsed
candidates. Nothing here writes to the ledger or the queue.
"""

from .detector import MultiLevelDuplicateDetector, fill_group_key, risk_for_score
from .time_window import TimeWindowAnalyzer

__all__ = [
    "MultiLevelDuplicateDetector",
    "TimeWindowAnalyzer",
    "fill_group_key",
    "risk_for_score",
]
