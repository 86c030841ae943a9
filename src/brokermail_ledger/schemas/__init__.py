"""
Schema definitions for the broker mail pipeline.

Contains:
- Fingerprint functions (SSOT for email identity)
- RawEmail / EmailIdentification
- ParsedTransactionCandidate (canonical parse result)
- DuplicateDetectionResult / TimeWindowAnalysis
- ReviewQueueItem and reviewer actions
- ProcessingOptions / ProcessingResult
"""

from .duplicates import (
    DuplicateDetectionResult,
    ExistingTransaction,
    MatchLevel,
    PatternType,
    RapidKind,
    Recommendation,
    RiskLevel,
    TimeWindowAnalysis,
)
from .email import EmailIdentification, NormalizationMode, RawEmail
from .fingerprint import (
    compute_email_hash,
    compute_fingerprint,
    compute_raw_fingerprint,
    normalize_text,
)
from .processing import BatchResult, ProcessingOptions, ProcessingOutcome, ProcessingResult
from .review import (
    QueueFilter,
    ReviewAction,
    ReviewActionRequest,
    ReviewPriority,
    ReviewQueueItem,
    ReviewStatus,
)
from .transaction import AssetType, ParsedTransactionCandidate, SymbolSource, TransactionType

__all__ = [
    "AssetType",
    "BatchResult",
    "DuplicateDetectionResult",
    "EmailIdentification",
    "ExistingTransaction",
    "MatchLevel",
    "NormalizationMode",
    "ParsedTransactionCandidate",
    "PatternType",
    "ProcessingOptions",
    "ProcessingOutcome",
    "ProcessingResult",
    "QueueFilter",
    "RapidKind",
    "RawEmail",
    "Recommendation",
    "ReviewAction",
    "ReviewActionRequest",
    "ReviewPriority",
    "ReviewQueueItem",
    "ReviewStatus",
    "RiskLevel",
    "SymbolSource",
    "TimeWindowAnalysis",
    "TransactionType",
    "compute_email_hash",
    "compute_fingerprint",
    "compute_raw_fingerprint",
    "normalize_text",
]
