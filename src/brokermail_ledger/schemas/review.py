"""
Manual review queue item and reviewer actions.
"""

import json
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .duplicates import DuplicateDetectionResult
from .email import EmailIdentification
from .transaction import ParsedTransactionCandidate


class ReviewStatus(str, Enum):
    """
    Lifecycle of a queue item.

    PENDING is the only non-terminal state. APPROVED leads to a ledger write.
    """

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


class ReviewPriority(str, Enum):
    """Priority label derived from the numeric priority score."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @classmethod
    def from_score(cls, score: int) -> "ReviewPriority":
        if score >= 70:
            return cls.URGENT
        if score >= 50:
            return cls.HIGH
        if score >= 25:
            return cls.MEDIUM
        return cls.LOW


class ReviewAction(str, Enum):
    """Reviewer action on a pending item."""

    APPROVE = "approve"
    REJECT = "reject"
    EDIT = "edit"
    ESCALATE = "escalate"
    CLAIM = "claim"
    RELEASE = "release"


@dataclass
class ReviewActionRequest:
    """
    One reviewer action.

    expected_version is the version the reviewer saw. When set, the action
    only applies if the item has not changed since.
    """

    action: ReviewAction
    reviewer: str = "reviewer"
    expected_version: Optional[int] = None
    edits: dict[str, Any] = field(default_factory=dict)
    note: Optional[str] = None


@dataclass
class QueueFilter:
    """Filter for listing the review queue."""

    status: Optional[ReviewStatus] = ReviewStatus.PENDING
    priority: Optional[ReviewPriority] = None
    portfolio_id: Optional[str] = None
    symbol: Optional[str] = None
    queued_after: Optional[str] = None  # ISO timestamp
    queued_before: Optional[str] = None
    min_escalation_level: Optional[int] = None
    tags: list[str] = field(default_factory=list)
    min_confidence: Optional[float] = None
    max_confidence: Optional[float] = None
    limit: int = 100
    offset: int = 0


@dataclass
class ReviewQueueItem:
    """Durable record of an email awaiting a human decision."""

    id: int
    fingerprint: str
    candidate: ParsedTransactionCandidate
    identification: EmailIdentification
    duplicate_result: Optional[DuplicateDetectionResult]
    status: ReviewStatus
    priority: int
    priority_label: ReviewPriority
    risk_score: float
    escalation_level: int
    tags: list[str]
    queued_at: str
    updated_at: str
    version: int
    portfolio_id: Optional[str] = None
    resolved_at: Optional[str] = None
    resolved_by: Optional[str] = None
    resolution_note: Optional[str] = None
    transaction_id: Optional[str] = None
    claimed_by: Optional[str] = None
    claimed_at: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status == ReviewStatus.PENDING

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ReviewQueueItem":
        """Create from database row."""
        keys = row.keys()
        duplicate_json = row["duplicate_json"]
        return cls(
            id=row["id"],
            fingerprint=row["fingerprint"],
            candidate=ParsedTransactionCandidate.from_dict(json.loads(row["candidate_json"])),
            identification=EmailIdentification.from_dict(json.loads(row["identification_json"])),
            duplicate_result=(
                DuplicateDetectionResult.from_dict(json.loads(duplicate_json))
                if duplicate_json
                else None
            ),
            status=ReviewStatus(row["status"]),
            priority=row["priority"],
            priority_label=ReviewPriority(row["priority_label"]),
            risk_score=row["risk_score"],
            escalation_level=row["escalation_level"],
            tags=json.loads(row["tags"]) if row["tags"] else [],
            queued_at=row["queued_at"],
            updated_at=row["updated_at"],
            version=row["version"],
            portfolio_id=row["portfolio_id"],
            resolved_at=row["resolved_at"],
            resolved_by=row["resolved_by"],
            resolution_note=row["resolution_note"],
            transaction_id=row["transaction_id"],
            claimed_by=row["claimed_by"] if "claimed_by" in keys else None,
            claimed_at=row["claimed_at"] if "claimed_at" in keys else None,
        )

    def to_dict(self) -> dict:
        """Serialize for display and JSON output."""
        return {
            "id": self.id,
            "fingerprint": self.fingerprint,
            "candidate": self.candidate.to_dict(),
            "identification": self.identification.to_dict(),
            "duplicate_result": self.duplicate_result.to_dict() if self.duplicate_result else None,
            "status": self.status.value,
            "priority": self.priority,
            "priority_label": self.priority_label.value,
            "risk_score": self.risk_score,
            "escalation_level": self.escalation_level,
            "tags": list(self.tags),
            "queued_at": self.queued_at,
            "updated_at": self.updated_at,
            "version": self.version,
            "portfolio_id": self.portfolio_id,
            "resolved_at": self.resolved_at,
            "resolved_by": self.resolved_by,
            "resolution_note": self.resolution_note,
            "transaction_id": self.transaction_id,
            "claimed_by": self.claimed_by,
            "claimed_at": self.claimed_at,
        }
