"""
Manual review queue.

One durable item per fingerprint. Reviewer actions use the item version as
an optimistic lock, so two reviewers can never both resolve the same item.
"""

import json
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from ..config import Config
from ..errors import (
    BrokerMailError,
    LedgerWriteError,
    QueueWriteError,
    ReviewActionError,
    StaleReviewItemError,
)
from ..schemas.duplicates import DuplicateDetectionResult, PatternType
from ..schemas.email import EmailIdentification, parse_timestamp
from ..schemas.review import (
    QueueFilter,
    ReviewAction,
    ReviewActionRequest,
    ReviewPriority,
    ReviewQueueItem,
    ReviewStatus,
)
from ..schemas.transaction import ParsedTransactionCandidate, TransactionType
from ..state_store import EmailStatus, StateStore, utc_now

logger = logging.getLogger(__name__)

# Priority score contributions (0-100)
LOW_CONFIDENCE_WEIGHT = 50
DUPLICATE_REVIEW_BONUS = 20
SPLIT_ORDER_BONUS = 15
LARGE_AMOUNT_BONUS = 15
CHECK_UNAVAILABLE_BONUS = 10
ESCALATION_BONUS = 10
MAX_PRIORITY = 100

# Pending items counted as a full queue by the health score
QUEUE_CAPACITY = 1000

SYSTEM_REVIEWER = "system"

# Writes an approved item to the ledger, returns the ledger transaction ID
TransactionWriter = Callable[[ReviewQueueItem], str]

DECIMAL_FIELDS = ("quantity", "price", "total_amount", "fees", "order_quantity")
TEXT_FIELDS = ("transaction_date", "executed_at", "account_type_raw", "order_id", "asset_name")

# Tags recomputed from the candidate and duplicate result on every rebuild
DERIVED_TAG_PREFIXES = ("symbol:", "type:", "account:", "confidence:", "risk:")


def apply_candidate_edits(
    candidate: ParsedTransactionCandidate, edits: dict[str, Any]
) -> ParsedTransactionCandidate:
    """
    Apply reviewer field edits to a copy of a candidate.

    Raises:
        ReviewActionError: Unknown field or unparseable value
    """
    edited = ParsedTransactionCandidate.from_dict(candidate.to_dict())
    if not edits:
        return edited

    for name, value in edits.items():
        if name == "symbol":
            edited.symbol_resolved = str(value).strip().upper() or None
            if not edited.symbol_raw:
                edited.symbol_raw = edited.symbol_resolved
        elif name == "transaction_type":
            try:
                edited.transaction_type = TransactionType(str(value).lower())
            except ValueError as e:
                raise ReviewActionError(f"Unknown transaction type '{value}'") from e
        elif name in DECIMAL_FIELDS:
            try:
                parsed = Decimal(str(value).replace(",", "")) if value not in (None, "") else None
            except InvalidOperation as e:
                raise ReviewActionError(f"Invalid number for {name}: '{value}'") from e
            setattr(edited, name, parsed)
        elif name == "currency":
            edited.currency = str(value).upper()
        elif name in TEXT_FIELDS:
            setattr(edited, name, value or None)
        else:
            raise ReviewActionError(f"Field '{name}' cannot be edited")

    edited.notes.append(f"edited by reviewer: {', '.join(sorted(edits))}")
    return edited


@dataclass
class SweepResult:
    """Items touched by one SLA sweep."""

    expired: list[int] = field(default_factory=list)
    escalated: list[int] = field(default_factory=list)


@dataclass
class QueueStats:
    """Queue health snapshot."""

    pending: int
    by_status: dict[str, int]
    by_priority: dict[str, int]
    by_escalation_level: dict[int, int]
    oldest_pending_at: Optional[str]
    oldest_pending_hours: float
    resolved_last_24h: int
    queued_last_24h: int
    health_score: int

    def to_dict(self) -> dict:
        return {
            "pending": self.pending,
            "by_status": dict(self.by_status),
            "by_priority": dict(self.by_priority),
            "by_escalation_level": {str(k): v for k, v in self.by_escalation_level.items()},
            "oldest_pending_at": self.oldest_pending_at,
            "oldest_pending_hours": round(self.oldest_pending_hours, 2),
            "resolved_last_24h": self.resolved_last_24h,
            "queued_last_24h": self.queued_last_24h,
            "health_score": self.health_score,
        }


class ManualReviewQueue:
    """
    Durable, priority-ordered review queue backed by the state store.

    Responsibilities:
    - Enqueue candidates (idempotent on fingerprint)
    - Reviewer actions under an optimistic version lock
    - SLA expiry and escalation sweeps
    - Remember rejected fingerprints
    """

    def __init__(
        self,
        store: StateStore,
        config: Optional[Config] = None,
        transaction_writer: Optional[TransactionWriter] = None,
    ):
        self.store = store
        self.config = config or Config()
        self.transaction_writer = transaction_writer

    # Scoring

    def _is_large(self, candidate: ParsedTransactionCandidate) -> bool:
        total = candidate.effective_total
        return total is not None and total >= Decimal(str(self.config.review.large_amount_threshold))

    def compute_priority(
        self,
        candidate: ParsedTransactionCandidate,
        duplicate_result: Optional[DuplicateDetectionResult],
        tags: list[str],
        escalation_level: int = 0,
    ) -> int:
        """Numeric priority, 0-100. Higher is reviewed first."""
        score = (1.0 - candidate.confidence) * LOW_CONFIDENCE_WEIGHT
        if duplicate_result is not None and duplicate_result.is_duplicate:
            score += DUPLICATE_REVIEW_BONUS
        if (
            duplicate_result is not None
            and duplicate_result.time_window is not None
            and duplicate_result.time_window.pattern == PatternType.SPLIT_ORDER
        ):
            score += SPLIT_ORDER_BONUS
        if self._is_large(candidate):
            score += LARGE_AMOUNT_BONUS
        if "duplicate-check-unavailable" in tags:
            score += CHECK_UNAVAILABLE_BONUS
        score += ESCALATION_BONUS * escalation_level
        return min(MAX_PRIORITY, int(round(score)))

    def compute_risk(
        self,
        candidate: ParsedTransactionCandidate,
        duplicate_result: Optional[DuplicateDetectionResult],
    ) -> float:
        """Risk score, 0-1: low confidence, duplicate similarity, large amounts."""
        risk = (1.0 - candidate.confidence) * 0.5
        if duplicate_result is not None:
            risk += duplicate_result.similarity_score * 0.4
        if self._is_large(candidate):
            risk += 0.1
        return round(min(1.0, risk), 4)

    def build_tags(
        self,
        candidate: ParsedTransactionCandidate,
        duplicate_result: Optional[DuplicateDetectionResult],
        extra_tags: Optional[list[str]] = None,
    ) -> list[str]:
        tags: list[str] = []

        def add(tag: str) -> None:
            if tag not in tags:
                tags.append(tag)

        if candidate.symbol:
            add(f"symbol:{candidate.symbol}")
        add(f"type:{candidate.transaction_type.value}")
        if candidate.account_type_raw:
            add(f"account:{candidate.account_type_raw}")
        if candidate.confidence < 0.3:
            add("confidence:very-low")
        elif candidate.confidence < self.config.pipeline.auto_insert_threshold:
            add("confidence:low")
        if duplicate_result is not None:
            add(f"risk:{duplicate_result.risk_level.value}")
            for tag in duplicate_result.tags:
                add(tag)
        if self._is_large(candidate):
            add("large-amount")
        for tag in extra_tags or []:
            add(tag)
        return tags

    # Queue operations

    def enqueue(
        self,
        identification: EmailIdentification,
        candidate: ParsedTransactionCandidate,
        duplicate_result: Optional[DuplicateDetectionResult] = None,
        portfolio_id: Optional[str] = None,
        extra_tags: Optional[list[str]] = None,
    ) -> tuple[ReviewQueueItem, bool]:
        """
        Queue a candidate for review, keyed by its fingerprint.

        Re-queuing a pending fingerprint refreshes the existing item.

        Returns:
            (item, created)

        Raises:
            QueueWriteError: Item could not be persisted
        """
        tags = self.build_tags(candidate, duplicate_result, extra_tags)
        priority = self.compute_priority(candidate, duplicate_result, tags)
        try:
            item, created = self.store.upsert_review_item(
                fingerprint=identification.fingerprint_hash,
                candidate_json=json.dumps(candidate.to_dict()),
                identification_json=json.dumps(identification.to_dict()),
                duplicate_json=(
                    json.dumps(duplicate_result.to_dict()) if duplicate_result else None
                ),
                priority=priority,
                priority_label=ReviewPriority.from_score(priority).value,
                risk_score=self.compute_risk(candidate, duplicate_result),
                tags=tags,
                portfolio_id=portfolio_id,
                symbol=candidate.symbol,
                confidence=candidate.confidence,
            )
        except sqlite3.Error as e:
            raise QueueWriteError(
                f"Cannot queue {identification.short_fingerprint} for review: {e}"
            ) from e

        logger.info(
            f"{'Queued' if created else 'Refreshed'} review item {item.id} "
            f"for {identification.short_fingerprint} (priority={item.priority_label.value}, "
            f"status={item.status.value})"
        )
        return item, created

    def get_item(self, item_id: int) -> Optional[ReviewQueueItem]:
        return self.store.get_review_item(item_id)

    def list_queue(self, queue_filter: Optional[QueueFilter] = None) -> list[ReviewQueueItem]:
        """Items matching the filter, highest priority first, oldest first within."""
        return self.store.list_review_items(queue_filter)

    def get_stats(self, now: Optional[datetime] = None) -> QueueStats:
        now = now or datetime.now(timezone.utc)
        counts = self.store.get_review_counts((now - timedelta(hours=24)).isoformat())

        pending_times = counts["pending_queued_at"]
        pending = len(pending_times)
        oldest = pending_times[0] if pending_times else None
        oldest_hours = (
            (now - parse_timestamp(oldest)).total_seconds() / 3600 if oldest else 0.0
        )

        score = 100.0
        if pending:
            score -= min(50.0, pending / QUEUE_CAPACITY * 50)
            stale_cutoff = now - timedelta(hours=24)
            stale = sum(1 for t in pending_times if parse_timestamp(t) < stale_cutoff)
            score -= min(30.0, stale / pending * 30)
            escalated = sum(c for level, c in counts["by_escalation"].items() if level > 0)
            score -= min(20.0, escalated / pending * 20)

        return QueueStats(
            pending=pending,
            by_status=counts["by_status"],
            by_priority=counts["by_priority"],
            by_escalation_level=counts["by_escalation"],
            oldest_pending_at=oldest,
            oldest_pending_hours=oldest_hours,
            resolved_last_24h=counts["resolved_since"],
            queued_last_24h=counts["queued_since"],
            health_score=max(0, int(round(score))),
        )

    # Reviewer actions

    def apply_action(self, item_id: int, request: ReviewActionRequest) -> ReviewQueueItem:
        """
        Apply a reviewer action.

        Raises:
            StaleReviewItemError: Item changed since the reviewer saw it
            ReviewActionError: Item missing, not pending, or action invalid
            LedgerWriteError: Approval could not be written; item stays pending
        """
        item = self.store.get_review_item(item_id)
        if item is None:
            raise ReviewActionError(f"Review item {item_id} not found")
        if request.expected_version is not None and request.expected_version != item.version:
            raise StaleReviewItemError(item_id, request.expected_version, item.version)
        if not item.is_pending:
            raise ReviewActionError(
                f"Review item {item_id} is {item.status.value}, not {ReviewStatus.PENDING.value}"
            )

        handler = {
            ReviewAction.APPROVE: self._approve,
            ReviewAction.REJECT: self._reject,
            ReviewAction.EDIT: self._edit,
            ReviewAction.ESCALATE: self._escalate,
            ReviewAction.CLAIM: self._claim,
            ReviewAction.RELEASE: self._release,
        }[request.action]
        handler(item, request)

        updated = self.store.get_review_item(item_id)
        logger.info(
            f"Review item {item_id}: {request.action.value} by {request.reviewer} "
            f"-> {updated.status.value} (v{updated.version})"
        )
        return updated

    def _update(self, item: ReviewQueueItem, version: int, **fields: Any) -> None:
        if not self.store.compare_and_update_review_item(item.id, version, **fields):
            current = self.store.get_review_item(item.id)
            raise StaleReviewItemError(item.id, version, current.version if current else None)

    def _approve(self, item: ReviewQueueItem, request: ReviewActionRequest) -> None:
        if self.transaction_writer is None:
            raise ReviewActionError("No transaction writer configured, cannot approve")

        candidate = apply_candidate_edits(item.candidate, request.edits)
        missing = [
            name
            for name, value in (
                ("symbol", candidate.symbol),
                ("quantity", candidate.quantity),
                ("price", candidate.price),
            )
            if value is None
        ]
        if missing:
            raise ReviewActionError(
                f"Review item {item.id} cannot be approved without {', '.join(missing)}"
            )
        # Parsed confidence is kept; the approval itself is recorded in resolved_by
        candidate.notes.append(f"approved by {request.reviewer}")

        # Claim the approval before writing so a second approver loses
        self._update(
            item,
            item.version,
            status=ReviewStatus.APPROVED.value,
            candidate_json=json.dumps(candidate.to_dict()),
            symbol=candidate.symbol,
            confidence=candidate.confidence,
            resolved_at=utc_now(),
            resolved_by=request.reviewer,
            resolution_note=request.note,
        )
        approved = self.store.get_review_item(item.id)

        try:
            transaction_id = self.transaction_writer(approved)
        except BrokerMailError as e:
            logger.error(f"Approved item {item.id} could not be written: {e}")
            self._update(
                approved,
                approved.version,
                status=ReviewStatus.PENDING.value,
                resolved_at=None,
                resolved_by=None,
                resolution_note=f"approval failed: {e}",
            )
            if isinstance(e, LedgerWriteError):
                raise
            raise LedgerWriteError(f"Approval of item {item.id} failed: {e}") from e

        self._update(approved, approved.version, transaction_id=transaction_id)
        self.store.mark_email(
            item.fingerprint,
            EmailStatus.APPROVED,
            transaction_id=transaction_id,
            review_item_id=item.id,
        )

    def _reject(self, item: ReviewQueueItem, request: ReviewActionRequest) -> None:
        self._update(
            item,
            item.version,
            status=ReviewStatus.REJECTED.value,
            resolved_at=utc_now(),
            resolved_by=request.reviewer,
            resolution_note=request.note,
        )
        self.store.remember_rejected(item.fingerprint, item.id, request.note)
        self.store.mark_email(item.fingerprint, EmailStatus.REJECTED, review_item_id=item.id)

    def _edit(self, item: ReviewQueueItem, request: ReviewActionRequest) -> None:
        if not request.edits:
            raise ReviewActionError("Edit action needs at least one field")
        candidate = apply_candidate_edits(item.candidate, request.edits)
        kept = [
            tag
            for tag in item.tags
            if not tag.startswith(DERIVED_TAG_PREFIXES) and tag != "large-amount"
        ]
        tags = self.build_tags(candidate, item.duplicate_result, kept + ["edited"])
        priority = self.compute_priority(
            candidate, item.duplicate_result, tags, item.escalation_level
        )
        self._update(
            item,
            item.version,
            candidate_json=json.dumps(candidate.to_dict()),
            symbol=candidate.symbol,
            confidence=candidate.confidence,
            tags=tags,
            priority=priority,
            priority_label=ReviewPriority.from_score(priority).value,
            risk_score=self.compute_risk(candidate, item.duplicate_result),
        )

    def _escalate(
        self, item: ReviewQueueItem, request: ReviewActionRequest, reason: Optional[str] = None
    ) -> None:
        if item.escalation_level >= self.config.review.max_escalation_level:
            raise ReviewActionError(
                f"Review item {item.id} is already at escalation level {item.escalation_level}"
            )
        priority = min(MAX_PRIORITY, item.priority + ESCALATION_BONUS)
        tags = list(item.tags)
        if "escalated" not in tags:
            tags.append("escalated")
        self._update(
            item,
            item.version,
            escalation_level=item.escalation_level + 1,
            priority=priority,
            priority_label=ReviewPriority.from_score(priority).value,
            tags=tags,
            resolution_note=reason or request.note,
        )

    def _claim(self, item: ReviewQueueItem, request: ReviewActionRequest) -> None:
        if item.claimed_by and item.claimed_by != request.reviewer:
            raise ReviewActionError(f"Review item {item.id} is claimed by {item.claimed_by}")
        self._update(item, item.version, claimed_by=request.reviewer, claimed_at=utc_now())

    def _release(self, item: ReviewQueueItem, request: ReviewActionRequest) -> None:
        if item.claimed_by and item.claimed_by != request.reviewer:
            raise ReviewActionError(f"Review item {item.id} is claimed by {item.claimed_by}")
        self._update(item, item.version, claimed_by=None, claimed_at=None)

    # SLA

    def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """
        Expire items past the SLA and escalate items waiting too long.

        Items changed concurrently are left for the next sweep.
        """
        now = now or datetime.now(timezone.utc)
        review = self.config.review
        result = SweepResult()

        for item in self.store.get_pending_review_items():
            age = now - parse_timestamp(item.queued_at)

            if age >= timedelta(days=review.sla_days):
                note = f"not reviewed within {review.sla_days} days"
                if self.store.compare_and_update_review_item(
                    item.id,
                    item.version,
                    status=ReviewStatus.EXPIRED.value,
                    resolved_at=utc_now(),
                    resolved_by=SYSTEM_REVIEWER,
                    resolution_note=note,
                ):
                    self.store.remember_rejected(item.fingerprint, item.id, note)
                    self.store.mark_email(
                        item.fingerprint, EmailStatus.EXPIRED, review_item_id=item.id
                    )
                    result.expired.append(item.id)
                else:
                    logger.info(f"Review item {item.id} changed during sweep, skipped")
                continue

            if item.escalation_level >= review.max_escalation_level:
                continue
            overdue = age >= timedelta(hours=review.escalation_hours * (item.escalation_level + 1))
            risky = item.escalation_level == 0 and item.risk_score >= review.escalation_risk_threshold
            if not (overdue or risky):
                continue

            reason = "waiting too long" if overdue else f"risk score {item.risk_score:.2f}"
            try:
                self._escalate(
                    item,
                    ReviewActionRequest(action=ReviewAction.ESCALATE, reviewer=SYSTEM_REVIEWER),
                    reason=f"auto-escalated: {reason}",
                )
            except StaleReviewItemError:
                logger.info(f"Review item {item.id} changed during sweep, skipped")
                continue
            result.escalated.append(item.id)

        if result.expired or result.escalated:
            logger.info(
                f"Review sweep: {len(result.expired)} expired, {len(result.escalated)} escalated"
            )
        return result
