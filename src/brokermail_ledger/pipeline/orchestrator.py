"""
Email pipeline orchestrator.

process_email runs one confirmation email through identification, parsing,
duplicate detection and the auto-insert decision, under a per-fingerprint
lock. Every email ends in exactly one place: the ledger, the review queue,
or a recorded no-op. Errors are collected in ProcessingResult.errors and
never raised to the caller.
"""

import logging
import sqlite3
import time
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import Any, Optional

from ..config import Config
from ..confidence import ConfidenceScorer, ConfidenceThresholds
from ..duplicates import MultiLevelDuplicateDetector, TimeWindowAnalyzer, fill_group_key
from ..errors import (
    DuplicateCheckError,
    FingerprintLockTimeout,
    LedgerWriteError,
    ParseError,
    PortfolioResolutionError,
    QueueWriteError,
)
from ..identification import EmailIdentifier
from ..ledger_client import LedgerClient, LedgerError, LedgerTransaction
from ..parsers import TransactionParser
from ..portfolio import PortfolioMappingService
from ..review import ManualReviewQueue
from ..schemas.duplicates import DuplicateDetectionResult, Recommendation
from ..schemas.email import EmailIdentification, RawEmail
from ..schemas.processing import (
    BatchResult,
    ProcessingOptions,
    ProcessingOutcome,
    ProcessingResult,
)
from ..schemas.review import ReviewActionRequest, ReviewQueueItem
from ..schemas.transaction import ParsedTransactionCandidate
from ..state_store import EmailStatus, FillGroupRecord, StateStore
from ..symbol_resolver import SymbolResolver
from .locks import FingerprintLock

logger = logging.getLogger(__name__)

# config_id -> auto-insert flag (None when the configuration does not say)
ConfigLookup = Callable[[str], Optional[bool]]


def _error(exc: Exception) -> str:
    return f"{type(exc).__name__}: {exc}"


class EmailPipeline:
    """
    Orchestrates processing of broker confirmation emails.

    Collaborators are injectable; defaults are built from the config.
    """

    def __init__(
        self,
        config: Config,
        store: StateStore,
        ledger: LedgerClient,
        resolver: Optional[SymbolResolver] = None,
        config_lookup: Optional[ConfigLookup] = None,
        portfolio_mapper: Optional[PortfolioMappingService] = None,
    ):
        self.config = config
        self.store = store
        self.ledger = ledger
        self.scorer = ConfidenceScorer(
            ConfidenceThresholds(auto_insert=config.pipeline.auto_insert_threshold)
        )
        self.identifier = EmailIdentifier()
        self.parser = TransactionParser(
            resolver=resolver, scorer=self.scorer, parsing_config=config.parsing
        )
        self.detector = MultiLevelDuplicateDetector(
            store,
            config,
            analyzer=TimeWindowAnalyzer(config.time_window),
            ledger=ledger,
            scorer=self.scorer,
        )
        self.queue = ManualReviewQueue(store, config, transaction_writer=self._commit_approved_item)
        self.config_lookup = config_lookup or ledger.get_auto_insert_setting
        self.portfolio_mapper = portfolio_mapper or PortfolioMappingService(ledger, store)

    # Entry points

    def process_email(
        self,
        subject: str,
        from_email: str,
        html_content: Optional[str] = None,
        text_content: Optional[str] = None,
        options: Optional[ProcessingOptions] = None,
        received_at: Optional[datetime] = None,
        message_id: Optional[str] = None,
    ) -> ProcessingResult:
        """
        Process one confirmation email.

        Args:
            subject: Email subject
            from_email: Sender (address or "Name <address>")
            html_content: HTML body, if any
            text_content: Plain text body, if any
            options: Per-call options (config_id, portfolio_id_hint, ...)
            received_at: Delivery time; defaults to now
            message_id: Transport message id, if known

        Returns:
            ProcessingResult; never raises
        """
        email = RawEmail(
            subject=subject or "",
            from_email=from_email or "",
            html_content=html_content,
            text_content=text_content,
            received_at=received_at or datetime.now(timezone.utc),
            message_id=message_id,
        )
        return self.process(email, options)

    def process(
        self, email: RawEmail, options: Optional[ProcessingOptions] = None
    ) -> ProcessingResult:
        """Process a RawEmail. See process_email."""
        started = time.monotonic()
        options = options or ProcessingOptions()
        result = ProcessingResult(success=False, outcome=ProcessingOutcome.FAILED)
        email = email.scrubbed()
        identification: Optional[EmailIdentification] = None

        try:
            identification = self.identifier.identify(email)
            result.fingerprint = identification.fingerprint_hash
            with FingerprintLock(
                self.store,
                identification.fingerprint_hash,
                ttl_seconds=self.config.pipeline.lock_ttl_seconds,
                wait_seconds=self.config.pipeline.lock_wait_seconds,
            ):
                self._process_locked(email, identification, options, result)
        except FingerprintLockTimeout as e:
            logger.warning(str(e))
            result.errors.append(_error(e))
        except Exception as e:
            result.success = False
            result.outcome = ProcessingOutcome.FAILED
            result.errors.append(_error(e))
            if identification is None:
                logger.exception(f"Cannot identify email from {email.from_email!r}")
            else:
                logger.exception(f"Unexpected error processing {identification.short_fingerprint}")
                self._mark_failed(identification, email, str(e), options)

        label = identification.short_fingerprint if identification else "(unidentified)"
        result.processing_time_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Email {label}: {result.outcome.value} "
            f"in {result.processing_time_ms}ms"
            + (f" ({len(result.errors)} error(s))" if result.errors else "")
        )
        return result

    def process_batch(
        self, emails: Iterable[RawEmail], options: Optional[ProcessingOptions] = None
    ) -> BatchResult:
        """Process emails one after another with the same options."""
        batch = BatchResult()
        for email in emails:
            batch.results.append(self.process(email, options))
        logger.info(
            f"Batch done: {batch.total} emails, {batch.created} created, "
            f"{batch.queued} queued, {batch.skipped} skipped, {batch.failed} failed"
        )
        return batch

    def apply_review_action(self, item_id: int, request: ReviewActionRequest) -> ReviewQueueItem:
        """Apply a reviewer action; approvals are written to the ledger."""
        return self.queue.apply_action(item_id, request)

    def get_processing_stats(self) -> dict[str, Any]:
        stats = self.store.get_stats()
        stats["review_queue"] = self.queue.get_stats().to_dict()
        return stats

    # Processing steps

    def _process_locked(
        self,
        email: RawEmail,
        identification: EmailIdentification,
        options: ProcessingOptions,
        result: ProcessingResult,
    ) -> None:
        writes = not (options.dry_run or options.validate_only)

        # Level 1 before parsing: a known email costs no parse and no resolver call
        check_error: Optional[DuplicateCheckError] = None
        try:
            known = self.detector.check_fingerprint(identification)
        except DuplicateCheckError as e:
            check_error, known = e, None

        if known is not None:
            result.success = True
            result.duplicate_result = known
            result.merged_into = known.matched_transaction_id
            if "previously-rejected" in known.tags:
                result.outcome = ProcessingOutcome.REJECTED_PREVIOUSLY
            else:
                result.outcome = ProcessingOutcome.SKIPPED_DUPLICATE
            if writes:
                self.store.record_delivery(identification.fingerprint_hash)
            logger.info(f"Email {identification.short_fingerprint} already handled, skipping")
            return

        parse_failed = False
        try:
            parsed = self.parser.parse(email, identification, options.enhance_symbols)
            candidate = parsed.candidate
            result.errors.extend(parsed.errors)
        except ParseError as e:
            logger.warning(f"Parse failed for {identification.short_fingerprint}: {e}")
            result.errors.append(_error(e))
            candidate = ParsedTransactionCandidate.unparsed(e.template or "unknown", str(e))
            parse_failed = True
        result.candidate = candidate

        if options.validate_only:
            result.success = not parse_failed
            result.outcome = ProcessingOutcome.VALIDATED
            return

        if not candidate.account_type_raw and self.config.pipeline.default_account_type:
            candidate.account_type_raw = self.config.pipeline.default_account_type
            candidate.notes.append("account type from configured default")

        portfolio_id = options.portfolio_id_hint or self._find_portfolio(candidate, result)
        result.portfolio_id = portfolio_id

        if parse_failed:
            if writes:
                self._queue(
                    identification, email, candidate, None, portfolio_id, result, ["parse-error"]
                )
            else:
                result.success, result.outcome = True, ProcessingOutcome.VALIDATED
            return

        duplicate_result: Optional[DuplicateDetectionResult] = None
        if check_error is None:
            try:
                duplicate_result = self.detector.detect(
                    identification,
                    candidate,
                    portfolio_id=portfolio_id,
                    skip_content=options.skip_duplicate_check,
                )
            except DuplicateCheckError as e:
                check_error = e

        if check_error is not None:
            logger.warning(
                f"Duplicate check unavailable for {identification.short_fingerprint}, "
                f"routing to review: {check_error}"
            )
            result.errors.append(_error(check_error))
            if writes:
                self._queue(
                    identification,
                    email,
                    candidate,
                    None,
                    portfolio_id,
                    result,
                    ["duplicate-check-unavailable"],
                )
            else:
                result.success, result.outcome = True, ProcessingOutcome.VALIDATED
            return

        result.duplicate_result = duplicate_result

        if (
            duplicate_result.recommendation == Recommendation.AUTO_MERGE
            and duplicate_result.is_duplicate
        ):
            result.success = True
            result.outcome = ProcessingOutcome.MERGED
            result.merged_into = duplicate_result.matched_transaction_id
            if writes:
                self._mark(
                    identification,
                    email,
                    EmailStatus.MERGED,
                    transaction_id=duplicate_result.matched_transaction_id,
                )
            logger.info(
                f"Email {identification.short_fingerprint} duplicates "
                f"{duplicate_result.matched_transaction_id}, nothing written"
            )
            return

        if options.dry_run:
            result.success = True
            result.outcome = ProcessingOutcome.VALIDATED
            return

        auto_insert = self._auto_insert_enabled(options.config_id)
        blockers = self._auto_insert_blockers(candidate, duplicate_result, auto_insert)
        if blockers:
            logger.info(
                f"Email {identification.short_fingerprint} needs review: {', '.join(blockers)}"
            )
            tags = ["auto-insert-disabled"] if not auto_insert else []
            self._queue(
                identification, email, candidate, duplicate_result, portfolio_id, result, tags
            )
            return

        self._create(identification, email, candidate, duplicate_result, portfolio_id, options, result)

    def _auto_insert_blockers(
        self,
        candidate: ParsedTransactionCandidate,
        duplicate_result: DuplicateDetectionResult,
        auto_insert: bool,
    ) -> list[str]:
        blockers = []
        if not auto_insert:
            blockers.append("auto-insert disabled")
        if not self.scorer.meets_auto_insert(candidate.confidence):
            blockers.append(f"confidence {candidate.confidence:.2f}")
        if duplicate_result.needs_review:
            blockers.append(f"duplicate check: {duplicate_result.recommendation.value}")
        if not candidate.symbol or candidate.quantity is None or candidate.price is None:
            blockers.append("incomplete candidate")
        return blockers

    def _auto_insert_enabled(self, config_id: Optional[str]) -> bool:
        """Auto-insert flag for a configuration; lookup failures fall back to the default."""
        default = self.config.pipeline.auto_insert_default
        if not config_id:
            return default
        try:
            value = self.config_lookup(config_id)
        except Exception as e:
            logger.warning(
                f"Auto-insert setting lookup failed for config {config_id}, "
                f"using default ({default}): {e}"
            )
            return default
        return default if value is None else value

    def _find_portfolio(
        self, candidate: ParsedTransactionCandidate, result: ProcessingResult
    ) -> Optional[str]:
        try:
            return self.portfolio_mapper.find_portfolio(candidate.account_type_raw)
        except LedgerError as e:
            logger.warning(f"Portfolio lookup failed for '{candidate.account_type_raw}': {e}")
            result.errors.append(_error(e))
            return None

    def _create(
        self,
        identification: EmailIdentification,
        email: RawEmail,
        candidate: ParsedTransactionCandidate,
        duplicate_result: DuplicateDetectionResult,
        portfolio_id: Optional[str],
        options: ProcessingOptions,
        result: ProcessingResult,
    ) -> None:
        if portfolio_id is None:
            try:
                portfolio_id = self.portfolio_mapper.get_or_create_portfolio(
                    candidate.account_type_raw, allow_create=options.create_missing_portfolios
                )
            except PortfolioResolutionError as e:
                logger.warning(f"{e}, routing {identification.short_fingerprint} to review")
                result.errors.append(_error(e))
                self._queue(
                    identification, email, candidate, duplicate_result, None, result,
                    ["portfolio-unresolved"],
                )
                return
            result.portfolio_id = portfolio_id

        try:
            transaction, group = self._write_transaction(
                identification, candidate, portfolio_id, duplicate_result.is_partial_fill
            )
        except LedgerWriteError as e:
            # Nothing reached the ledger; a redelivery retries
            logger.error(f"Ledger write failed for {identification.short_fingerprint}: {e}")
            result.errors.append(_error(e))
            result.success = False
            result.outcome = ProcessingOutcome.FAILED
            self._mark(identification, email, EmailStatus.FAILED, error_message=str(e))
            return

        self._mark(identification, email, EmailStatus.CREATED, transaction_id=transaction.id)
        result.success = True
        result.outcome = ProcessingOutcome.CREATED
        result.transaction_created = True
        result.transaction = transaction.to_dict()
        if group is not None:
            result.merged_into = str(group.id)

    def _write_transaction(
        self,
        identification: EmailIdentification,
        candidate: ParsedTransactionCandidate,
        portfolio_id: str,
        partial_fill: bool,
    ) -> tuple[LedgerTransaction, Optional[FillGroupRecord]]:
        """
        Create the ledger transaction and record it locally.

        Raises:
            LedgerWriteError: Ledger rejected the write or was unreachable
        """
        group_key = fill_group_key(candidate, portfolio_id) if partial_fill else None
        meta: dict[str, Any] = {
            "fingerprint": identification.fingerprint_hash,
            "template": candidate.template,
            "symbol_source": candidate.symbol_source.value,
            "confidence": candidate.confidence,
            "order_id": candidate.order_id,
            "order_quantity": str(candidate.order_quantity) if candidate.order_quantity else None,
            "account_type": candidate.account_type_raw,
        }
        if group_key:
            meta["fill_group"] = group_key

        try:
            asset_id = self.ledger.get_or_create_asset(
                candidate.symbol, candidate.asset_type_guess.value
            )
            transaction = self.ledger.create_transaction(
                portfolio_id=portfolio_id,
                asset_id=asset_id,
                transaction_type=candidate.transaction_type.value,
                quantity=candidate.quantity,
                price=candidate.price,
                transaction_date=candidate.transaction_date
                or identification.received_at.date().isoformat(),
                idempotency_key=identification.fingerprint_hash,
                executed_at=candidate.executed_at,
                total_amount=candidate.effective_total,
                fees=candidate.fees,
                currency=candidate.currency,
                notes=f"Imported from {candidate.template} confirmation email",
                meta=meta,
            )
        except LedgerError as e:
            raise LedgerWriteError(f"Cannot create ledger transaction: {e}") from e

        group = None
        if group_key:
            group = self.store.add_fill(group_key, candidate, portfolio_id)
            logger.info(
                f"Fill {group.fill_count} of order {candidate.order_id or group_key}: "
                f"{group.filled_quantity}"
                + (f"/{group.target_quantity}" if group.target_quantity is not None else "")
                + f" @ vwap {group.vwap} ({group.status})"
            )
        self.store.record_transaction(
            identification.fingerprint_hash,
            candidate,
            transaction.id,
            portfolio_id,
            fill_group_id=group.id if group else None,
        )
        return transaction, group

    def _queue(
        self,
        identification: EmailIdentification,
        email: RawEmail,
        candidate: ParsedTransactionCandidate,
        duplicate_result: Optional[DuplicateDetectionResult],
        portfolio_id: Optional[str],
        result: ProcessingResult,
        extra_tags: Optional[list[str]] = None,
    ) -> None:
        try:
            item, _ = self.queue.enqueue(
                identification, candidate, duplicate_result, portfolio_id, extra_tags
            )
        except QueueWriteError as e:
            logger.error(str(e))
            result.errors.append(_error(e))
            result.success = False
            result.outcome = ProcessingOutcome.FAILED
            self._mark_failed(identification, email, str(e))
            return

        self._mark(identification, email, EmailStatus.QUEUED, review_item_id=item.id)
        result.success = True
        result.outcome = ProcessingOutcome.QUEUED
        result.queued_for_review = True
        result.review_queue_id = item.id

    def _commit_approved_item(self, item: ReviewQueueItem) -> str:
        """Transaction writer for approved review items."""
        candidate = item.candidate
        portfolio_id = item.portfolio_id or self.portfolio_mapper.get_or_create_portfolio(
            candidate.account_type_raw
        )
        partial_fill = item.duplicate_result is not None and item.duplicate_result.is_partial_fill
        transaction, _ = self._write_transaction(
            item.identification, candidate, portfolio_id, partial_fill
        )
        return transaction.id

    # Bookkeeping

    def _mark(
        self,
        identification: EmailIdentification,
        email: RawEmail,
        status: EmailStatus,
        **fields: Any,
    ) -> None:
        self.store.mark_email(
            identification.fingerprint_hash,
            status,
            email_hash=identification.email_hash,
            source_email_id=identification.source_email_id,
            from_address=identification.from_address,
            subject=email.subject,
            **fields,
        )

    def _mark_failed(
        self,
        identification: EmailIdentification,
        email: RawEmail,
        message: str,
        options: Optional[ProcessingOptions] = None,
    ) -> None:
        if options is not None and (options.dry_run or options.validate_only):
            return
        try:
            self._mark(identification, email, EmailStatus.FAILED, error_message=message)
        except sqlite3.Error as e:
            logger.error(f"Cannot record failure of {identification.short_fingerprint}: {e}")
