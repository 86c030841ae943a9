"""
Transaction parser: template parse, total reconciliation, symbol enhancement.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from ..config import ParsingConfig
from ..confidence import ConfidenceScorer
from ..errors import ResolverTimeoutError, SymbolResolverError
from ..schemas.email import EmailIdentification, RawEmail, format_timestamp
from ..schemas.fingerprint import body_text
from ..schemas.transaction import ParsedTransactionCandidate, SymbolSource
from ..symbol_resolver import SymbolResolver
from .base import is_option_symbol, is_ticker
from .router import TemplateRouter

logger = logging.getLogger(__name__)

# Characters of email body handed to the resolver
RESOLVER_CONTEXT_CHARS = 1500


@dataclass
class ParseOutcome:
    """Candidate plus the non-fatal errors collected while building it."""

    candidate: ParsedTransactionCandidate
    errors: list[str] = field(default_factory=list)


class TransactionParser:
    """
    Turns a raw email into a ParsedTransactionCandidate.

    Raises ParseError only when the template parse fails. Resolver failures
    and total mismatches are recorded on the candidate and in
    ParseOutcome.errors.
    """

    def __init__(
        self,
        router: Optional[TemplateRouter] = None,
        resolver: Optional[SymbolResolver] = None,
        scorer: Optional[ConfidenceScorer] = None,
        parsing_config: Optional[ParsingConfig] = None,
    ):
        self.config = parsing_config or ParsingConfig()
        self.router = router or TemplateRouter(self.config)
        self.resolver = resolver
        self.scorer = scorer or ConfidenceScorer()

    def parse(
        self,
        email: RawEmail,
        identification: EmailIdentification,
        enhance_symbols: bool = True,
    ) -> ParseOutcome:
        """
        Parse an identified email.

        Args:
            email: Raw email
            identification: Identity derived from the same email
            enhance_symbols: Allow the AI resolver for ambiguous symbols

        Returns:
            ParseOutcome with the candidate and collected errors

        Raises:
            ParseError: Unknown sender template or no parseable transaction
        """
        candidate = self.router.parse(email, identification.received_at)
        outcome = ParseOutcome(candidate=candidate)

        candidate.confidence = self.scorer.combine(candidate.parser_confidence)

        if candidate.executed_at is None:
            candidate.executed_at = format_timestamp(identification.received_at)
            candidate.notes.append("execution time missing, using received time")

        if not candidate.order_id and identification.order_ids:
            candidate.order_id = identification.order_ids[0]

        self._reconcile(candidate)
        self._resolve_symbol(email, candidate, outcome, enhance_symbols)

        logger.info(
            f"Parsed {identification.short_fingerprint}: {candidate.transaction_type.value} "
            f"{candidate.quantity} {candidate.symbol or candidate.symbol_raw or '?'} "
            f"@ {candidate.price} (confidence={candidate.confidence:.2f}, "
            f"source={candidate.symbol_source.value})"
        )
        return outcome

    def needs_enhancement(self, candidate: ParsedTransactionCandidate) -> bool:
        """Symbol is missing, not a ticker, option-like, or the parse was weak."""
        symbol = candidate.symbol_raw
        if not symbol or not is_ticker(symbol) or is_option_symbol(symbol):
            return True
        return candidate.parser_confidence < self.config.enhancement_confidence

    def _reconcile(self, candidate: ParsedTransactionCandidate) -> None:
        reconciled = self.scorer.reconcile_total(candidate)
        candidate.total_reconciled = reconciled
        if reconciled is False:
            candidate.lower_confidence(
                self.scorer.reconciliation_confidence(reconciled),
                f"stated total {candidate.total_amount} does not match "
                f"{candidate.quantity} x {candidate.price}",
            )
            logger.warning(
                f"Total mismatch: stated {candidate.total_amount}, "
                f"computed {candidate.computed_total}"
            )

    def _resolve_symbol(
        self,
        email: RawEmail,
        candidate: ParsedTransactionCandidate,
        outcome: ParseOutcome,
        enhance_symbols: bool,
    ) -> None:
        if not self.needs_enhancement(candidate):
            candidate.symbol_resolved = candidate.symbol_raw.upper()
            candidate.symbol_source = SymbolSource.EMAIL_DIRECT
            return

        if not enhance_symbols or self.resolver is None:
            if is_ticker(candidate.symbol_raw) and not is_option_symbol(candidate.symbol_raw):
                candidate.symbol_resolved = candidate.symbol_raw.upper()
                candidate.symbol_source = SymbolSource.EMAIL_DIRECT
            else:
                self._mark_unresolved(candidate, "symbol needs resolution, resolver unavailable")
            return

        try:
            resolution = self.resolver.resolve_symbol(self._resolver_context(email, candidate))
        except ResolverTimeoutError as e:
            logger.warning(f"Symbol resolution timed out for '{candidate.symbol_raw}': {e}")
            outcome.errors.append(f"ResolverTimeoutError: {e}")
            self._mark_unresolved(candidate, "symbol resolver timed out")
            return
        except SymbolResolverError as e:
            logger.warning(f"Symbol resolution failed for '{candidate.symbol_raw}': {e}")
            outcome.errors.append(f"SymbolResolverError: {e}")
            self._mark_unresolved(candidate, "symbol resolver failed")
            return

        if not resolution.symbol:
            self._mark_unresolved(candidate, "symbol resolver returned no symbol")
            return

        candidate.symbol_resolved = resolution.symbol
        candidate.resolver_confidence = resolution.confidence
        candidate.symbol_source = (
            SymbolSource.AI_ENHANCED if candidate.symbol_raw else SymbolSource.AI_FALLBACK
        )
        if resolution.asset_type_guess is not None:
            candidate.asset_type_guess = resolution.asset_type_guess
        candidate.lower_confidence(
            self.scorer.combine(candidate.confidence, resolution.confidence),
            f"symbol resolved by AI ({resolution.confidence:.2f})",
        )

    def _mark_unresolved(self, candidate: ParsedTransactionCandidate, reason: str) -> None:
        candidate.symbol_resolved = None
        candidate.symbol_source = SymbolSource.UNRESOLVED
        candidate.lower_confidence(self.scorer.cap_below_threshold(candidate.confidence), reason)
        if reason not in candidate.notes:
            candidate.notes.append(reason)

    def _resolver_context(self, email: RawEmail, candidate: ParsedTransactionCandidate) -> str:
        lines = [f"Subject: {email.subject}"]
        if candidate.symbol_raw:
            lines.append(f"Symbol as written: {candidate.symbol_raw}")
        if candidate.asset_name:
            lines.append(f"Security name: {candidate.asset_name}")
        lines.append(f"Transaction: {candidate.transaction_type.value}")
        body = body_text(email.html_content, email.text_content)
        lines.append(body[:RESOLVER_CONTEXT_CHARS])
        return "\n".join(lines)
