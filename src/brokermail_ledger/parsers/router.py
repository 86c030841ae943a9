"""
Template router - maps a sender to its confirmation template parser.
"""

import logging
from datetime import datetime

from ..config import ParsingConfig
from ..schemas.email import RawEmail
from ..schemas.fingerprint import normalize_sender
from ..schemas.transaction import ParsedTransactionCandidate
from .base import BaseTemplateParser, SenderTemplate, UnknownTemplateParser, sender_domain
from .wealthsimple import WealthsimpleParser

logger = logging.getLogger(__name__)


class TemplateRouter:
    """
    Routes parsing to the parser for the sender's template.

    Dispatch is a fixed mapping from SenderTemplate to parser. Senders that
    match no configured domain get the UNKNOWN variant, which always fails.
    """

    def __init__(self, parsing_config: ParsingConfig | None = None):
        self.config = parsing_config or ParsingConfig()
        self._domains: dict[SenderTemplate, list[str]] = {}
        for name, domains in self.config.known_senders.items():
            try:
                template = SenderTemplate(name)
            except ValueError:
                logger.warning(f"Ignoring unsupported sender template '{name}' in config")
                continue
            self._domains[template] = [d.lower() for d in domains]

        self.parsers: dict[SenderTemplate, BaseTemplateParser] = {
            SenderTemplate.WEALTHSIMPLE: WealthsimpleParser(
                domains=self._domains.get(SenderTemplate.WEALTHSIMPLE, []),
                default_currency=self.config.default_currency,
            ),
            SenderTemplate.UNKNOWN: UnknownTemplateParser(),
        }

    def detect_template(self, from_address: str) -> SenderTemplate:
        """Match the sender domain (or a subdomain of it) against known senders."""
        domain = sender_domain(normalize_sender(from_address))
        if not domain:
            return SenderTemplate.UNKNOWN
        for template, domains in self._domains.items():
            if any(domain == d or domain.endswith("." + d) for d in domains):
                return template
        return SenderTemplate.UNKNOWN

    def parser_for(self, template: SenderTemplate) -> BaseTemplateParser:
        return self.parsers.get(template, self.parsers[SenderTemplate.UNKNOWN])

    def parse(self, email: RawEmail, received_at: datetime) -> ParsedTransactionCandidate:
        """
        Parse an email with its template parser.

        Raises:
            ParseError: Unknown sender or unparseable content
        """
        template = self.detect_template(email.from_email)
        logger.debug(f"Routing email from {email.from_email} to template {template.value}")
        return self.parser_for(template).parse(email, received_at)
