"""
Email identification: fingerprint plus metadata extraction.
"""

import logging
import re

from ..schemas.email import EmailIdentification, NormalizationMode, RawEmail
from ..schemas.fingerprint import (
    body_text,
    compute_email_hash,
    compute_fingerprint,
    compute_raw_fingerprint,
    extract_declared_total,
    normalize_sender,
    normalize_subject,
    normalize_text,
)

logger = logging.getLogger(__name__)

# Identification confidence contributions
BASE_CONFIDENCE = 0.3
MESSAGE_ID_BONUS = 0.3
ORDER_ID_BONUS = 0.3
CONFIRMATION_BONUS = 0.1

MESSAGE_ID_PATTERNS = [
    re.compile(r"^message-id:\s*<([^>]+)>", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^message-id:\s*(\S+)", re.IGNORECASE | re.MULTILINE),
]

ORDER_ID_PATTERNS = [
    re.compile(r"\b(WS\d{6,12})\b"),
    re.compile(r"order\s*(?:id|#|number|no\.?)\s*:?\s*#?([A-Z0-9][A-Z0-9-]{5,19})", re.IGNORECASE),
    re.compile(r"\b([A-Z]{2,3}\d{6,12})\b"),
]

CONFIRMATION_PATTERNS = [
    re.compile(
        r"confirmation\s*(?:#|number|no\.?|code)\s*:?\s*([A-Z0-9][A-Z0-9-]{4,19})", re.IGNORECASE
    ),
    re.compile(r"reference\s*(?:#|number|no\.?)\s*:?\s*([A-Z0-9][A-Z0-9-]{4,19})", re.IGNORECASE),
]


def extract_message_id(text: str) -> str | None:
    """Find a Message-ID header echoed in the email text."""
    for pattern in MESSAGE_ID_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1).strip()
    return None


def _collect(patterns: list[re.Pattern], text: str) -> list[str]:
    found: list[str] = []
    for pattern in patterns:
        for match in pattern.finditer(text):
            value = match.group(1).upper()
            if value not in found:
                found.append(value)
    return found


def extract_order_ids(text: str) -> list[str]:
    """Find broker order identifiers, in order of first appearance."""
    return _collect(ORDER_ID_PATTERNS, text)


def extract_confirmation_numbers(text: str) -> list[str]:
    """Find confirmation/reference numbers."""
    return _collect(CONFIRMATION_PATTERNS, text)


class EmailIdentifier:
    """
    Builds EmailIdentification for raw emails.

    Never raises for malformed content: if normalization yields an empty
    body, it falls back to the raw fingerprint.
    """

    def identify(self, email: RawEmail) -> EmailIdentification:
        """Derive the deterministic identity of an email."""
        sender = normalize_sender(email.from_email)
        subject = normalize_subject(email.subject)
        raw_body = body_text(email.html_content, email.text_content)
        body = normalize_text(raw_body)
        declared_total = extract_declared_total(raw_body)

        if body:
            fingerprint = compute_fingerprint(sender, subject, body, declared_total)
            mode = NormalizationMode.NORMALIZED
        else:
            fingerprint = compute_raw_fingerprint(
                email.subject, email.from_email, email.html_content, email.text_content
            )
            mode = NormalizationMode.RAW
            logger.warning(
                f"Empty body after normalization from {sender or 'unknown sender'}, "
                f"using raw fingerprint {fingerprint[:12]}"
            )

        search_text = "\n".join(p for p in (email.subject, raw_body) if p)
        message_id = email.message_id or extract_message_id(email.combined_text)
        order_ids = extract_order_ids(search_text)
        confirmations = extract_confirmation_numbers(search_text)

        confidence = BASE_CONFIDENCE
        if message_id:
            confidence += MESSAGE_ID_BONUS
        if order_ids:
            confidence += ORDER_ID_BONUS
        if confirmations:
            confidence += CONFIRMATION_BONUS

        identification = EmailIdentification(
            fingerprint_hash=fingerprint,
            source_email_id=message_id,
            received_at=email.received_at,
            from_address=sender,
            subject_normalized=subject,
            email_hash=compute_email_hash(
                email.subject, email.from_email, email.html_content, email.text_content
            ),
            normalization_mode=mode,
            declared_total=declared_total,
            order_ids=order_ids,
            confirmation_numbers=confirmations,
            identification_confidence=round(min(1.0, confidence), 2),
        )
        logger.debug(
            f"Identified email {identification.short_fingerprint} "
            f"(mode={mode.value}, orders={order_ids})"
        )
        return identification
