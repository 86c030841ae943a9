"""
Raw email input and derived identification.
"""

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

# Lone UTF-16 surrogates, e.g. from undecodable header bytes; not encodable as UTF-8
_SURROGATE_RE = re.compile("[\ud800-\udfff]")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def scrub_text(value: str | None) -> str | None:
    """Replace lone surrogates with U+FFFD."""
    if not value:
        return value
    return _SURROGATE_RE.sub("\ufffd", value)


def format_timestamp(value: datetime) -> str:
    """Format a datetime as UTC ISO-8601 with a trailing Z."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp written by format_timestamp."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class RawEmail:
    """One email as supplied by the mailbox transport."""

    subject: str
    from_email: str
    html_content: str | None = None
    text_content: str | None = None
    received_at: datetime = field(default_factory=_utc_now)
    # Provider message id, if the transport knows it
    message_id: str | None = None

    @property
    def combined_text(self) -> str:
        """All textual parts, for metadata extraction."""
        return "\n".join(p for p in (self.subject, self.text_content, self.html_content) if p)

    def scrubbed(self) -> "RawEmail":
        """Copy whose text fields are safe to hash and store."""
        return replace(
            self,
            subject=scrub_text(self.subject),
            from_email=scrub_text(self.from_email),
            html_content=scrub_text(self.html_content),
            text_content=scrub_text(self.text_content),
            message_id=scrub_text(self.message_id),
        )


class NormalizationMode(str, Enum):
    """How the fingerprint was derived."""

    NORMALIZED = "normalized"
    RAW = "raw"  # Degraded: body empty or unparseable


@dataclass
class EmailIdentification:
    """Deterministic identity of one confirmation email.

    Derived once per email. Two deliveries of the identical email always
    share fingerprint_hash.
    """

    fingerprint_hash: str
    source_email_id: str | None
    received_at: datetime
    from_address: str
    subject_normalized: str
    email_hash: str
    normalization_mode: NormalizationMode = NormalizationMode.NORMALIZED
    declared_total: Decimal | None = None
    order_ids: list[str] = field(default_factory=list)
    confirmation_numbers: list[str] = field(default_factory=list)
    identification_confidence: float = 0.3

    @property
    def short_fingerprint(self) -> str:
        """Truncated fingerprint for log lines."""
        return self.fingerprint_hash[:12]

    @property
    def is_degraded(self) -> bool:
        return self.normalization_mode == NormalizationMode.RAW

    def to_dict(self) -> dict:
        """Serialize to dictionary for JSON storage."""
        return {
            "fingerprint_hash": self.fingerprint_hash,
            "source_email_id": self.source_email_id,
            "received_at": format_timestamp(self.received_at),
            "from_address": self.from_address,
            "subject_normalized": self.subject_normalized,
            "email_hash": self.email_hash,
            "normalization_mode": self.normalization_mode.value,
            "declared_total": (
                str(self.declared_total) if self.declared_total is not None else None
            ),
            "order_ids": list(self.order_ids),
            "confirmation_numbers": list(self.confirmation_numbers),
            "identification_confidence": self.identification_confidence,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EmailIdentification":
        """Deserialize from dictionary."""
        return cls(
            fingerprint_hash=data["fingerprint_hash"],
            source_email_id=data.get("source_email_id"),
            received_at=parse_timestamp(data["received_at"]),
            from_address=data.get("from_address", ""),
            subject_normalized=data.get("subject_normalized", ""),
            email_hash=data.get("email_hash", ""),
            normalization_mode=NormalizationMode(data.get("normalization_mode", "normalized")),
            declared_total=(
                Decimal(data["declared_total"]) if data.get("declared_total") else None
            ),
            order_ids=data.get("order_ids", []),
            confirmation_numbers=data.get("confirmation_numbers", []),
            identification_confidence=data.get("identification_confidence", 0.3),
        )
