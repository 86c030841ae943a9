"""
Email fingerprint generation (CRITICAL).

This module defines THE deterministic fingerprint functions.
This is the ONLY way to generate email fingerprints in the system.

Fingerprint formats:
1. Normalized: SHA256(version|normalized|sender|subject|body|declared_total)
   - Body and subject are normalized (HTML stripped, tracking tokens and
     forwarding headers removed, whitespace collapsed, lowercased)
   - Redelivery, forwarding and timestamp jitter do not change it

2. Raw (degraded): SHA256(version|raw|subject|from|html|text)
   - Used when the body is empty or cannot be normalized
   - Domain-separated from format #1, so a raw fingerprint never equals a
     normalized one. It may miss a duplicate, it never invents one.

The fingerprint must be:
- Stable: Same inputs always produce same output
- Collision-resistant: Different confirmations produce different hashes
- Reproducible: Can be regenerated from the stored email
"""

import hashlib
import html
import re
from decimal import Decimal, InvalidOperation

# ============================================================================
# SSOT Constants for Fingerprint Generation
# ============================================================================

FINGERPRINT_VERSION = "v1"

NORMALIZED_DOMAIN = "normalized"
RAW_DOMAIN = "raw"

# Length of the short display hash over the raw email tuple
HASH_PREFIX_LENGTH = 16

_SCRIPT_STYLE_RE = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_BLOCK_TAG_RE = re.compile(r"<\s*(?:br|/p|/div|/tr|/li|/h\d)\b[^>]*>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_FORWARD_BLOCK_RE = re.compile(
    r"(?:-{2,}\s*(?:forwarded|original)\s+message\s*-{2,}|begin forwarded message:)[ \t]*\n"
    r"(?:[ \t]*(?:from|sent|date|to|cc|subject|reply-to)[ \t]*:.*\n)*",
    re.IGNORECASE,
)
_URL_RE = re.compile(r"(?:https?://|www\.)\S+", re.IGNORECASE)
_TRACKING_PARAM_RE = re.compile(r"\b(?:utm_[a-z]+|mc_[ce]id|trk|tracking_id)=\S*", re.IGNORECASE)
# Opaque tokens: long runs mixing letters and digits (pixel ids, signed links)
_OPAQUE_TOKEN_RE = re.compile(
    r"\b(?=[A-Za-z0-9_-]*\d)(?=[A-Za-z0-9_-]*[A-Za-z])[A-Za-z0-9_-]{24,}\b"
)
_SUBJECT_PREFIX_RE = re.compile(r"^\s*(?:(?:re|fwd?|fw)\s*:\s*)+", re.IGNORECASE)
_DISALLOWED_CHARS_RE = re.compile(r"[^\w\s.@$-]")
_WHITESPACE_RE = re.compile(r"\s+")
_ADDRESS_RE = re.compile(r"<([^<>@\s]+@[^<>\s]+)>")
_DECLARED_TOTAL_RE = re.compile(
    r"total(?:\s+(?:amount|cost|proceeds|value))?\s*:?\s*(?:C\$|US\$|CA\$|\$)\s*"
    r"(\d{1,3}(?:,\d{3})*(?:\.\d{1,2})?|\d+(?:\.\d{1,2})?)",
    re.IGNORECASE,
)


def strip_html(content: str) -> str:
    """Convert HTML to plain text, keeping block boundaries as newlines."""
    if not content:
        return ""
    text = _SCRIPT_STYLE_RE.sub(" ", content)
    text = _BLOCK_TAG_RE.sub("\n", text)
    text = _TAG_RE.sub(" ", text)
    return html.unescape(text)


def normalize_text(text: str | None) -> str:
    """
    Normalize email text for hashing.

    Removes forwarding header blocks, URLs, tracking parameters and opaque
    tokens, drops punctuation other than ``. @ $ -``, collapses whitespace
    and lowercases.
    """
    if not text:
        return ""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    if not text.endswith("\n"):
        text += "\n"
    text = _FORWARD_BLOCK_RE.sub("\n", text)
    text = _URL_RE.sub(" ", text)
    text = _TRACKING_PARAM_RE.sub(" ", text)
    text = _OPAQUE_TOKEN_RE.sub(" ", text)
    text = _DISALLOWED_CHARS_RE.sub(" ", text)
    return _WHITESPACE_RE.sub(" ", text).strip().lower()


def normalize_subject(subject: str | None) -> str:
    """Normalize a subject line, dropping reply/forward prefixes."""
    if not subject:
        return ""
    return normalize_text(_SUBJECT_PREFIX_RE.sub("", subject))


def normalize_sender(from_email: str | None) -> str:
    """Reduce 'Name <addr@host>' to a lowercase address."""
    if not from_email:
        return ""
    match = _ADDRESS_RE.search(from_email)
    address = match.group(1) if match else from_email
    return address.strip().strip('"').lower()


def body_text(html_content: str | None, text_content: str | None) -> str:
    """Pick the body used for fingerprinting: text part, else stripped HTML."""
    if text_content and text_content.strip():
        return text_content
    if html_content and html_content.strip():
        return strip_html(html_content)
    return ""


def extract_declared_total(text: str | None) -> Decimal | None:
    """Find the broker-stated total amount in email text."""
    if not text:
        return None
    match = _DECLARED_TOTAL_RE.search(text)
    if not match:
        return None
    try:
        return Decimal(match.group(1).replace(",", "")).quantize(Decimal("0.01"))
    except InvalidOperation:
        return None


def compute_fingerprint(
    sender: str,
    subject: str,
    body: str,
    declared_total: Decimal | None = None,
) -> str:
    """
    Compute the normalized fingerprint.

    All inputs must already be normalized with the functions above.

    Returns:
        64-character SHA256 hex digest
    """
    total = f"{declared_total:.2f}" if declared_total is not None else ""
    components = [FINGERPRINT_VERSION, NORMALIZED_DOMAIN, sender, subject, body, total]
    data = "|".join(components).encode("utf-8", errors="surrogatepass")
    return hashlib.sha256(data).hexdigest()


def compute_raw_fingerprint(
    subject: str | None,
    from_email: str | None,
    html_content: str | None,
    text_content: str | None,
) -> str:
    """Compute the degraded fingerprint over the raw email tuple."""
    components = [
        FINGERPRINT_VERSION,
        RAW_DOMAIN,
        subject or "",
        from_email or "",
        html_content or "",
        text_content or "",
    ]
    data = "|".join(components).encode("utf-8", errors="surrogatepass")
    return hashlib.sha256(data).hexdigest()


def compute_email_hash(
    subject: str | None,
    from_email: str | None,
    html_content: str | None,
    text_content: str | None,
) -> str:
    """Short hash of the raw email tuple, for display and log correlation."""
    key = "|".join([subject or "", from_email or "", html_content or "", text_content or ""])
    digest = hashlib.sha256(key.encode("utf-8", errors="surrogatepass")).hexdigest()
    return digest[:HASH_PREFIX_LENGTH]
