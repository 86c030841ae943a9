"""
Email identification.

Derives a deterministic fingerprint and identifying metadata (message id,
order ids, confirmation numbers, declared total) from a raw email.
"""

from .identifier import (
    EmailIdentifier,
    extract_confirmation_numbers,
    extract_message_id,
    extract_order_ids,
)

__all__ = [
    "EmailIdentifier",
    "extract_confirmation_numbers",
    "extract_message_id",
    "extract_order_ids",
]
