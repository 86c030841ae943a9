"""
Pipeline orchestration: process_email and its per-fingerprint lock.
"""

from .locks import FingerprintLock, make_owner_id
from .orchestrator import ConfigLookup, EmailPipeline

__all__ = [
    "ConfigLookup",
    "EmailPipeline",
    "FingerprintLock",
    "make_owner_id",
]
