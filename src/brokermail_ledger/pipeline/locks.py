"""
Per-fingerprint processing lock.

A lease row in the state store. Only one worker processes a fingerprint at
a time, across threads and processes sharing the database. Leases expire,
so a crashed worker cannot block a fingerprint forever.
"""

import logging
import os
import threading
import time
import uuid
from typing import Optional

from ..errors import FingerprintLockTimeout
from ..state_store import StateStore

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 0.05


def make_owner_id() -> str:
    """Lock owner identity: process, thread and a random suffix."""
    return f"{os.getpid()}-{threading.get_ident()}-{uuid.uuid4().hex[:8]}"


class FingerprintLock:
    """
    Context manager holding the processing lease for one fingerprint.

    Usage:
        with FingerprintLock(store, fingerprint, ttl_seconds=120, wait_seconds=30):
            ...
    """

    def __init__(
        self,
        store: StateStore,
        fingerprint: str,
        ttl_seconds: float,
        wait_seconds: float,
        owner: Optional[str] = None,
    ):
        self.store = store
        self.fingerprint = fingerprint
        self.ttl_seconds = ttl_seconds
        self.wait_seconds = wait_seconds
        self.owner = owner or make_owner_id()
        self.acquired = False

    def acquire(self) -> None:
        """
        Wait for the lease.

        Raises:
            FingerprintLockTimeout: Lease still held by another owner after
                wait_seconds
        """
        started = time.monotonic()
        while True:
            if self.store.try_acquire_lock(self.fingerprint, self.owner, self.ttl_seconds):
                self.acquired = True
                return
            waited = time.monotonic() - started
            if waited >= self.wait_seconds:
                raise FingerprintLockTimeout(self.fingerprint, waited)
            time.sleep(POLL_INTERVAL_SECONDS)

    def release(self) -> None:
        if not self.acquired:
            return
        if not self.store.release_lock(self.fingerprint, self.owner):
            logger.warning(f"Lock on {self.fingerprint[:12]} expired before release")
        self.acquired = False

    def __enter__(self) -> "FingerprintLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
