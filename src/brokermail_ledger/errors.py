"""
Pipeline error taxonomy.

Every failure the pipeline knows how to route has its own class here.
The orchestrator converts these into ProcessingResult.errors entries;
none of them cross the process_email boundary.
"""


class BrokerMailError(Exception):
    """Base exception for pipeline errors."""

    pass


class ParseError(BrokerMailError):
    """Email could not be parsed (unknown template or unparseable numbers).

    Not fatal: the email is routed to review with confidence 0.
    """

    def __init__(self, message: str, template: str | None = None):
        self.template = template
        super().__init__(message)


class SymbolResolverError(BrokerMailError):
    """AI symbol resolver failed or returned an unusable answer."""

    pass


class ResolverTimeoutError(SymbolResolverError):
    """AI symbol resolver did not answer within its time budget."""

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Symbol resolver timed out after {timeout_seconds}s")


class DuplicateCheckError(BrokerMailError):
    """Duplicate detection could not read its storage.

    The pipeline fails closed: no auto-insert, route to review.
    """

    pass


class QueueWriteError(BrokerMailError):
    """Review queue could not persist an item."""

    pass


class LedgerWriteError(BrokerMailError):
    """Ledger API rejected or failed to store a transaction."""

    pass


class PortfolioResolutionError(BrokerMailError):
    """No portfolio could be found or created for an account type."""

    def __init__(self, account_type: str | None, message: str | None = None):
        self.account_type = account_type
        super().__init__(message or f"Cannot resolve portfolio for account type '{account_type}'")


class FingerprintLockTimeout(BrokerMailError):
    """Another worker holds the fingerprint lock for too long."""

    def __init__(self, fingerprint: str, waited_seconds: float):
        self.fingerprint = fingerprint
        self.waited_seconds = waited_seconds
        super().__init__(
            f"Timed out after {waited_seconds:.1f}s waiting for lock on {fingerprint[:12]}"
        )


class ReviewActionError(BrokerMailError):
    """Reviewer action is not allowed in the item's current state."""

    pass


class StaleReviewItemError(ReviewActionError):
    """Reviewer acted on an outdated version of a queue item."""

    def __init__(self, item_id: int, expected_version: int, actual_version: int | None):
        self.item_id = item_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Review item {item_id} changed (expected version {expected_version}, "
            f"found {actual_version})"
        )
