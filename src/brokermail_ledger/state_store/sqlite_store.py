"""
SQLite-based state store implementation.

Tables:
- processed_emails: Every fingerprint the pipeline has seen and its outcome
- recorded_transactions: Ledger transactions written by this pipeline
- review_queue: Manual review items (one per fingerprint)
- rejected_fingerprints: Fingerprints a reviewer rejected
- fingerprint_locks: Per-fingerprint processing leases
- portfolio_mappings: Account type -> ledger portfolio cache
- fill_groups (migration 001): Running partial fills per broker order
"""

import json
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any

from ..schemas.duplicates import ExistingTransaction
from ..schemas.email import format_timestamp, parse_timestamp
from ..schemas.review import QueueFilter, ReviewQueueItem, ReviewStatus
from ..schemas.transaction import ParsedTransactionCandidate


def utc_now() -> str:
    """Current UTC time, second precision, so stored timestamps sort as text."""
    return format_timestamp(datetime.now(timezone.utc).replace(microsecond=0))


def normalize_timestamp(value: str | datetime) -> str:
    """Bring an ISO timestamp into the stored second-precision format."""
    if isinstance(value, str):
        value = parse_timestamp(value)
    return format_timestamp(value.astimezone(timezone.utc).replace(microsecond=0))


def _dec(value: Any) -> Decimal | None:
    return Decimal(str(value)) if value not in (None, "") else None


def _str(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


class EmailStatus(str, Enum):
    """Outcome recorded for a fingerprint."""

    CREATED = "CREATED"
    QUEUED = "QUEUED"
    MERGED = "MERGED"
    SKIPPED = "SKIPPED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    FAILED = "FAILED"  # Retried on redelivery


@dataclass
class ProcessedEmailRecord:
    """Record of a fingerprint the pipeline has handled."""

    fingerprint: str
    email_hash: str | None
    source_email_id: str | None
    from_address: str | None
    subject: str | None
    status: EmailStatus
    transaction_id: str | None
    review_item_id: int | None
    error_message: str | None
    first_seen: str
    last_seen: str
    delivery_count: int

    @property
    def is_settled(self) -> bool:
        """A settled fingerprint is never processed again."""
        return self.status != EmailStatus.FAILED

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ProcessedEmailRecord":
        """Create from database row."""
        return cls(
            fingerprint=row["fingerprint"],
            email_hash=row["email_hash"],
            source_email_id=row["source_email_id"],
            from_address=row["from_address"],
            subject=row["subject"],
            status=EmailStatus(row["status"]),
            transaction_id=row["transaction_id"],
            review_item_id=row["review_item_id"],
            error_message=row["error_message"],
            first_seen=row["first_seen"],
            last_seen=row["last_seen"],
            delivery_count=row["delivery_count"],
        )


@dataclass
class FillGroupRecord:
    """Running partial fills of one broker order."""

    id: int
    group_key: str
    symbol: str
    transaction_type: str
    portfolio_id: str | None
    order_id: str | None
    target_quantity: Decimal | None
    filled_quantity: Decimal
    fill_count: int
    vwap: Decimal | None
    first_fill_at: str
    last_fill_at: str
    status: str

    @property
    def is_complete(self) -> bool:
        return self.target_quantity is not None and self.filled_quantity >= self.target_quantity

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "FillGroupRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            group_key=row["group_key"],
            symbol=row["symbol"],
            transaction_type=row["transaction_type"],
            portfolio_id=row["portfolio_id"],
            order_id=row["order_id"],
            target_quantity=_dec(row["target_quantity"]),
            filled_quantity=Decimal(row["filled_quantity"]),
            fill_count=row["fill_count"],
            vwap=_dec(row["vwap"]),
            first_fill_at=row["first_fill_at"],
            last_fill_at=row["last_fill_at"],
            status=row["status"],
        )


@dataclass
class PortfolioMappingRecord:
    """Cached account type -> portfolio mapping."""

    account_type: str
    portfolio_id: str
    portfolio_name: str | None
    auto_created: bool
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "PortfolioMappingRecord":
        """Create from database row."""
        return cls(
            account_type=row["account_type"],
            portfolio_id=row["portfolio_id"],
            portfolio_name=row["portfolio_name"],
            auto_created=bool(row["auto_created"]),
            created_at=row["created_at"],
        )


class StateStore:
    """
    SQLite-based state store for the pipeline.

    Provides persistent tracking of:
    - Processed fingerprints and their outcome
    - Transactions written to the ledger
    - The manual review queue and rejected fingerprints
    - Fingerprint locks, fill groups and portfolio mappings

    Safe for several processes sharing one database file: compare-and-swap
    work runs under BEGIN IMMEDIATE.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path | str, run_migrations: bool = True):
        """
        Initialize state store.

        Args:
            db_path: Path to SQLite database file
            run_migrations: Whether to run pending migrations (default True)
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        if run_migrations:
            self._run_migrations()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def _immediate_transaction(self) -> Iterator[sqlite3.Connection]:
        """Transaction holding the write lock from its first statement."""
        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS processed_emails (
                    fingerprint TEXT PRIMARY KEY,
                    email_hash TEXT,
                    source_email_id TEXT,
                    from_address TEXT,
                    subject TEXT,
                    status TEXT NOT NULL,
                    transaction_id TEXT,
                    review_item_id INTEGER,
                    error_message TEXT,
                    first_seen TEXT NOT NULL,
                    last_seen TEXT NOT NULL,
                    delivery_count INTEGER NOT NULL DEFAULT 1
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS recorded_transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    ledger_transaction_id TEXT,
                    fingerprint TEXT NOT NULL,
                    portfolio_id TEXT,
                    symbol TEXT NOT NULL,
                    transaction_type TEXT NOT NULL,
                    quantity TEXT NOT NULL,  -- Decimal as string
                    price TEXT NOT NULL,
                    total_amount TEXT,
                    transaction_date TEXT NOT NULL,  -- YYYY-MM-DD
                    executed_at TEXT,
                    order_id TEXT,
                    order_quantity TEXT,
                    fill_group_id INTEGER,
                    created_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS review_queue (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    fingerprint TEXT NOT NULL UNIQUE,
                    candidate_json TEXT NOT NULL,
                    identification_json TEXT NOT NULL,
                    duplicate_json TEXT,
                    status TEXT NOT NULL,
                    priority INTEGER NOT NULL,
                    priority_label TEXT NOT NULL,
                    risk_score REAL NOT NULL DEFAULT 0,
                    escalation_level INTEGER NOT NULL DEFAULT 0,
                    tags TEXT,  -- JSON array
                    portfolio_id TEXT,
                    symbol TEXT,
                    confidence REAL NOT NULL DEFAULT 0,
                    queued_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    resolved_at TEXT,
                    resolved_by TEXT,
                    resolution_note TEXT,
                    transaction_id TEXT,
                    version INTEGER NOT NULL DEFAULT 1
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS rejected_fingerprints (
                    fingerprint TEXT PRIMARY KEY,
                    review_item_id INTEGER,
                    reason TEXT,
                    rejected_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS fingerprint_locks (
                    fingerprint TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    acquired_at TEXT NOT NULL,
                    expires_at REAL NOT NULL  -- Unix epoch seconds
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS portfolio_mappings (
                    account_type TEXT PRIMARY KEY,
                    portfolio_id TEXT NOT NULL,
                    portfolio_name TEXT,
                    auto_created INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_processed_status ON processed_emails(status)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_recorded_symbol_date "
                "ON recorded_transactions(symbol, transaction_date)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_review_status_priority "
                "ON review_queue(status, priority)"
            )

            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,)
            )

    def _run_migrations(self) -> None:
        """Run pending database migrations."""
        from .migrations import MigrationRunner

        conn = self._get_connection()
        try:
            runner = MigrationRunner(conn)
            runner.run_pending()
        finally:
            conn.close()

    # Fingerprint locks

    def try_acquire_lock(self, fingerprint: str, owner: str, ttl_seconds: float) -> bool:
        """
        Take the processing lease for a fingerprint if it is free or expired.

        Returns:
            True if ``owner`` now holds the lease
        """
        now = time.time()
        with self._immediate_transaction() as conn:
            conn.execute(
                "DELETE FROM fingerprint_locks WHERE fingerprint = ? AND expires_at < ?",
                (fingerprint, now),
            )
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO fingerprint_locks (fingerprint, owner, acquired_at, expires_at)
                VALUES (?, ?, ?, ?)
            """,
                (fingerprint, owner, utc_now(), now + ttl_seconds),
            )
            return cursor.rowcount == 1

    def release_lock(self, fingerprint: str, owner: str) -> bool:
        """Release a lease held by ``owner``. Returns False if it was lost."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM fingerprint_locks WHERE fingerprint = ? AND owner = ?",
                (fingerprint, owner),
            )
            return cursor.rowcount == 1

    # Processed emails

    def get_processed_email(self, fingerprint: str) -> ProcessedEmailRecord | None:
        """Get the processing record for a fingerprint."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM processed_emails WHERE fingerprint = ?", (fingerprint,)
            ).fetchone()
            return ProcessedEmailRecord.from_row(row) if row else None

    def record_delivery(self, fingerprint: str) -> None:
        """Count another delivery of an already known fingerprint."""
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE processed_emails
                SET delivery_count = delivery_count + 1, last_seen = ?
                WHERE fingerprint = ?
            """,
                (utc_now(), fingerprint),
            )

    def mark_email(
        self,
        fingerprint: str,
        status: EmailStatus,
        email_hash: str | None = None,
        source_email_id: str | None = None,
        from_address: str | None = None,
        subject: str | None = None,
        transaction_id: str | None = None,
        review_item_id: int | None = None,
        error_message: str | None = None,
    ) -> None:
        """Insert or update the outcome for a fingerprint."""
        now = utc_now()
        with self._transaction() as conn:
            existing = conn.execute(
                "SELECT fingerprint FROM processed_emails WHERE fingerprint = ?", (fingerprint,)
            ).fetchone()
            if existing:
                conn.execute(
                    """
                    UPDATE processed_emails
                    SET status = ?,
                        transaction_id = COALESCE(?, transaction_id),
                        review_item_id = COALESCE(?, review_item_id),
                        error_message = ?,
                        last_seen = ?
                    WHERE fingerprint = ?
                """,
                    (status.value, transaction_id, review_item_id, error_message, now, fingerprint),
                )
            else:
                conn.execute(
                    """
                    INSERT INTO processed_emails
                    (fingerprint, email_hash, source_email_id, from_address, subject, status,
                     transaction_id, review_item_id, error_message, first_seen, last_seen)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                    (
                        fingerprint,
                        email_hash,
                        source_email_id,
                        from_address,
                        subject,
                        status.value,
                        transaction_id,
                        review_item_id,
                        error_message,
                        now,
                        now,
                    ),
                )

    # Rejected fingerprints

    def remember_rejected(
        self, fingerprint: str, review_item_id: int | None = None, reason: str | None = None
    ) -> None:
        """Remember a rejected fingerprint so redeliveries are ignored."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO rejected_fingerprints
                (fingerprint, review_item_id, reason, rejected_at)
                VALUES (?, ?, ?, ?)
            """,
                (fingerprint, review_item_id, reason, utc_now()),
            )

    def is_rejected(self, fingerprint: str) -> bool:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT 1 FROM rejected_fingerprints WHERE fingerprint = ?", (fingerprint,)
            ).fetchone()
            return row is not None

    # Recorded transactions

    def record_transaction(
        self,
        fingerprint: str,
        candidate: ParsedTransactionCandidate,
        ledger_transaction_id: str | None,
        portfolio_id: str | None,
        fill_group_id: int | None = None,
    ) -> int:
        """Record a transaction written to the ledger."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO recorded_transactions
                (ledger_transaction_id, fingerprint, portfolio_id, symbol, transaction_type,
                 quantity, price, total_amount, transaction_date, executed_at, order_id,
                 order_quantity, fill_group_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    ledger_transaction_id,
                    fingerprint,
                    portfolio_id,
                    candidate.symbol,
                    candidate.transaction_type.value,
                    str(candidate.quantity),
                    str(candidate.price),
                    _str(candidate.effective_total),
                    candidate.transaction_date,
                    candidate.executed_at,
                    candidate.order_id,
                    _str(candidate.order_quantity),
                    fill_group_id,
                    utc_now(),
                ),
            )
            return cursor.lastrowid

    def get_recent_transactions(
        self,
        symbol: str,
        since_date: str,
        until_date: str | None = None,
        portfolio_id: str | None = None,
    ) -> list[ExistingTransaction]:
        """Recorded transactions for a symbol with transaction_date in a range."""
        query = "SELECT * FROM recorded_transactions WHERE symbol = ? AND transaction_date >= ?"
        params: list[Any] = [symbol, since_date]
        if until_date:
            query += " AND transaction_date <= ?"
            params.append(until_date)
        if portfolio_id:
            query += " AND (portfolio_id = ? OR portfolio_id IS NULL)"
            params.append(portfolio_id)
        query += " ORDER BY transaction_date, executed_at, id"

        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()

        return [
            ExistingTransaction(
                id=row["ledger_transaction_id"] or f"local-{row['id']}",
                symbol=row["symbol"],
                transaction_type=row["transaction_type"],
                quantity=Decimal(row["quantity"]),
                price=Decimal(row["price"]),
                transaction_date=row["transaction_date"],
                executed_at=row["executed_at"],
                order_id=row["order_id"],
                order_quantity=_dec(row["order_quantity"]),
                portfolio_id=row["portfolio_id"],
                fill_group_id=row["fill_group_id"],
                source="local",
            )
            for row in rows
        ]

    # Fill groups

    def get_fill_group(self, group_id: int) -> FillGroupRecord | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM fill_groups WHERE id = ?", (group_id,)).fetchone()
            return FillGroupRecord.from_row(row) if row else None

    def get_fill_group_by_key(self, group_key: str) -> FillGroupRecord | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM fill_groups WHERE group_key = ?", (group_key,)
            ).fetchone()
            return FillGroupRecord.from_row(row) if row else None

    def add_fill(
        self,
        group_key: str,
        candidate: ParsedTransactionCandidate,
        portfolio_id: str | None,
    ) -> FillGroupRecord:
        """
        Add one fill to its group, creating the group on first fill.

        Filled quantity, fill count and VWAP are recomputed in the same
        transaction.
        """
        quantity = candidate.quantity
        price = candidate.price
        executed_at = candidate.executed_at or utc_now()

        with self._immediate_transaction() as conn:
            row = conn.execute(
                "SELECT * FROM fill_groups WHERE group_key = ?", (group_key,)
            ).fetchone()
            if row is None:
                cursor = conn.execute(
                    """
                    INSERT INTO fill_groups
                    (group_key, symbol, transaction_type, portfolio_id, order_id, target_quantity,
                     filled_quantity, fill_count, vwap, first_fill_at, last_fill_at, status)
                    VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?)
                """,
                    (
                        group_key,
                        candidate.symbol,
                        candidate.transaction_type.value,
                        portfolio_id,
                        candidate.order_id,
                        _str(candidate.order_quantity),
                        str(quantity),
                        str(price),
                        executed_at,
                        executed_at,
                        "OPEN",
                    ),
                )
                group_id = cursor.lastrowid
            else:
                group = FillGroupRecord.from_row(row)
                filled = group.filled_quantity + quantity
                previous_value = (group.vwap or Decimal("0")) * group.filled_quantity
                vwap = ((previous_value + quantity * price) / filled).quantize(Decimal("0.0001"))
                target = group.target_quantity or candidate.order_quantity
                conn.execute(
                    """
                    UPDATE fill_groups
                    SET filled_quantity = ?, fill_count = fill_count + 1, vwap = ?,
                        target_quantity = ?, last_fill_at = MAX(last_fill_at, ?),
                        first_fill_at = MIN(first_fill_at, ?)
                    WHERE id = ?
                """,
                    (str(filled), str(vwap), _str(target), executed_at, executed_at, group.id),
                )
                group_id = group.id

            conn.execute(
                """
                UPDATE fill_groups SET status = CASE
                    WHEN target_quantity IS NOT NULL
                         AND CAST(filled_quantity AS REAL) >= CAST(target_quantity AS REAL)
                    THEN 'COMPLETE' ELSE 'OPEN' END
                WHERE id = ?
            """,
                (group_id,),
            )
            row = conn.execute("SELECT * FROM fill_groups WHERE id = ?", (group_id,)).fetchone()
            return FillGroupRecord.from_row(row)

    # Review queue

    def upsert_review_item(
        self,
        fingerprint: str,
        candidate_json: str,
        identification_json: str,
        duplicate_json: str | None,
        priority: int,
        priority_label: str,
        risk_score: float,
        tags: list[str],
        portfolio_id: str | None,
        symbol: str | None,
        confidence: float,
    ) -> tuple[ReviewQueueItem, bool]:
        """
        Insert a pending item, or refresh the pending item for the fingerprint.

        Items in a terminal state are returned unchanged.

        Returns:
            (item, created)
        """
        now = utc_now()
        with self._immediate_transaction() as conn:
            row = conn.execute(
                "SELECT * FROM review_queue WHERE fingerprint = ?", (fingerprint,)
            ).fetchone()
            if row is None:
                cursor = conn.execute(
                    """
                    INSERT INTO review_queue
                    (fingerprint, candidate_json, identification_json, duplicate_json, status,
                     priority, priority_label, risk_score, escalation_level, tags, portfolio_id,
                     symbol, confidence, queued_at, updated_at, version)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?, ?, 1)
                """,
                    (
                        fingerprint,
                        candidate_json,
                        identification_json,
                        duplicate_json,
                        ReviewStatus.PENDING.value,
                        priority,
                        priority_label,
                        risk_score,
                        json.dumps(tags),
                        portfolio_id,
                        symbol,
                        confidence,
                        now,
                        now,
                    ),
                )
                item_id, created = cursor.lastrowid, True
            else:
                item_id, created = row["id"], False
                if row["status"] == ReviewStatus.PENDING.value:
                    conn.execute(
                        """
                        UPDATE review_queue
                        SET candidate_json = ?, identification_json = ?, duplicate_json = ?,
                            priority = MAX(priority, ?), priority_label = ?, risk_score = ?,
                            tags = ?, portfolio_id = COALESCE(?, portfolio_id), symbol = ?,
                            confidence = ?, updated_at = ?, version = version + 1
                        WHERE id = ?
                    """,
                        (
                            candidate_json,
                            identification_json,
                            duplicate_json,
                            priority,
                            priority_label,
                            risk_score,
                            json.dumps(tags),
                            portfolio_id,
                            symbol,
                            confidence,
                            now,
                            item_id,
                        ),
                    )

            row = conn.execute("SELECT * FROM review_queue WHERE id = ?", (item_id,)).fetchone()
            return ReviewQueueItem.from_row(row), created

    def get_review_item(self, item_id: int) -> ReviewQueueItem | None:
        """Get a review item by ID."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM review_queue WHERE id = ?", (item_id,)).fetchone()
            return ReviewQueueItem.from_row(row) if row else None

    def get_review_item_by_fingerprint(self, fingerprint: str) -> ReviewQueueItem | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM review_queue WHERE fingerprint = ?", (fingerprint,)
            ).fetchone()
            return ReviewQueueItem.from_row(row) if row else None

    REVIEW_UPDATABLE_COLUMNS = frozenset(
        {
            "candidate_json",
            "duplicate_json",
            "status",
            "priority",
            "priority_label",
            "risk_score",
            "escalation_level",
            "tags",
            "portfolio_id",
            "symbol",
            "confidence",
            "resolved_at",
            "resolved_by",
            "resolution_note",
            "transaction_id",
            "claimed_by",
            "claimed_at",
        }
    )

    def compare_and_update_review_item(
        self, item_id: int, expected_version: int, **fields: Any
    ) -> bool:
        """
        Update a review item only if its version is still ``expected_version``.

        The version is incremented on success.

        Returns:
            False if the item is missing or was changed concurrently
        """
        unknown = set(fields) - self.REVIEW_UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update review_queue columns: {sorted(unknown)}")

        values = dict(fields)
        if "tags" in values and not isinstance(values["tags"], str):
            values["tags"] = json.dumps(values["tags"])
        values["updated_at"] = utc_now()

        assignments = ", ".join(f"{column} = ?" for column in values)
        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE review_queue SET {assignments}, version = version + 1 "
                "WHERE id = ? AND version = ?",
                (*values.values(), item_id, expected_version),
            )
            return cursor.rowcount == 1

    def list_review_items(self, queue_filter: QueueFilter | None = None) -> list[ReviewQueueItem]:
        """List review items matching a filter, highest priority first."""
        f = queue_filter or QueueFilter()
        clauses: list[str] = []
        params: list[Any] = []

        if f.status is not None:
            clauses.append("status = ?")
            params.append(f.status.value)
        if f.priority is not None:
            clauses.append("priority_label = ?")
            params.append(f.priority.value)
        if f.portfolio_id:
            clauses.append("portfolio_id = ?")
            params.append(f.portfolio_id)
        if f.symbol:
            clauses.append("symbol = ?")
            params.append(f.symbol.upper())
        if f.queued_after:
            clauses.append("queued_at >= ?")
            params.append(normalize_timestamp(f.queued_after))
        if f.queued_before:
            clauses.append("queued_at <= ?")
            params.append(normalize_timestamp(f.queued_before))
        if f.min_escalation_level is not None:
            clauses.append("escalation_level >= ?")
            params.append(f.min_escalation_level)
        if f.min_confidence is not None:
            clauses.append("confidence >= ?")
            params.append(f.min_confidence)
        if f.max_confidence is not None:
            clauses.append("confidence <= ?")
            params.append(f.max_confidence)
        for tag in f.tags:
            clauses.append("tags LIKE ?")
            params.append(f"%{json.dumps(tag)}%")

        query = "SELECT * FROM review_queue"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY priority DESC, queued_at ASC, id ASC LIMIT ? OFFSET ?"
        params.extend([f.limit, f.offset])

        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
            return [ReviewQueueItem.from_row(row) for row in rows]

    def get_pending_review_items(self) -> list[ReviewQueueItem]:
        """All pending items, oldest first (for SLA sweeps)."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM review_queue WHERE status = ? ORDER BY queued_at, id",
                (ReviewStatus.PENDING.value,),
            ).fetchall()
            return [ReviewQueueItem.from_row(row) for row in rows]

    def get_review_counts(self, since: str) -> dict[str, Any]:
        """Raw counts for queue statistics."""
        since = normalize_timestamp(since)
        with self._transaction() as conn:
            by_status = {
                row["status"]: row["count"]
                for row in conn.execute(
                    "SELECT status, COUNT(*) as count FROM review_queue GROUP BY status"
                ).fetchall()
            }
            by_priority = {
                row["priority_label"]: row["count"]
                for row in conn.execute(
                    "SELECT priority_label, COUNT(*) as count FROM review_queue "
                    "WHERE status = ? GROUP BY priority_label",
                    (ReviewStatus.PENDING.value,),
                ).fetchall()
            }
            by_escalation = {
                row["escalation_level"]: row["count"]
                for row in conn.execute(
                    "SELECT escalation_level, COUNT(*) as count FROM review_queue "
                    "WHERE status = ? GROUP BY escalation_level",
                    (ReviewStatus.PENDING.value,),
                ).fetchall()
            }
            pending_times = [
                row["queued_at"]
                for row in conn.execute(
                    "SELECT queued_at FROM review_queue WHERE status = ? ORDER BY queued_at",
                    (ReviewStatus.PENDING.value,),
                ).fetchall()
            ]
            resolved_recent = conn.execute(
                "SELECT COUNT(*) as count FROM review_queue WHERE resolved_at >= ?", (since,)
            ).fetchone()
            queued_recent = conn.execute(
                "SELECT COUNT(*) as count FROM review_queue WHERE queued_at >= ?", (since,)
            ).fetchone()

        return {
            "by_status": by_status,
            "by_priority": by_priority,
            "by_escalation": by_escalation,
            "pending_queued_at": pending_times,
            "resolved_since": resolved_recent["count"] if resolved_recent else 0,
            "queued_since": queued_recent["count"] if queued_recent else 0,
        }

    # Portfolio mappings

    def get_portfolio_mapping(self, account_type: str) -> PortfolioMappingRecord | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM portfolio_mappings WHERE account_type = ?", (account_type,)
            ).fetchone()
            return PortfolioMappingRecord.from_row(row) if row else None

    def save_portfolio_mapping(
        self,
        account_type: str,
        portfolio_id: str,
        portfolio_name: str | None = None,
        auto_created: bool = False,
    ) -> None:
        """Save or replace the mapping for an account type."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO portfolio_mappings
                (account_type, portfolio_id, portfolio_name, auto_created, created_at)
                VALUES (?, ?, ?, ?, ?)
            """,
                (account_type, portfolio_id, portfolio_name, int(auto_created), utc_now()),
            )

    def list_portfolio_mappings(self) -> list[PortfolioMappingRecord]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM portfolio_mappings ORDER BY account_type"
            ).fetchall()
            return [PortfolioMappingRecord.from_row(row) for row in rows]

    # Statistics

    def get_stats(self) -> dict[str, Any]:
        """Get pipeline statistics."""
        with self._transaction() as conn:
            by_status = {
                row["status"]: row["count"]
                for row in conn.execute(
                    "SELECT status, COUNT(*) as count FROM processed_emails GROUP BY status"
                ).fetchall()
            }
            deliveries = conn.execute(
                "SELECT COALESCE(SUM(delivery_count), 0) as count FROM processed_emails"
            ).fetchone()
            recorded = conn.execute(
                "SELECT COUNT(*) as count FROM recorded_transactions"
            ).fetchone()
            pending_review = conn.execute(
                "SELECT COUNT(*) as count FROM review_queue WHERE status = ?",
                (ReviewStatus.PENDING.value,),
            ).fetchone()
            rejected = conn.execute(
                "SELECT COUNT(*) as count FROM rejected_fingerprints"
            ).fetchone()
            fill_groups = conn.execute("SELECT COUNT(*) as count FROM fill_groups").fetchone()

        return {
            "emails_seen": sum(by_status.values()),
            "deliveries": deliveries["count"] if deliveries else 0,
            "emails_by_status": by_status,
            "transactions_recorded": recorded["count"] if recorded else 0,
            "pending_review": pending_review["count"] if pending_review else 0,
            "rejected_fingerprints": rejected["count"] if rejected else 0,
            "fill_groups": fill_groups["count"] if fill_groups else 0,
        }
