"""Tests for state store."""

import json
from decimal import Decimal

import pytest

from brokermail_ledger.schemas.review import QueueFilter, ReviewStatus
from brokermail_ledger.state_store import EmailStatus, StateStore, normalize_timestamp
from brokermail_ledger.state_store.migrations import MigrationRunner, get_all_migrations


def _queue(store, fingerprint, candidate, identification, priority=30, tags=None):
    return store.upsert_review_item(
        fingerprint=fingerprint,
        candidate_json=json.dumps(candidate.to_dict()),
        identification_json=json.dumps(identification.to_dict()),
        duplicate_json=None,
        priority=priority,
        priority_label="medium",
        risk_score=0.2,
        tags=tags or ["low-confidence"],
        portfolio_id="p-tfsa",
        symbol=candidate.symbol,
        confidence=candidate.confidence,
    )


class TestStateStore:
    """Tests for SQLite state store."""

    def test_init_creates_db(self, temp_db):
        """Initializing creates database file."""
        StateStore(temp_db)
        assert temp_db.exists()

    def test_init_creates_tables(self, store):
        """All required tables are created."""
        conn = store._get_connection()
        try:
            tables = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
            table_names = [t[0] for t in tables]

            assert "processed_emails" in table_names
            assert "recorded_transactions" in table_names
            assert "review_queue" in table_names
            assert "rejected_fingerprints" in table_names
            assert "fingerprint_locks" in table_names
            assert "portfolio_mappings" in table_names
            assert "fill_groups" in table_names
        finally:
            conn.close()

    def test_reopen_is_idempotent(self, temp_db):
        StateStore(temp_db).mark_email("f" * 64, EmailStatus.CREATED)
        reopened = StateStore(temp_db)
        assert reopened.get_processed_email("f" * 64).status == EmailStatus.CREATED


class TestMigrations:
    """Tests for the migration runner."""

    def test_all_migrations_applied(self, store):
        conn = store._get_connection()
        try:
            runner = MigrationRunner(conn)
            assert runner.get_current_version() == max(m.version for m in get_all_migrations())
            assert runner.get_pending() == []
        finally:
            conn.close()

    def test_review_claim_columns(self, store):
        conn = store._get_connection()
        try:
            columns = {row[1] for row in conn.execute("PRAGMA table_info(review_queue)")}
        finally:
            conn.close()
        assert {"claimed_by", "claimed_at"} <= columns

    def test_skip_migrations(self, temp_db):
        store = StateStore(temp_db, run_migrations=False)
        conn = store._get_connection()
        try:
            tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master")}
        finally:
            conn.close()
        assert "fill_groups" not in tables


class TestFingerprintLocks:
    """Tests for fingerprint processing leases."""

    def test_lock_is_exclusive(self, store):
        assert store.try_acquire_lock("fp1", "worker-a", 60)
        assert not store.try_acquire_lock("fp1", "worker-b", 60)
        assert store.try_acquire_lock("fp2", "worker-b", 60)

    def test_release_requires_owner(self, store):
        store.try_acquire_lock("fp1", "worker-a", 60)

        assert not store.release_lock("fp1", "worker-b")
        assert store.release_lock("fp1", "worker-a")
        assert store.try_acquire_lock("fp1", "worker-b", 60)

    def test_expired_lease_can_be_taken(self, store):
        store.try_acquire_lock("fp1", "crashed-worker", -1)

        assert store.try_acquire_lock("fp1", "worker-b", 60)


class TestProcessedEmails:
    """Tests for processed fingerprint records."""

    def test_mark_and_get(self, store):
        store.mark_email(
            "fp1",
            EmailStatus.CREATED,
            email_hash="abcd",
            from_address="notifications@wealthsimple.com",
            transaction_id="t-1",
        )

        record = store.get_processed_email("fp1")

        assert record.status == EmailStatus.CREATED
        assert record.transaction_id == "t-1"
        assert record.delivery_count == 1
        assert record.is_settled
        assert record.first_seen.endswith("Z")

    def test_unknown_fingerprint(self, store):
        assert store.get_processed_email("missing") is None

    def test_failed_is_not_settled(self, store):
        store.mark_email("fp1", EmailStatus.FAILED, error_message="LedgerWriteError: 503")

        record = store.get_processed_email("fp1")

        assert not record.is_settled
        assert record.error_message == "LedgerWriteError: 503"

    def test_update_keeps_existing_links(self, store):
        store.mark_email("fp1", EmailStatus.QUEUED, review_item_id=7)
        store.mark_email("fp1", EmailStatus.APPROVED, transaction_id="t-9")

        record = store.get_processed_email("fp1")

        assert record.status == EmailStatus.APPROVED
        assert record.review_item_id == 7
        assert record.transaction_id == "t-9"
        assert record.error_message is None

    def test_record_delivery(self, store):
        store.mark_email("fp1", EmailStatus.CREATED)
        store.record_delivery("fp1")
        store.record_delivery("fp1")

        assert store.get_processed_email("fp1").delivery_count == 3


class TestRejectedFingerprints:
    """Tests for rejected fingerprint memory."""

    def test_remember_rejected(self, store):
        assert not store.is_rejected("fp1")

        store.remember_rejected("fp1", review_item_id=3, reason="not my account")
        store.remember_rejected("fp1", review_item_id=3)

        assert store.is_rejected("fp1")
        assert store.get_stats()["rejected_fingerprints"] == 1


class TestRecordedTransactions:
    """Tests for locally recorded ledger writes."""

    def test_recent_transactions_by_symbol_and_date(self, store, make_candidate):
        store.record_transaction("fp1", make_candidate(), "t-1", "p-tfsa")
        store.record_transaction(
            "fp2", make_candidate(transaction_date="2025-01-10"), "t-2", "p-tfsa"
        )
        store.record_transaction("fp3", make_candidate(symbol="MSFT"), "t-3", "p-tfsa")

        recent = store.get_recent_transactions("AAPL", "2025-01-15", "2025-01-15")

        assert [tx.id for tx in recent] == ["t-1"]
        assert recent[0].quantity == Decimal("100")
        assert recent[0].price == Decimal("150.50")
        assert recent[0].executed_at == "2025-01-15T15:30:00Z"

    def test_portfolio_filter(self, store, make_candidate):
        store.record_transaction("fp1", make_candidate(), "t-1", "p-tfsa")
        store.record_transaction("fp2", make_candidate(), "t-2", "p-rrsp")

        recent = store.get_recent_transactions("AAPL", "2025-01-01", portfolio_id="p-rrsp")

        assert [tx.id for tx in recent] == ["t-2"]

    def test_local_id_without_ledger_id(self, store, make_candidate):
        row_id = store.record_transaction("fp1", make_candidate(), None, "p-tfsa")

        recent = store.get_recent_transactions("AAPL", "2025-01-01")

        assert recent[0].id == f"local-{row_id}"


class TestFillGroups:
    """Tests for running partial fills."""

    def test_running_totals_and_vwap(self, store, make_candidate):
        key = "p-tfsa:AAPL:buy:WS1:2025-01-15"
        first = store.add_fill(
            key,
            make_candidate(quantity="50", price="10", order_id="WS1", order_quantity=Decimal("100")),
            "p-tfsa",
        )
        assert first.fill_count == 1
        assert first.status == "OPEN"
        assert not first.is_complete

        second = store.add_fill(
            key,
            make_candidate(
                quantity="50",
                price="12",
                order_id="WS1",
                order_quantity=Decimal("100"),
                executed_at="2025-01-15T15:32:00Z",
            ),
            "p-tfsa",
        )

        assert second.id == first.id
        assert second.fill_count == 2
        assert second.filled_quantity == Decimal("100")
        assert second.vwap == Decimal("11.0000")
        assert second.status == "COMPLETE"
        assert second.is_complete
        assert second.last_fill_at == "2025-01-15T15:32:00Z"
        assert store.get_fill_group_by_key(key).id == first.id
        assert store.get_fill_group(first.id).fill_count == 2

    def test_unknown_target_stays_open(self, store, make_candidate):
        group = store.add_fill("k", make_candidate(quantity="40"), None)
        group = store.add_fill("k", make_candidate(quantity="60"), None)

        assert group.target_quantity is None
        assert group.status == "OPEN"


class TestReviewQueueStorage:
    """Tests for review queue rows and compare-and-swap updates."""

    def test_upsert_is_idempotent_per_fingerprint(
        self, store, make_candidate, make_identification
    ):
        candidate = make_candidate(confidence=0.4)
        identification = make_identification("fp1")

        item, created = _queue(store, "fp1", candidate, identification)
        again, created_again = _queue(store, "fp1", candidate, identification, priority=10)

        assert created
        assert not created_again
        assert again.id == item.id
        assert again.version == item.version + 1
        assert again.priority == 30  # priority never lowered by a refresh
        assert len(store.list_review_items()) == 1

    def test_terminal_items_not_refreshed(self, store, make_candidate, make_identification):
        item, _ = _queue(store, "fp1", make_candidate(), make_identification("fp1"))
        store.compare_and_update_review_item(item.id, item.version, status="REJECTED")

        again, created = _queue(store, "fp1", make_candidate(), make_identification("fp1"))

        assert not created
        assert again.status == ReviewStatus.REJECTED
        assert again.version == item.version + 1

    def test_item_round_trips_candidate(self, store, make_candidate, make_identification):
        item, _ = _queue(store, "fp1", make_candidate(), make_identification("fp1"))

        loaded = store.get_review_item(item.id)

        assert loaded.candidate.quantity == Decimal("100")
        assert loaded.candidate.symbol == "AAPL"
        assert loaded.identification.fingerprint_hash == "fp1"
        assert loaded.tags == ["low-confidence"]
        assert store.get_review_item_by_fingerprint("fp1").id == item.id

    def test_compare_and_update(self, store, make_candidate, make_identification):
        item, _ = _queue(store, "fp1", make_candidate(), make_identification("fp1"))

        assert store.compare_and_update_review_item(
            item.id, item.version, status="APPROVED", resolved_by="alice"
        )
        assert not store.compare_and_update_review_item(item.id, item.version, status="REJECTED")

        loaded = store.get_review_item(item.id)
        assert loaded.status == ReviewStatus.APPROVED
        assert loaded.resolved_by == "alice"
        assert loaded.version == item.version + 1

    def test_compare_and_update_rejects_unknown_columns(
        self, store, make_candidate, make_identification
    ):
        item, _ = _queue(store, "fp1", make_candidate(), make_identification("fp1"))

        with pytest.raises(ValueError):
            store.compare_and_update_review_item(item.id, item.version, fingerprint="other")

    def test_list_filters(self, store, make_candidate, make_identification):
        _queue(store, "fp1", make_candidate(), make_identification("fp1"), tags=["parse-error"])
        _queue(
            store,
            "fp2",
            make_candidate(symbol="MSFT"),
            make_identification("fp2"),
            priority=60,
            tags=["possible-duplicate"],
        )

        assert [i.fingerprint for i in store.list_review_items()] == ["fp2", "fp1"]
        assert [
            i.fingerprint for i in store.list_review_items(QueueFilter(symbol="msft"))
        ] == ["fp2"]
        assert [
            i.fingerprint for i in store.list_review_items(QueueFilter(tags=["parse-error"]))
        ] == ["fp1"]
        assert store.list_review_items(QueueFilter(status=ReviewStatus.APPROVED)) == []
        assert len(store.list_review_items(QueueFilter(status=None, limit=1))) == 1

    def test_review_counts(self, store, make_candidate, make_identification):
        _queue(store, "fp1", make_candidate(), make_identification("fp1"))
        item, _ = _queue(store, "fp2", make_candidate(), make_identification("fp2"))
        store.compare_and_update_review_item(
            item.id, item.version, status="REJECTED", resolved_at="2025-01-20T00:00:00Z"
        )

        counts = store.get_review_counts("2025-01-01T00:00:00Z")

        assert counts["by_status"] == {"PENDING": 1, "REJECTED": 1}
        assert counts["by_priority"] == {"medium": 1}
        assert counts["resolved_since"] == 1
        assert len(store.get_pending_review_items()) == 1


class TestPortfolioMappings:
    """Tests for the account type -> portfolio cache."""

    def test_save_and_replace(self, store):
        store.save_portfolio_mapping("TFSA", "p-1", "My TFSA")
        store.save_portfolio_mapping("TFSA", "p-2", "TFSA", auto_created=True)
        store.save_portfolio_mapping("RRSP", "p-3")

        mapping = store.get_portfolio_mapping("TFSA")

        assert mapping.portfolio_id == "p-2"
        assert mapping.auto_created
        assert [m.account_type for m in store.list_portfolio_mappings()] == ["RRSP", "TFSA"]
        assert store.get_portfolio_mapping("FHSA") is None


class TestTimestamps:
    """Tests for stored timestamp normalization."""

    def test_normalize_timestamp(self):
        assert normalize_timestamp("2025-01-15T10:30:00.123456-05:00") == "2025-01-15T15:30:00Z"


class TestStats:
    """Tests for pipeline statistics."""

    def test_stats(self, store, make_candidate):
        store.mark_email("fp1", EmailStatus.CREATED)
        store.mark_email("fp2", EmailStatus.QUEUED)
        store.record_delivery("fp1")
        store.record_transaction("fp1", make_candidate(), "t-1", "p-tfsa")

        stats = store.get_stats()

        assert stats["emails_seen"] == 2
        assert stats["deliveries"] == 3
        assert stats["emails_by_status"] == {"CREATED": 1, "QUEUED": 1}
        assert stats["transactions_recorded"] == 1
        assert stats["pending_review"] == 0
