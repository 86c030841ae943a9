"""
Migration 002: Add reviewer claim columns to review_queue.

A claim marks who is currently working an item. Claims never block other
reviewers; the version check does that.
"""

import sqlite3

VERSION = 2
NAME = "review_claims"


def upgrade(conn: sqlite3.Connection) -> None:
    """Add claimed_by / claimed_at columns."""
    columns = {row[1] for row in conn.execute("PRAGMA table_info(review_queue)").fetchall()}
    if "claimed_by" not in columns:
        conn.execute("ALTER TABLE review_queue ADD COLUMN claimed_by TEXT")
    if "claimed_at" not in columns:
        conn.execute("ALTER TABLE review_queue ADD COLUMN claimed_at TEXT")
