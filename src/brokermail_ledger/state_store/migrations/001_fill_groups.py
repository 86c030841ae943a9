"""
Migration 001: Add fill_groups table.

A fill group collects the partial fills of one broker order so the running
quantity can be checked against the stated order size.
"""

import sqlite3

VERSION = 1
NAME = "fill_groups"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create fill_groups table and link recorded transactions to it."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS fill_groups (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            group_key TEXT NOT NULL UNIQUE,
            symbol TEXT NOT NULL,
            transaction_type TEXT NOT NULL,
            portfolio_id TEXT,
            order_id TEXT,
            target_quantity TEXT,  -- Decimal as string, NULL if unknown
            filled_quantity TEXT NOT NULL,
            fill_count INTEGER NOT NULL DEFAULT 0,
            vwap TEXT,  -- Volume-weighted average price
            first_fill_at TEXT NOT NULL,
            last_fill_at TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'OPEN'  -- OPEN, COMPLETE
        )
    """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_fill_groups_symbol ON fill_groups(symbol)")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_recorded_fill_group ON recorded_transactions(fill_group_id)"
    )
