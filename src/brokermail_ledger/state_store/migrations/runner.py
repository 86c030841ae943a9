"""
Schema migration runner.

Migration modules live next to this file as ``NNN_name.py`` and define
``VERSION`` (int), ``NAME`` (str) and ``upgrade(conn)``. Applied versions are
recorded in ``schema_migrations``.

Several workers may open the same database at once, so pending migrations
are applied under one ``BEGIN IMMEDIATE`` and re-checked after the write
lock is taken.
"""

import importlib
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

MIGRATIONS_PACKAGE = "brokermail_ledger.state_store.migrations"
MIGRATION_GLOB = "[0-9][0-9][0-9]_*.py"


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    upgrade: Callable[[sqlite3.Connection], None]


def get_all_migrations() -> list[Migration]:
    """Migration modules sorted by version. Import errors propagate."""
    found: dict[int, Migration] = {}
    for path in sorted(Path(__file__).parent.glob(MIGRATION_GLOB)):
        module = importlib.import_module(f"{MIGRATIONS_PACKAGE}.{path.stem}")
        if module.VERSION in found:
            raise RuntimeError(
                f"Migration version {module.VERSION} defined twice "
                f"({found[module.VERSION].name}, {module.NAME})"
            )
        found[module.VERSION] = Migration(module.VERSION, module.NAME, module.upgrade)
    return [found[v] for v in sorted(found)]


class MigrationRunner:
    """Applies pending migrations on one connection."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
        """
        )
        self.conn.commit()

    def get_current_version(self) -> int:
        row = self.conn.execute("SELECT MAX(version) FROM schema_migrations").fetchone()
        return row[0] or 0

    def get_pending(self) -> list[Migration]:
        applied = {
            row[0] for row in self.conn.execute("SELECT version FROM schema_migrations")
        }
        return [m for m in get_all_migrations() if m.version not in applied]

    def run_pending(self) -> list[int]:
        """
        Apply every pending migration in one write transaction.

        Returns:
            Versions applied by this call (empty if another worker got there first)
        """
        if not self.get_pending():
            logger.debug("Schema is current")
            return []

        applied: list[int] = []
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            for migration in self.get_pending():
                logger.info(f"Applying migration {migration.version:03d} ({migration.name})")
                migration.upgrade(self.conn)
                self.conn.execute(
                    "INSERT INTO schema_migrations (version, name, applied_at) VALUES (?, ?, ?)",
                    (
                        migration.version,
                        migration.name,
                        datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
                    ),
                )
                applied.append(migration.version)
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            logger.error(f"Migration failed; schema left at version {self.get_current_version()}")
            raise

        if applied:
            logger.info(f"Schema migrated to version {applied[-1]}")
        return applied
