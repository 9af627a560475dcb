"""
Database Migration System

Simple migration system for managing the accounts, entries and transfers
schema without external dependencies. Supports both PostgreSQL and SQLite
backends through dialect-specific DDL.
"""

from typing import List, Optional, Dict, Any
from datetime import datetime, timezone
import hashlib
import logging

from .sql_storage import SQLDatabase
from .transactions import TransactionScope


logger = logging.getLogger(__name__)

MIGRATION_TABLE = "schema_migrations"


class Migration:
    """Represents a single database migration"""

    def __init__(self, version: int, name: str,
                 up: Dict[str, List[str]], down: Optional[Dict[str, List[str]]] = None):
        self.version = version
        self.name = name
        self.up = up
        self.down = down or {}
        self.applied_at: Optional[datetime] = None

    def up_statements(self, dialect: str) -> List[str]:
        if dialect not in self.up:
            raise ValueError(f"{self} has no DDL for dialect {dialect}")
        return self.up[dialect]

    def down_statements(self, dialect: str) -> List[str]:
        return self.down.get(dialect, [])

    def checksum(self, dialect: str) -> str:
        return hashlib.md5("\n".join(self.up_statements(dialect)).encode()).hexdigest()

    def __str__(self) -> str:
        return f"Migration v{self.version:03d}: {self.name}"

    def __repr__(self) -> str:
        return f"Migration(version={self.version}, name='{self.name}')"


BUILTIN_MIGRATIONS = [
    Migration(1, "Create accounts table", up={
        "sqlite": [
            """
            CREATE TABLE IF NOT EXISTS accounts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                owner TEXT NOT NULL,
                balance INTEGER NOT NULL,
                currency TEXT NOT NULL,
                created_at TEXT NOT NULL,
                CONSTRAINT owner_currency_key UNIQUE (owner, currency)
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_accounts_owner ON accounts(owner)",
        ],
        "postgresql": [
            """
            CREATE TABLE IF NOT EXISTS accounts (
                id BIGSERIAL PRIMARY KEY,
                owner VARCHAR NOT NULL,
                balance BIGINT NOT NULL,
                currency VARCHAR NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                CONSTRAINT owner_currency_key UNIQUE (owner, currency)
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_accounts_owner ON accounts(owner)",
        ],
    }, down={
        "sqlite": ["DROP TABLE IF EXISTS accounts"],
        "postgresql": ["DROP TABLE IF EXISTS accounts"],
    }),
    Migration(2, "Create entries table", up={
        "sqlite": [
            """
            CREATE TABLE IF NOT EXISTS entries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                account_id INTEGER NOT NULL REFERENCES accounts(id),
                amount INTEGER NOT NULL,
                created_at TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_entries_account_id ON entries(account_id)",
        ],
        "postgresql": [
            """
            CREATE TABLE IF NOT EXISTS entries (
                id BIGSERIAL PRIMARY KEY,
                account_id BIGINT NOT NULL REFERENCES accounts(id),
                amount BIGINT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_entries_account_id ON entries(account_id)",
        ],
    }, down={
        "sqlite": ["DROP TABLE IF EXISTS entries"],
        "postgresql": ["DROP TABLE IF EXISTS entries"],
    }),
    Migration(3, "Create transfers table", up={
        "sqlite": [
            """
            CREATE TABLE IF NOT EXISTS transfers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                from_account_id INTEGER NOT NULL REFERENCES accounts(id),
                to_account_id INTEGER NOT NULL REFERENCES accounts(id),
                amount INTEGER NOT NULL CHECK (amount > 0),
                created_at TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_transfers_from ON transfers(from_account_id)",
            "CREATE INDEX IF NOT EXISTS idx_transfers_to ON transfers(to_account_id)",
            "CREATE INDEX IF NOT EXISTS idx_transfers_from_to ON transfers(from_account_id, to_account_id)",
        ],
        "postgresql": [
            """
            CREATE TABLE IF NOT EXISTS transfers (
                id BIGSERIAL PRIMARY KEY,
                from_account_id BIGINT NOT NULL REFERENCES accounts(id),
                to_account_id BIGINT NOT NULL REFERENCES accounts(id),
                amount BIGINT NOT NULL CHECK (amount > 0),
                created_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_transfers_from ON transfers(from_account_id)",
            "CREATE INDEX IF NOT EXISTS idx_transfers_to ON transfers(to_account_id)",
            "CREATE INDEX IF NOT EXISTS idx_transfers_from_to ON transfers(from_account_id, to_account_id)",
        ],
    }, down={
        "sqlite": ["DROP TABLE IF EXISTS transfers"],
        "postgresql": ["DROP TABLE IF EXISTS transfers"],
    }),
]


class MigrationManager:
    """Manages database migrations"""

    def __init__(self, database: SQLDatabase, migrations: Optional[List[Migration]] = None):
        self.database = database
        self.scope = TransactionScope(database)
        self.migrations: List[Migration] = []
        for migration in (BUILTIN_MIGRATIONS if migrations is None else migrations):
            self.add_migration(migration)
        self._ensure_migration_table()

    def _ensure_migration_table(self) -> None:
        """Ensure the migration tracking table exists"""
        with self.scope.atomic() as queries:
            queries.execute(f"""
                CREATE TABLE IF NOT EXISTS {MIGRATION_TABLE} (
                    version INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    checksum TEXT NOT NULL,
                    applied_at TEXT NOT NULL
                )
            """)

    def add_migration(self, migration: Migration) -> None:
        """Add a migration to the manager"""
        self.migrations.append(migration)
        # Keep migrations sorted by version
        self.migrations.sort(key=lambda m: m.version)

    def get_applied_migrations(self) -> List[Dict[str, Any]]:
        """Get list of applied migrations"""
        with self.scope.atomic() as queries:
            rows, _ = queries.execute(
                f"SELECT version, name, checksum, applied_at FROM {MIGRATION_TABLE} ORDER BY version"
            )
        return [
            {"version": row[0], "name": row[1], "checksum": row[2], "applied_at": row[3]}
            for row in rows
        ]

    def get_current_version(self) -> int:
        """Get the current database version"""
        versions = [m["version"] for m in self.get_applied_migrations()]
        return max(versions) if versions else 0

    def get_pending_migrations(self, target_version: Optional[int] = None) -> List[Migration]:
        """Get list of pending migrations"""
        current_version = self.get_current_version()
        max_version = target_version or max((m.version for m in self.migrations), default=0)
        return [m for m in self.migrations if current_version < m.version <= max_version]

    def migrate_up(self, target_version: Optional[int] = None) -> List[Migration]:
        """Apply pending migrations up to target version"""
        pending = self.get_pending_migrations(target_version)
        applied = []

        if not pending:
            logger.info("No pending migrations to apply")
            return applied

        logger.info(f"Applying {len(pending)} pending migrations")
        dialect = self.database.dialect

        for migration in pending:
            logger.info(f"Applying {migration}")
            try:
                with self.scope.atomic() as queries:
                    for statement in migration.up_statements(dialect):
                        queries.execute(statement)
                    queries.execute(
                        f"INSERT INTO {MIGRATION_TABLE} (version, name, checksum, applied_at) VALUES (?, ?, ?, ?)",
                        (migration.version, migration.name, migration.checksum(dialect),
                         datetime.now(timezone.utc).isoformat())
                    )
            except Exception as e:
                logger.error(f"Failed to apply {migration}: {e}")
                raise RuntimeError(f"Migration failed: {migration}") from e

            migration.applied_at = datetime.now(timezone.utc)
            applied.append(migration)
            logger.info(f"Successfully applied {migration}")

        logger.info(f"Successfully applied {len(applied)} migrations")
        return applied

    def migrate(self) -> List[Migration]:
        """Bring the schema to the latest version"""
        return self.migrate_up()

    def migrate_down(self, target_version: int) -> List[Migration]:
        """Rollback migrations down to target version"""
        current_version = self.get_current_version()

        if target_version >= current_version:
            logger.info("Target version is not lower than current version")
            return []

        dialect = self.database.dialect
        rolledback = []
        for migration in reversed(self.migrations):
            if not target_version < migration.version <= current_version:
                continue

            statements = migration.down_statements(dialect)
            if not statements:
                logger.warning(f"No rollback SQL for {migration}, skipping")
                continue

            logger.info(f"Rolling back {migration}")
            try:
                with self.scope.atomic() as queries:
                    for statement in statements:
                        queries.execute(statement)
                    queries.execute(f"DELETE FROM {MIGRATION_TABLE} WHERE version = ?", (migration.version,))
            except Exception as e:
                logger.error(f"Failed to rollback {migration}: {e}")
                raise RuntimeError(f"Rollback failed: {migration}") from e
            rolledback.append(migration)

        logger.info(f"Successfully rolled back {len(rolledback)} migrations")
        return rolledback

    def validate_migrations(self) -> bool:
        """Validate that applied migrations match expected checksums"""
        dialect = self.database.dialect
        for applied in self.get_applied_migrations():
            migration = next((m for m in self.migrations if m.version == applied["version"]), None)
            if not migration:
                logger.warning(f"Applied migration v{applied['version']} not found in definitions")
                continue

            expected = migration.checksum(dialect)
            if applied["checksum"] != expected:
                logger.error(
                    f"Checksum mismatch for v{applied['version']}: "
                    f"expected {expected}, got {applied['checksum']}"
                )
                return False

        return True

    def get_migration_status(self) -> Dict[str, Any]:
        """Get detailed migration status"""
        pending = self.get_pending_migrations()
        return {
            "current_version": self.get_current_version(),
            "latest_version": max((m.version for m in self.migrations), default=0),
            "pending_count": len(pending),
            "applied_count": len(self.get_applied_migrations()),
            "pending_migrations": [{"version": m.version, "name": m.name} for m in pending],
            "needs_migration": len(pending) > 0
        }
