"""SQLite async database: the gateway's account and preference store.

Provides:
- Accounts (credential store)
- Model sequences (ordered model preferences)
- Key-value config
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from elara.stores import Account, ModelSequence

logger = structlog.get_logger()

SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    provider_id TEXT NOT NULL,
    email TEXT NOT NULL DEFAULT '',
    credential TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS model_sequences (
    provider_id TEXT NOT NULL,
    model_id TEXT NOT NULL,
    sequence INTEGER NOT NULL,
    PRIMARY KEY (provider_id, model_id)
);

CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_accounts_provider ON accounts(provider_id);
CREATE INDEX IF NOT EXISTS idx_model_sequences_sequence ON model_sequences(sequence);
"""


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _account(row: dict[str, Any]) -> Account:
    return Account(
        id=row["id"],
        provider_id=row["provider_id"],
        email=row["email"],
        credential=row["credential"],
    )


class Database:
    """Async SQLite database for accounts, sequences and config."""

    def __init__(
        self,
        data_dir: str,
        journal_mode: str = "WAL",
        busy_timeout_ms: int = 5000,
        filename: str = "elara.db",
    ) -> None:
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / filename
        self.journal_mode = journal_mode.upper()
        if self.journal_mode not in {"WAL", "DELETE"}:
            raise ValueError(f"Unsupported SQLite journal mode: {journal_mode}")
        self.busy_timeout_ms = int(busy_timeout_ms)
        self._conn: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Create the database and tables."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(str(self.db_path))
        self._conn.row_factory = aiosqlite.Row

        # WAL may fail on network filesystems; fall back to DELETE.
        try:
            await self._conn.execute(f"PRAGMA journal_mode={self.journal_mode}")
        except aiosqlite.Error as exc:
            if self.journal_mode != "WAL":
                raise
            logger.warning("db.wal_unavailable_fallback", path=str(self.db_path), error=str(exc))
            await self._conn.execute("PRAGMA journal_mode=DELETE")

        await self._conn.execute(f"PRAGMA busy_timeout={self.busy_timeout_ms}")
        await self._conn.executescript(SCHEMA)
        await self._conn.commit()

        logger.info("db.initialized", path=str(self.db_path))

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("db.closed")

    async def execute(self, sql: str, params: tuple = ()) -> aiosqlite.Cursor:
        """Execute a SQL statement."""
        assert self._conn, "Database not initialized"
        cursor = await self._conn.execute(sql, params)
        await self._conn.commit()
        return cursor

    async def fetch_one(self, sql: str, params: tuple = ()) -> dict[str, Any] | None:
        """Fetch a single row."""
        assert self._conn, "Database not initialized"
        cursor = await self._conn.execute(sql, params)
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def fetch_all(self, sql: str, params: tuple = ()) -> list[dict[str, Any]]:
        """Fetch all rows."""
        assert self._conn, "Database not initialized"
        cursor = await self._conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    # ── Credential store ────────────────────────────────────────────

    async def get_by_id(self, account_id: str) -> Account | None:
        row = await self.fetch_one("SELECT * FROM accounts WHERE id = ?", (account_id,))
        return _account(row) if row else None

    async def find_by_provider_email(self, provider_id: str, email: str) -> Account | None:
        row = await self.fetch_one(
            """SELECT * FROM accounts
               WHERE lower(provider_id) = lower(?) AND lower(email) = lower(?)
               ORDER BY created_at, rowid LIMIT 1""",
            (provider_id, email),
        )
        return _account(row) if row else None

    async def list_by_provider(self, provider_id: str) -> list[Account]:
        rows = await self.fetch_all(
            "SELECT * FROM accounts WHERE lower(provider_id) = lower(?) ORDER BY created_at, rowid",
            (provider_id,),
        )
        return [_account(row) for row in rows]

    async def list_all(self) -> list[Account]:
        rows = await self.fetch_all("SELECT * FROM accounts ORDER BY created_at, rowid")
        return [_account(row) for row in rows]

    async def upsert(self, account: Account) -> None:
        now = _now()
        await self.execute(
            """INSERT INTO accounts (id, provider_id, email, credential, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   provider_id = excluded.provider_id,
                   email = excluded.email,
                   credential = excluded.credential,
                   updated_at = excluded.updated_at""",
            (account.id, account.provider_id, account.email, account.credential, now, now),
        )

    async def delete_account(self, account_id: str) -> bool:
        cursor = await self.execute("DELETE FROM accounts WHERE id = ?", (account_id,))
        return cursor.rowcount > 0

    # ── Model sequences ─────────────────────────────────────────────

    async def set_sequence(self, provider_id: str, model_id: str, sequence: int) -> None:
        await self.execute(
            "INSERT OR REPLACE INTO model_sequences (provider_id, model_id, sequence) VALUES (?, ?, ?)",
            (provider_id, model_id, int(sequence)),
        )

    async def best_sequence_overall(self) -> ModelSequence | None:
        row = await self.fetch_one(
            "SELECT provider_id, model_id, sequence FROM model_sequences ORDER BY sequence ASC LIMIT 1"
        )
        return ModelSequence(**row) if row else None

    async def best_sequence_for_provider(self, provider_id: str) -> str | None:
        row = await self.fetch_one(
            """SELECT model_id FROM model_sequences
               WHERE lower(provider_id) = lower(?)
               ORDER BY sequence ASC LIMIT 1""",
            (provider_id,),
        )
        return row["model_id"] if row else None

    # ── Config ──────────────────────────────────────────────────────

    async def get(self, key: str) -> str | None:
        row = await self.fetch_one("SELECT value FROM config WHERE key = ?", (key,))
        return row["value"] if row else None

    async def set(self, key: str, value: str) -> None:
        await self.execute(
            "INSERT OR REPLACE INTO config (key, value, updated_at) VALUES (?, ?, ?)",
            (key, value, _now()),
        )
