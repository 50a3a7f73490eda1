"""Database utilities for persisting the local AndyTab dataset."""

import logging
import time
from pathlib import Path

import aiosqlite

logger = logging.getLogger(__name__)


class KeyValueDB:
    """
    Manages the SQLite key-value table backing the local data store.

    Values are stored as JSON text; encoding and decoding is left to the caller
    so that "missing" and "stored null" stay distinguishable.
    """

    def __init__(self, db_path: Path):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    async def initialize(self) -> None:
        """
        Initialize database schema if it doesn't exist.
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS kv_store (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at REAL NOT NULL
                )
                """
            )
            await db.commit()
            logger.debug(f"Database initialized at {self.db_path}")

    async def get(self, key: str) -> str | None:
        """
        Get the stored JSON text for a key.

        Returns:
            JSON text, or None if the key was never written
        """
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT value FROM kv_store WHERE key = ?",
                (key,),
            ) as cursor:
                row = await cursor.fetchone()
                return row[0] if row else None

    async def set(self, key: str, value: str) -> None:
        """
        Create or replace the JSON text stored for a key.
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO kv_store (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, value, time.time()),
            )
            await db.commit()
            logger.debug(f"Stored key: {key}")

