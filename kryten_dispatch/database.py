"""SQLite database module for kryten-dispatch.

Each public method is async and wraps a synchronous inner function via
asyncio.run_in_executor(None, _sync). A new connection is created per call
(WAL mode, 30s busy timeout, Row factory).
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from typing import Any


class DispatchDatabase:
    """SQLite-backed persistence for viewers and governor state."""

    def __init__(self, db_path: str, logger: logging.Logger) -> None:
        self._db_path = db_path
        self._logger = logger

    def _get_connection(self) -> sqlite3.Connection:
        """Create a new SQLite connection with standard settings."""
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.row_factory = sqlite3.Row
        return conn

    # ══════════════════════════════════════════════════════════
    #  Initialization
    # ══════════════════════════════════════════════════════════

    async def initialize(self) -> None:
        """Create all tables and indexes. Idempotent."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._create_tables)

    def _create_tables(self) -> None:
        conn = self._get_connection()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS viewers (
                    identity_key TEXT PRIMARY KEY,
                    username TEXT NOT NULL,
                    display_name TEXT,
                    platform TEXT NOT NULL,
                    platform_user_id TEXT,
                    is_moderator BOOLEAN DEFAULT 0,
                    is_subscriber BOOLEAN DEFAULT 0,
                    is_vip BOOLEAN DEFAULT 0,
                    is_broadcaster BOOLEAN DEFAULT 0,
                    is_banned BOOLEAN DEFAULT 0,
                    coins INTEGER DEFAULT 0,
                    karma INTEGER DEFAULT 0,
                    message_count INTEGER DEFAULT 0,
                    first_seen TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    last_seen TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    identity_key TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    type TEXT NOT NULL,
                    reason TEXT,
                    related_user TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS service_state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_viewers_username "
                "ON viewers(username COLLATE NOCASE)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_transactions_identity "
                "ON transactions(identity_key)"
            )

            conn.commit()
            self._logger.info("Database tables created/verified")
        finally:
            conn.close()

    # ══════════════════════════════════════════════════════════
    #  Viewer Operations
    # ══════════════════════════════════════════════════════════

    async def get_viewer(self, identity_key: str) -> dict | None:
        """Return viewer row as dict, or None if not exists."""
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM viewers WHERE identity_key = ?",
                    (identity_key,),
                ).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def find_viewer_by_username(self, username: str) -> dict | None:
        """Case-insensitive username lookup; most recently seen wins."""
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM viewers WHERE username = ? COLLATE NOCASE "
                    "ORDER BY last_seen DESC LIMIT 1",
                    (username,),
                ).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def create_viewer(
        self,
        identity_key: str,
        username: str,
        display_name: str,
        platform: str,
        platform_user_id: str | None,
        coins: int,
        karma: int,
    ) -> dict:
        """Insert a viewer with starting balances. Existing rows are left as-is."""
        loop = asyncio.get_running_loop()

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT OR IGNORE INTO viewers (identity_key, username, display_name, "
                    "platform, platform_user_id, coins, karma) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (identity_key, username, display_name, platform, platform_user_id, coins, karma),
                )
                conn.commit()
                row = conn.execute(
                    "SELECT * FROM viewers WHERE identity_key = ?",
                    (identity_key,),
                ).fetchone()
                return dict(row) if row else {}
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def touch_viewer(
        self,
        identity_key: str,
        username: str,
        display_name: str,
        roles: dict[str, bool],
    ) -> None:
        """Refresh names and role flags, bump message_count and last_seen."""
        loop = asyncio.get_running_loop()

        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(
                    "UPDATE viewers SET username = ?, display_name = ?, "
                    "is_moderator = ?, is_subscriber = ?, is_vip = ?, is_broadcaster = ?, "
                    "message_count = message_count + 1, last_seen = CURRENT_TIMESTAMP "
                    "WHERE identity_key = ?",
                    (
                        username, display_name,
                        int(roles.get("is_moderator", False)),
                        int(roles.get("is_subscriber", False)),
                        int(roles.get("is_vip", False)),
                        int(roles.get("is_broadcaster", False)),
                        identity_key,
                    ),
                )
                conn.commit()
            finally:
                conn.close()

        await loop.run_in_executor(None, _sync)

    async def set_karma(self, identity_key: str, karma: int) -> None:
        loop = asyncio.get_running_loop()

        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(
                    "UPDATE viewers SET karma = ? WHERE identity_key = ?",
                    (karma, identity_key),
                )
                conn.commit()
            finally:
                conn.close()

        await loop.run_in_executor(None, _sync)

    async def set_banned(self, identity_key: str, banned: bool) -> bool:
        """Returns False if the viewer does not exist."""
        loop = asyncio.get_running_loop()

        def _sync() -> bool:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "UPDATE viewers SET is_banned = ? WHERE identity_key = ?",
                    (int(banned), identity_key),
                )
                conn.commit()
                return cursor.rowcount > 0
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def count_viewers(self) -> int:
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                row = conn.execute("SELECT COUNT(*) AS cnt FROM viewers").fetchone()
                return row["cnt"] if row else 0
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Coin Operations
    # ══════════════════════════════════════════════════════════

    async def credit(
        self,
        identity_key: str,
        amount: int,
        tx_type: str,
        reason: str | None = None,
        related_user: str | None = None,
    ) -> int | None:
        """Atomically credit coins and log the transaction.
        Returns the new balance, or None if the viewer does not exist."""
        loop = asyncio.get_running_loop()

        def _sync() -> int | None:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "UPDATE viewers SET coins = coins + ? WHERE identity_key = ?",
                    (amount, identity_key),
                )
                if cursor.rowcount == 0:
                    conn.rollback()
                    return None
                conn.execute(
                    "INSERT INTO transactions (identity_key, amount, type, reason, related_user) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (identity_key, amount, tx_type, reason, related_user),
                )
                conn.commit()
                row = conn.execute(
                    "SELECT coins FROM viewers WHERE identity_key = ?",
                    (identity_key,),
                ).fetchone()
                return row["coins"]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def debit(
        self,
        identity_key: str,
        amount: int,
        tx_type: str,
        reason: str | None = None,
        related_user: str | None = None,
    ) -> int | None:
        """Atomically debit coins and log the transaction.
        Returns the new balance on success, None on insufficient funds."""
        loop = asyncio.get_running_loop()

        def _sync() -> int | None:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "UPDATE viewers SET coins = coins - ? "
                    "WHERE identity_key = ? AND coins >= ?",
                    (amount, identity_key, amount),
                )
                if cursor.rowcount == 0:
                    conn.rollback()
                    return None  # Insufficient funds or viewer doesn't exist
                conn.execute(
                    "INSERT INTO transactions (identity_key, amount, type, reason, related_user) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (identity_key, -amount, tx_type, reason, related_user),
                )
                conn.commit()
                row = conn.execute(
                    "SELECT coins FROM viewers WHERE identity_key = ?",
                    (identity_key,),
                ).fetchone()
                return row["coins"]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def credit_all(self, amount: int, tx_type: str, reason: str | None = None) -> int:
        """Credit every stored viewer. Returns the number of viewers credited."""
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                cursor = conn.execute("UPDATE viewers SET coins = coins + ?", (amount,))
                conn.execute(
                    "INSERT INTO transactions (identity_key, amount, type, reason) "
                    "SELECT identity_key, ?, ?, ? FROM viewers",
                    (amount, tx_type, reason),
                )
                conn.commit()
                return cursor.rowcount
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def transfer(
        self,
        from_key: str,
        to_key: str,
        amount: int,
        tx_type: str,
        reason: str | None = None,
    ) -> int | None:
        """Move coins between two viewers in one transaction.
        Returns the sender's new balance, or None on insufficient funds."""
        loop = asyncio.get_running_loop()

        def _sync() -> int | None:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "UPDATE viewers SET coins = coins - ? "
                    "WHERE identity_key = ? AND coins >= ?",
                    (amount, from_key, amount),
                )
                if cursor.rowcount == 0:
                    conn.rollback()
                    return None
                cursor = conn.execute(
                    "UPDATE viewers SET coins = coins + ? WHERE identity_key = ?",
                    (amount, to_key),
                )
                if cursor.rowcount == 0:
                    conn.rollback()
                    return None
                conn.executemany(
                    "INSERT INTO transactions (identity_key, amount, type, reason, related_user) "
                    "VALUES (?, ?, ?, ?, ?)",
                    [
                        (from_key, -amount, tx_type, reason, to_key),
                        (to_key, amount, tx_type, reason, from_key),
                    ],
                )
                conn.commit()
                row = conn.execute(
                    "SELECT coins FROM viewers WHERE identity_key = ?",
                    (from_key,),
                ).fetchone()
                return row["coins"]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_recent_transactions(self, identity_key: str, limit: int = 10) -> list[dict]:
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM transactions WHERE identity_key = ? "
                    "ORDER BY id DESC LIMIT ?",
                    (identity_key, limit),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Service State
    # ══════════════════════════════════════════════════════════

    async def load_state(self, key: str) -> Any:
        """Return the JSON value stored under *key*, or None."""
        loop = asyncio.get_running_loop()

        def _sync() -> Any:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT value FROM service_state WHERE key = ?",
                    (key,),
                ).fetchone()
                return json.loads(row["value"]) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def save_state(self, key: str, value: Any) -> None:
        """Upsert a JSON-serializable value under *key*."""
        loop = asyncio.get_running_loop()
        payload = json.dumps(value)

        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT INTO service_state (key, value, updated_at) "
                    "VALUES (?, ?, CURRENT_TIMESTAMP) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value, "
                    "updated_at = CURRENT_TIMESTAMP",
                    (key, payload),
                )
                conn.commit()
            finally:
                conn.close()

        await loop.run_in_executor(None, _sync)
