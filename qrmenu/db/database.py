# qrmenu/db/database.py
from __future__ import annotations
import asyncio, logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, Optional, Tuple, List

import aiosqlite

log = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
  session_id TEXT PRIMARY KEY,          -- Opaque session identifier
  store_id TEXT NOT NULL,               -- Store the QR code / delivery link belongs to
  table_id TEXT,                        -- Table number (NULL for delivery)
  is_delivery INTEGER NOT NULL DEFAULT 0,
  fingerprint TEXT NOT NULL,            -- Device fingerprint hash
  ip_address TEXT,
  user_agent TEXT,
  created_at INTEGER NOT NULL,          -- Unix timestamp of session creation
  last_activity INTEGER NOT NULL,       -- Unix timestamp of last touch
  expires_at INTEGER NOT NULL,          -- Session expiration timestamp
  is_authenticated INTEGER NOT NULL DEFAULT 0,
  customer_id TEXT,                     -- Set once the phone is verified
  order_count INTEGER NOT NULL DEFAULT 0,
  total_spent REAL NOT NULL DEFAULT 0,
  state TEXT NOT NULL DEFAULT 'ACTIVE'  -- 'ACTIVE' or 'BLOCKED'
);
CREATE INDEX IF NOT EXISTS idx_sessions_context ON sessions(fingerprint, store_id, table_id);
CREATE INDEX IF NOT EXISTS idx_sessions_table ON sessions(store_id, table_id);
CREATE INDEX IF NOT EXISTS idx_sessions_expires ON sessions(expires_at);

CREATE TABLE IF NOT EXISTS fingerprints (
  hash TEXT PRIMARY KEY,                -- SHA-256 hex of the normalised signals
  device_info TEXT,                     -- Normalised signals (JSON)
  confidence REAL NOT NULL DEFAULT 0,
  usage_count INTEGER NOT NULL DEFAULT 0,
  suspicious_activity INTEGER NOT NULL DEFAULT 0,
  is_blocked INTEGER NOT NULL DEFAULT 0,
  blocked_reason TEXT,
  created_at INTEGER NOT NULL,
  last_seen INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS auth_tokens (
  token_id TEXT PRIMARY KEY,            -- Magic-link jti or one-time code id
  kind TEXT NOT NULL,                   -- 'magic_link' or 'otp'
  phone TEXT NOT NULL,                  -- Normalised E.164 phone
  store_id TEXT NOT NULL,
  secret_hash TEXT,                     -- HMAC of the one-time code (NULL for links)
  fingerprint TEXT,
  session_id TEXT,
  table_id TEXT,
  is_delivery INTEGER NOT NULL DEFAULT 1,
  issued_at INTEGER NOT NULL,
  expires_at INTEGER NOT NULL,
  used INTEGER NOT NULL DEFAULT 0,
  used_at INTEGER,
  revoked INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_auth_tokens_phone ON auth_tokens(phone, store_id, kind);

CREATE TABLE IF NOT EXISTS rate_limits (
  key TEXT PRIMARY KEY,                 -- e.g. whatsapp:phone:+5511...:hour
  window_start INTEGER NOT NULL,
  window_sec INTEGER NOT NULL,
  count INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS customers (
  customer_id TEXT PRIMARY KEY,
  phone TEXT NOT NULL,
  store_id TEXT NOT NULL,
  name TEXT,
  created_at INTEGER NOT NULL,
  UNIQUE (phone, store_id)
);
"""


class Transaction:
    """Statements run while the Database connection lock is held."""

    def __init__(self, conn: aiosqlite.Connection):
        self._conn = conn

    async def exec(self, sql: str, params: Tuple | Dict | List = ()) -> int:
        cur = await self._conn.execute(sql, params)
        n = cur.rowcount
        await cur.close()
        return n

    async def fetchone(self, sql: str, params: Tuple | Dict = ()) -> Optional[aiosqlite.Row]:
        cur = await self._conn.execute(sql, params)
        row = await cur.fetchone()
        await cur.close()
        return row

    async def fetchall(self, sql: str, params: Tuple | Dict = ()) -> List[aiosqlite.Row]:
        cur = await self._conn.execute(sql, params)
        rows = await cur.fetchall()
        await cur.close()
        return rows


class Database:
    def __init__(self, path: str):
        self.path = path
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    @property
    def in_memory(self) -> bool:
        return self.path == ":memory:"

    async def init(self, path: Optional[str] = None):
        """
        Initialize (or re-initialize) the DB connection.
        If `path` is provided and differs from the current path, the connection is reopened.
        """
        if path and path != self.path:
            await self.close()
            self.path = path

        if self._conn is None:
            if not self.in_memory:
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            # autocommit; multi-statement work goes through transaction()
            self._conn = await aiosqlite.connect(self.path, isolation_level=None)
            self._conn.row_factory = aiosqlite.Row
            if not self.in_memory:
                await self._conn.execute("PRAGMA journal_mode=WAL;")
            await self._conn.execute("PRAGMA busy_timeout=5000;")

        await self.execscript(_SCHEMA)
        log.info("DB ready at %s", self.path)

    async def close(self):
        if self._conn:
            await self._conn.close()
            self._conn = None

    # --- low-level helpers -------------------------------------------------
    # Single statements run in autocommit mode under the connection lock.

    @asynccontextmanager
    async def _locked(self) -> AsyncIterator[Transaction]:
        if not self._conn:
            await self.init()
        async with self._lock:
            yield Transaction(self._conn)

    async def exec(self, sql: str, params: Tuple | Dict | List = ()) -> int:
        """Run a single statement and return the number of affected rows."""
        async with self._locked() as tx:
            return await tx.exec(sql, params)

    async def execscript(self, script: str):
        async with self._locked():
            await self._conn.executescript(script)

    async def fetchone(self, sql: str, params: Tuple | Dict = ()) -> Optional[aiosqlite.Row]:
        async with self._locked() as tx:
            return await tx.fetchone(sql, params)

    async def fetchall(self, sql: str, params: Tuple | Dict = ()) -> List[aiosqlite.Row]:
        async with self._locked() as tx:
            return await tx.fetchall(sql, params)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        """
        Serialised read-modify-write block.

        Holds the connection lock for the whole block and wraps it in
        BEGIN IMMEDIATE so other processes sharing the file wait too.
        Any exception rolls the block back and propagates.
        """
        async with self._locked() as tx:
            await self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield tx
            except BaseException:
                await self._conn.execute("ROLLBACK")
                raise
            await self._conn.execute("COMMIT")
