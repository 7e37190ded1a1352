# db.py

"""
Matchday — db.py
Canonical schema + async (aiosqlite) helpers.
Target DB path: settings.DB_PATH (defaults to data/matchday.db)
"""

from __future__ import annotations
from typing import Any, Dict, Optional
from contextlib import asynccontextmanager
import os
import aiosqlite

# =========================================================
# Canonical Schema
# =========================================================
SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS kv (
  k TEXT PRIMARY KEY,
  v TEXT
);

-- Matches fetched from the scoreboard, waiting for (or inside) a window
CREATE TABLE IF NOT EXISTS matches_pending (
  event_id          TEXT PRIMARY KEY,
  league            TEXT NOT NULL,
  home_team         TEXT NOT NULL,
  away_team         TEXT NOT NULL,
  event_date        TEXT NOT NULL,
  venue             TEXT,
  status            TEXT NOT NULL DEFAULT 'pending',   -- pending | open | closed
  feed_status       TEXT,
  home_score        INTEGER,
  away_score        INTEGER,
  selected_for_date TEXT,
  selected_at       TEXT,
  created_at        TEXT DEFAULT (STRFTIME('%Y-%m-%dT%H:%M:%SZ','now')),
  updated_at        TEXT
);

-- Matches archived when their window closed
CREATE TABLE IF NOT EXISTS matches_history (
  event_id    TEXT PRIMARY KEY,
  league      TEXT NOT NULL,
  home_team   TEXT NOT NULL,
  away_team   TEXT NOT NULL,
  event_date  TEXT NOT NULL,
  venue       TEXT,
  home_score  INTEGER,
  away_score  INTEGER,
  status      TEXT NOT NULL DEFAULT 'waiting for result',
  winner      TEXT,
  archived_at TEXT,
  updated_at  TEXT
);

CREATE TABLE IF NOT EXISTS predictions (
  event_id         TEXT PRIMARY KEY,
  league           TEXT NOT NULL,
  predicted_winner TEXT NOT NULL,
  predicted_score  TEXT,
  total_score      TEXT,
  confidence       INTEGER,
  review           TEXT,
  prediction_text  TEXT,
  status           TEXT NOT NULL DEFAULT 'generated',
  created_at       TEXT NOT NULL
);

-- Selection lock: one record per league per civil date
CREATE TABLE IF NOT EXISTS selections (
  league    TEXT NOT NULL,
  for_date  TEXT NOT NULL,
  match_ids TEXT NOT NULL,
  locked_at TEXT NOT NULL,
  PRIMARY KEY (league, for_date)
);

CREATE TABLE IF NOT EXISTS purchases (
  id         TEXT PRIMARY KEY,
  event_id   TEXT NOT NULL,
  league     TEXT,
  buyer      TEXT NOT NULL,
  txid       TEXT,
  amount     INTEGER,
  token      TEXT,
  created_at TEXT NOT NULL,
  UNIQUE (event_id, buyer)
);

CREATE TABLE IF NOT EXISTS raffles (
  id            TEXT PRIMARY KEY,
  event_id      TEXT NOT NULL UNIQUE,
  league        TEXT NOT NULL,
  winner        TEXT NOT NULL,
  winners       TEXT,
  buyer_count   INTEGER NOT NULL,
  prize_pool    INTEGER NOT NULL,
  winner_payout INTEGER NOT NULL,
  token         TEXT,
  tx_hash       TEXT,
  payout_error  TEXT,
  home_team     TEXT,
  away_team     TEXT,
  match_date    TEXT,
  created_at    TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS window_dates (
  league    TEXT NOT NULL,
  for_date  TEXT NOT NULL,
  match_ids TEXT,
  closed    INTEGER NOT NULL DEFAULT 0,
  closed_at TEXT,
  PRIMARY KEY (league, for_date)
);

CREATE INDEX IF NOT EXISTS idx_pending_league_date ON matches_pending(league, event_date);
CREATE INDEX IF NOT EXISTS idx_pending_selected    ON matches_pending(selected_for_date);
CREATE INDEX IF NOT EXISTS idx_history_league      ON matches_history(league, status);
CREATE INDEX IF NOT EXISTS idx_purchases_event     ON purchases(event_id);
CREATE INDEX IF NOT EXISTS idx_purchases_buyer     ON purchases(buyer);
CREATE INDEX IF NOT EXISTS idx_raffles_created     ON raffles(created_at);
""".strip()

# =========================================================
# Connection
# =========================================================
DB_PATH = os.getenv("DB_PATH", "data/matchday.db")

async def connect(db_path: str = DB_PATH) -> aiosqlite.Connection:
    """
    Async connection for FastAPI handlers and workers; ensures schema and sets PRAGMAs.
    """
    folder = os.path.dirname(db_path)
    if folder:
        os.makedirs(folder, exist_ok=True)
    conn = await aiosqlite.connect(db_path)

    # Per-connection PRAGMAs to reduce locking and keep WAL fast
    await conn.execute("PRAGMA foreign_keys=ON")
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA synchronous=NORMAL")
    await conn.execute("PRAGMA temp_store=MEMORY")
    await conn.execute("PRAGMA busy_timeout=5000")

    # Use aiosqlite.Row for dict-like access
    conn.row_factory = aiosqlite.Row

    await conn.executescript(SCHEMA)
    await conn.commit()
    return conn

async def ensure_schema(conn: aiosqlite.Connection) -> None:
    """Apply canonical schema (idempotent)."""
    await conn.executescript(SCHEMA)
    await conn.commit()

@asynccontextmanager
async def tx(conn: aiosqlite.Connection):
    """
    Tiny transactional context manager.
    Usage:
        async with tx(conn) as c:
            await c.execute(...)
            await c.execute(...)
    """
    try:
        yield conn
        await conn.commit()
    except Exception:
        await conn.rollback()
        raise

# =========================================================
# KV Helpers
# =========================================================
async def kv_set(conn: aiosqlite.Connection, k: str, v: str, commit: bool = True) -> None:
    """
    Upsert a key/value pair in the KV table.
    """
    await conn.execute(
        "INSERT INTO kv(k, v) VALUES(?, ?) "
        "ON CONFLICT(k) DO UPDATE SET v=excluded.v",
        (k, v),
    )
    if commit:
        await conn.commit()

async def kv_get(conn: aiosqlite.Connection, k: str) -> Optional[str]:
    """
    Read a value from KV; return None if missing.
    """
    async with conn.execute("SELECT v FROM kv WHERE k=?", (k,)) as cur:
        row = await cur.fetchone()
        return row[0] if row else None

# =========================================================
# Row helpers
# =========================================================
def row_to_dict(row: Optional[aiosqlite.Row]) -> Optional[Dict[str, Any]]:
    return dict(row) if row is not None else None

async def fetch_one(conn: aiosqlite.Connection, sql: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
    async with conn.execute(sql, params) as cur:
        return row_to_dict(await cur.fetchone())

async def fetch_all(conn: aiosqlite.Connection, sql: str, params: tuple = ()) -> list[Dict[str, Any]]:
    async with conn.execute(sql, params) as cur:
        return [dict(r) for r in await cur.fetchall()]
