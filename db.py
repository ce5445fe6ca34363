# db.py

"""
FAIRPLAY — db.py
Canonical schema, async (aiosqlite) helpers and the Repository used by the
seed store, the ledger, balances and the round scheduler.
"""

from __future__ import annotations
from typing import Optional
import json
import logging
import os
import sqlite3
import aiosqlite

from errors import AlreadySettledError, NonceConflictError, PersistenceFailureError

logger = logging.getLogger("fairplay.db")

# =========================================================
# Canonical Schema
# =========================================================
SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS kv (
  k TEXT PRIMARY KEY,
  v TEXT
);

-- One row per server seed ever committed; the secret stays here until reveal
CREATE TABLE IF NOT EXISTS seed_pairs (
  server_seed_hash TEXT PRIMARY KEY,
  context          TEXT NOT NULL,
  server_seed      TEXT NOT NULL,
  client_seed      TEXT NOT NULL,
  nonce            INTEGER NOT NULL DEFAULT 0,
  status           TEXT NOT NULL DEFAULT 'ACTIVE',   -- ACTIVE | REVEALED
  created_at       TEXT NOT NULL,
  revealed_at      TEXT
);

CREATE TABLE IF NOT EXISTS bets (
  id               TEXT PRIMARY KEY,
  context          TEXT NOT NULL,
  game             TEXT NOT NULL,
  params           TEXT NOT NULL,                    -- JSON
  stake            INTEGER NOT NULL,
  round_id         TEXT,
  server_seed_hash TEXT NOT NULL,
  client_seed      TEXT NOT NULL,
  nonce            INTEGER NOT NULL,
  status           TEXT NOT NULL DEFAULT 'PENDING',  -- PENDING | SETTLED | REFUNDED
  outcome          TEXT,                             -- JSON
  multiplier       TEXT,
  payout           INTEGER,
  created_at       TEXT NOT NULL,
  settled_at       TEXT
);

-- Rounds table: TEXT id like 'R0123'
CREATE TABLE IF NOT EXISTS rounds (
  id                 TEXT PRIMARY KEY,
  game               TEXT NOT NULL,
  status             TEXT NOT NULL DEFAULT 'WAITING', -- WAITING | RUNNING | ENDED
  opens_at           TEXT NOT NULL,
  closes_at          TEXT NOT NULL,
  client_seed        TEXT,
  server_seed_hash   TEXT,
  server_seed_reveal TEXT,
  result             TEXT,                            -- JSON
  aborted            INTEGER NOT NULL DEFAULT 0,
  ended_at           TEXT
);

CREATE TABLE IF NOT EXISTS balances (
  context TEXT PRIMARY KEY,
  amount  INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_seed_pairs_ctx ON seed_pairs(context, status);
CREATE INDEX IF NOT EXISTS idx_bets_ctx       ON bets(context, settled_at);
CREATE INDEX IF NOT EXISTS idx_bets_status    ON bets(status);
CREATE INDEX IF NOT EXISTS idx_bets_round     ON bets(round_id);
CREATE INDEX IF NOT EXISTS idx_rounds_status  ON rounds(status);

-- a nonce is never reused under one server seed (round bets share nonce 0)
CREATE UNIQUE INDEX IF NOT EXISTS idx_bets_seed_nonce
  ON bets(server_seed_hash, nonce) WHERE round_id IS NULL;
""".strip()

# =========================================================
# Connection
# =========================================================
DB_PATH = os.getenv("DB_PATH", "/data/fairplay.db")

async def connect(db_path: str = DB_PATH) -> aiosqlite.Connection:
    """
    Async connection for FastAPI handlers; ensures schema and sets PRAGMAs.
    """
    folder = os.path.dirname(db_path)
    if folder:
        os.makedirs(folder, exist_ok=True)
    conn = await aiosqlite.connect(db_path)

    # Per-connection PRAGMAs to reduce locking and keep WAL fast
    await conn.execute("PRAGMA foreign_keys=ON")
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA synchronous=NORMAL")
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

# =========================================================
# KV Helpers (async)
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
# Repository
# =========================================================
_BET_COLUMNS = (
    "id", "context", "game", "params", "stake", "round_id", "server_seed_hash",
    "client_seed", "nonce", "status", "outcome", "multiplier", "payout",
    "created_at", "settled_at",
)

def _bet_from_row(row) -> dict:
    d = dict(row)
    d["params"] = json.loads(d["params"]) if d.get("params") else {}
    d["outcome"] = json.loads(d["outcome"]) if d.get("outcome") else None
    return d


class Repository:
    """Durable store for seed pairs, bets, rounds and balances."""

    def __init__(self, conn: aiosqlite.Connection):
        self.conn = conn

    async def _execute(self, sql: str, params: tuple = (), commit: bool = True):
        try:
            cur = await self.conn.execute(sql, params)
            if commit:
                await self.conn.commit()
            return cur
        except sqlite3.IntegrityError:
            await self._rollback()
            raise
        except (sqlite3.Error, ValueError) as e:
            await self._rollback()
            raise PersistenceFailureError(f"storage error: {e}") from e

    async def _fetchall(self, sql: str, params: tuple = ()) -> list:
        try:
            async with self.conn.execute(sql, params) as cur:
                return list(await cur.fetchall())
        except (sqlite3.Error, ValueError) as e:
            raise PersistenceFailureError(f"storage error: {e}") from e

    async def _fetchone(self, sql: str, params: tuple = ()):
        rows = await self._fetchall(sql, params)
        return rows[0] if rows else None

    async def _rollback(self) -> None:
        try:
            await self.conn.rollback()
        except (sqlite3.Error, ValueError) as e:
            logger.warning("[db] rollback failed: %s", e)

    # ---------- KV / round ids ----------
    async def alloc_next_round_id(self) -> str:
        """
        Allocate a sequential round id of the form RNNNN using KV counter 'round:next_id'.
        """
        try:
            cur = await kv_get(self.conn, "round:next_id")
            try:
                n = int(cur or 0) + 1
            except ValueError:
                n = 1
            await kv_set(self.conn, "round:next_id", str(n))
        except (sqlite3.Error, ValueError) as e:
            raise PersistenceFailureError(f"storage error: {e}") from e
        return f"R{n:04d}"

    # ---------- Seed pairs ----------
    async def save_seed_pair(self, context: str, pair) -> None:
        await self._execute(
            "INSERT INTO seed_pairs(server_seed_hash, context, server_seed, client_seed, nonce, status, created_at) "
            "VALUES(?,?,?,?,?,'ACTIVE',?) "
            "ON CONFLICT(server_seed_hash) DO UPDATE SET client_seed=excluded.client_seed, nonce=excluded.nonce",
            (pair.server_seed_hash, context, pair.server_seed, pair.client_seed, pair.nonce, pair.created_at),
        )

    async def mark_seed_revealed(self, server_seed_hash: str, revealed_at: str) -> None:
        await self._execute(
            "UPDATE seed_pairs SET status='REVEALED', revealed_at=? WHERE server_seed_hash=?",
            (revealed_at, server_seed_hash),
        )

    async def active_seed_pair(self, context: str) -> Optional[dict]:
        row = await self._fetchone(
            "SELECT * FROM seed_pairs WHERE context=? AND status='ACTIVE' ORDER BY created_at DESC LIMIT 1",
            (context,),
        )
        return dict(row) if row else None

    async def last_client_seed(self, context: str) -> Optional[str]:
        row = await self._fetchone(
            "SELECT client_seed FROM seed_pairs WHERE context=? ORDER BY created_at DESC LIMIT 1",
            (context,),
        )
        return row[0] if row else None

    async def last_nonce(self, server_seed_hash: str) -> Optional[int]:
        row = await self._fetchone(
            "SELECT MAX(nonce) FROM bets WHERE server_seed_hash=? AND round_id IS NULL",
            (server_seed_hash,),
        )
        return int(row[0]) if row and row[0] is not None else None

    # ---------- Bets ----------
    async def append_bet(self, bet: dict) -> None:
        row = dict(bet)
        row["params"] = json.dumps(row.get("params") or {}, sort_keys=True, default=str)
        row["outcome"] = json.dumps(row["outcome"]) if row.get("outcome") is not None else None
        cols = ",".join(_BET_COLUMNS)
        marks = ",".join("?" for _ in _BET_COLUMNS)
        try:
            await self._execute(
                f"INSERT INTO bets({cols}) VALUES({marks})",
                tuple(row.get(c) for c in _BET_COLUMNS),
            )
        except sqlite3.IntegrityError as e:
            raise NonceConflictError(f"bet {row.get('id')} collides: {e}") from e

    async def settle_bet(self, bet: dict) -> None:
        cur = await self._execute(
            "UPDATE bets SET status='SETTLED', outcome=?, multiplier=?, payout=?, settled_at=? "
            "WHERE id=? AND status='PENDING'",
            (json.dumps(bet["outcome"]), str(bet["multiplier"]), int(bet["payout"]), bet["settled_at"], bet["id"]),
        )
        if cur.rowcount == 0:
            raise AlreadySettledError(f"bet {bet['id']} is not pending")

    async def refund_bet(self, bet_id: str, settled_at: str) -> bool:
        cur = await self._execute(
            "UPDATE bets SET status='REFUNDED', payout=0, settled_at=? WHERE id=? AND status='PENDING'",
            (settled_at, bet_id),
        )
        return cur.rowcount > 0

    async def get_bet(self, bet_id: str) -> Optional[dict]:
        row = await self._fetchone("SELECT * FROM bets WHERE id=?", (bet_id,))
        return _bet_from_row(row) if row else None

    async def pending_bets(self) -> list[dict]:
        rows = await self._fetchall("SELECT * FROM bets WHERE status='PENDING' ORDER BY created_at")
        return [_bet_from_row(r) for r in rows]

    async def settled_bets(self, context: str, limit: int) -> list[dict]:
        rows = await self._fetchall(
            "SELECT * FROM bets WHERE context=? AND status='SETTLED' ORDER BY settled_at DESC, rowid DESC LIMIT ?",
            (context, int(limit)),
        )
        return [_bet_from_row(r) for r in rows]

    async def bet_totals(self, context: str) -> list[tuple]:
        """(status, game, count, wins, wagered, paid_out) for finished bets of a context."""
        rows = await self._fetchall(
            "SELECT status, game, COUNT(*), "
            "COALESCE(SUM(CASE WHEN payout > 0 THEN 1 ELSE 0 END), 0), "
            "COALESCE(SUM(stake), 0), COALESCE(SUM(payout), 0) "
            "FROM bets WHERE context=? AND status IN ('SETTLED', 'REFUNDED') GROUP BY status, game",
            (context,),
        )
        return [tuple(r) for r in rows]

    # ---------- Rounds ----------
    async def save_round(self, rnd: dict) -> None:
        await self._execute(
            "INSERT INTO rounds(id, game, status, opens_at, closes_at, client_seed, server_seed_hash, "
            "server_seed_reveal, result, aborted, ended_at) VALUES(?,?,?,?,?,?,?,?,?,?,?) "
            "ON CONFLICT(id) DO UPDATE SET status=excluded.status, closes_at=excluded.closes_at, "
            "server_seed_reveal=excluded.server_seed_reveal, result=excluded.result, "
            "aborted=excluded.aborted, ended_at=excluded.ended_at",
            (
                rnd["id"], rnd["game"], rnd["status"], rnd["opens_at"], rnd["closes_at"],
                rnd.get("client_seed"), rnd.get("server_seed_hash"), rnd.get("server_seed_reveal"),
                json.dumps(rnd["result"]) if rnd.get("result") is not None else None,
                int(bool(rnd.get("aborted"))), rnd.get("ended_at"),
            ),
        )

    async def get_round(self, round_id: str) -> Optional[dict]:
        row = await self._fetchone("SELECT * FROM rounds WHERE id=?", (round_id,))
        if not row:
            return None
        d = dict(row)
        d["result"] = json.loads(d["result"]) if d.get("result") else None
        d["aborted"] = bool(d.get("aborted"))
        return d

    async def unfinished_rounds(self) -> list[str]:
        rows = await self._fetchall("SELECT id FROM rounds WHERE status != 'ENDED'")
        return [r[0] for r in rows]

    # ---------- Balances ----------
    async def get_balance(self, context: str) -> Optional[int]:
        row = await self._fetchone("SELECT amount FROM balances WHERE context=?", (context,))
        return int(row[0]) if row else None

    async def adjust_balance(self, context: str, delta: int) -> Optional[int]:
        """
        Atomically add delta; refuses to go below zero.
        Returns the new balance, or None when the debit would overdraw.
        """
        await self._execute(
            "INSERT INTO balances(context, amount) VALUES(?, 0) ON CONFLICT(context) DO NOTHING",
            (context,), commit=False,
        )
        cur = await self._execute(
            "UPDATE balances SET amount = amount + ? WHERE context=? AND amount + ? >= 0",
            (int(delta), context, int(delta)),
        )
        if cur.rowcount == 0:
            return None
        return await self.get_balance(context)
