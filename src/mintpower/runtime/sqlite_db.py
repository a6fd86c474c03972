# src/mintpower/runtime/sqlite_db.py
from __future__ import annotations

import json
import os
import random
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator

from mintpower.runtime.errors import PersistenceError

Json = Dict[str, Any]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _canon_json(obj: Any) -> str:
    """Canonical JSON encoding for persisted payloads (job payloads, event details)."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _env_int(name: str, default: int) -> int:
    try:
        raw = str(os.environ.get(name, "")).strip()
        return int(raw) if raw else int(default)
    except Exception:
        return int(default)


# OperationalError messages that mean "try again later", not a bad statement.
_TRANSIENT_MARKERS = (
    "database is locked",
    "database is busy",
    "disk i/o error",
    "database or disk is full",
    "unable to open",
)


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS meta (
      key TEXT PRIMARY KEY,
      value TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS participants (
      participant_id TEXT PRIMARY KEY,
      inviter_id TEXT REFERENCES participants(participant_id),
      created_ts_ms INTEGER NOT NULL,
      CHECK (inviter_id IS NULL OR inviter_id != participant_id)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_participants_inviter ON participants(inviter_id);",
    """
    CREATE TABLE IF NOT EXISTS balances (
      participant_id TEXT NOT NULL REFERENCES participants(participant_id),
      symbol TEXT NOT NULL,
      amount INTEGER NOT NULL CHECK (amount >= 0),
      updated_ts_ms INTEGER NOT NULL,
      PRIMARY KEY (participant_id, symbol)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS balance_journal (
      journal_id INTEGER PRIMARY KEY AUTOINCREMENT,
      participant_id TEXT NOT NULL,
      symbol TEXT NOT NULL,
      delta INTEGER NOT NULL,
      reason TEXT NOT NULL,
      ref TEXT,
      created_ts_ms INTEGER NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_journal_ref ON balance_journal(reason, ref);",
    """
    CREATE TABLE IF NOT EXISTS lp_positions (
      participant_id TEXT PRIMARY KEY REFERENCES participants(participant_id),
      weight INTEGER NOT NULL CHECK (weight >= 0),
      updated_ts_ms INTEGER NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS burns (
      burn_id INTEGER PRIMARY KEY AUTOINCREMENT,
      participant_id TEXT NOT NULL REFERENCES participants(participant_id),
      symbol TEXT NOT NULL,
      amount INTEGER NOT NULL CHECK (amount > 0),
      power_gained INTEGER NOT NULL CHECK (power_gained >= 0),
      created_ts_ms INTEGER NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_burns_participant ON burns(participant_id);",
    """
    CREATE TABLE IF NOT EXISTS entitlements (
      entitlement_id TEXT PRIMARY KEY,
      participant_id TEXT NOT NULL REFERENCES participants(participant_id),
      factor TEXT NOT NULL,
      expires_ts_ms INTEGER,
      created_ts_ms INTEGER NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_entitlements_participant ON entitlements(participant_id);",
    """
    CREATE TABLE IF NOT EXISTS mint_blocks (
      block_id TEXT PRIMARY KEY,
      block_number INTEGER NOT NULL UNIQUE CHECK (block_number > 0),
      total_reward INTEGER NOT NULL CHECK (total_reward >= 0),
      created_ts_ms INTEGER NOT NULL,
      distributed INTEGER NOT NULL DEFAULT 0,
      distributed_ts_ms INTEGER
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_mint_blocks_open ON mint_blocks(distributed, block_number);",
    """
    CREATE TABLE IF NOT EXISTS weight_snapshots (
      snapshot_id INTEGER PRIMARY KEY AUTOINCREMENT,
      participant_id TEXT NOT NULL REFERENCES participants(participant_id),
      block_id TEXT NOT NULL REFERENCES mint_blocks(block_id),
      transaction_weight INTEGER NOT NULL CHECK (transaction_weight >= 0),
      lp_weight INTEGER NOT NULL CHECK (lp_weight >= 0),
      burn_weight INTEGER NOT NULL CHECK (burn_weight >= 0),
      created_ts_ms INTEGER NOT NULL,
      UNIQUE (participant_id, block_id)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_snapshots_block ON weight_snapshots(block_id);",
    """
    CREATE TABLE IF NOT EXISTS reward_entries (
      entry_id TEXT PRIMARY KEY,
      participant_id TEXT NOT NULL REFERENCES participants(participant_id),
      block_id TEXT NOT NULL REFERENCES mint_blocks(block_id),
      amount INTEGER NOT NULL CHECK (amount >= 0),
      weight_value INTEGER NOT NULL,
      claimed INTEGER NOT NULL DEFAULT 0,
      claimed_ts_ms INTEGER,
      created_ts_ms INTEGER NOT NULL,
      UNIQUE (participant_id, block_id)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_entries_participant_claimed ON reward_entries(participant_id, claimed);",
    "CREATE INDEX IF NOT EXISTS idx_entries_block ON reward_entries(block_id);",
    """
    CREATE TABLE IF NOT EXISTS combat_power (
      participant_id TEXT PRIMARY KEY REFERENCES participants(participant_id),
      personal_power INTEGER NOT NULL DEFAULT 0 CHECK (personal_power >= 0),
      team_power INTEGER NOT NULL DEFAULT 0,
      lp_weight INTEGER NOT NULL DEFAULT 0,
      burn_weight INTEGER NOT NULL DEFAULT 0,
      multiplier_ts_ms INTEGER NOT NULL DEFAULT 0,
      state TEXT NOT NULL DEFAULT 'current',
      updated_ts_ms INTEGER NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS team_stats (
      participant_id TEXT PRIMARY KEY REFERENCES participants(participant_id),
      team_power INTEGER NOT NULL,
      team_members INTEGER NOT NULL,
      direct_referrals INTEGER NOT NULL,
      updated_ts_ms INTEGER NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS recalc_jobs (
      job_id TEXT PRIMARY KEY,
      kind TEXT NOT NULL,
      participant_id TEXT NOT NULL,
      payload_json TEXT NOT NULL,
      status TEXT NOT NULL,
      attempts INTEGER NOT NULL DEFAULT 0,
      next_attempt_ms INTEGER NOT NULL DEFAULT 0,
      last_error TEXT,
      created_ts_ms INTEGER NOT NULL,
      updated_ts_ms INTEGER NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_recalc_due ON recalc_jobs(status, next_attempt_ms);",
)


class SqliteDB:
    """SQLite manager for the reward engine.

    Design goals:
      - single durable DB file for blocks, snapshots, entries, power records and jobs
      - cross-process safe (SQLite locks)
      - cross-thread safe by never sharing connections

    SQLite allows only one writer at a time. Under concurrent claim traffic
    BEGIN IMMEDIATE can transiently fail with "database is locked", so
    write_tx() retries with a bounded backoff.
    """

    SCHEMA_VERSION = 2

    def __init__(self, *, path: str) -> None:
        self.path = str(path)

    @staticmethod
    def _sqlite_synchronous_pragma() -> str:
        """PRAGMA synchronous value: FULL in prod, NORMAL otherwise.

        Override with MINTPOWER_SQLITE_SYNCHRONOUS in {OFF,NORMAL,FULL,EXTRA}.
        """
        mode = (os.environ.get("MINTPOWER_MODE") or "prod").strip().lower()
        default = "FULL" if mode == "prod" else "NORMAL"
        raw = (os.environ.get("MINTPOWER_SQLITE_SYNCHRONOUS") or default).strip().upper()
        if raw not in {"OFF", "NORMAL", "FULL", "EXTRA"}:
            raw = default
        return raw

    def ensure_parent_dir(self) -> None:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)

    def _connect(self) -> sqlite3.Connection:
        self.ensure_parent_dir()

        connect_timeout_s = float(_env_int("MINTPOWER_SQLITE_CONNECT_TIMEOUT_MS", 30_000)) / 1000.0

        con = sqlite3.connect(
            self.path,
            timeout=connect_timeout_s,
            isolation_level=None,  # BEGIN/COMMIT are issued explicitly
            check_same_thread=False,
        )
        con.row_factory = sqlite3.Row

        # WAL is required unless explicitly waived; rollback-journal mode
        # serializes readers behind the claim writers.
        allow_non_wal = (os.environ.get("MINTPOWER_SQLITE_ALLOW_NON_WAL") or "").strip() in {"1", "true", "TRUE"}
        row = con.execute("PRAGMA journal_mode=WAL;").fetchone()
        mode = str(row[0]).strip().lower() if row is not None else ""
        if mode and mode != "wal" and not allow_non_wal:
            con.close()
            raise RuntimeError(f"sqlite journal_mode is '{mode}', expected 'wal'")

        con.execute(f"PRAGMA synchronous={self._sqlite_synchronous_pragma()};")
        con.execute("PRAGMA foreign_keys=ON;")
        con.execute("PRAGMA temp_store=MEMORY;")

        wal_ckpt = max(1, _env_int("MINTPOWER_SQLITE_WAL_AUTOCHECKPOINT", 1000))
        con.execute(f"PRAGMA wal_autocheckpoint={wal_ckpt};")

        cache_kib = max(0, _env_int("MINTPOWER_SQLITE_CACHE_SIZE_KIB", 16 * 1024))
        con.execute(f"PRAGMA cache_size={-cache_kib};")

        busy_ms = max(0, _env_int("MINTPOWER_SQLITE_BUSY_TIMEOUT_MS", int(connect_timeout_s * 1000)))
        con.execute(f"PRAGMA busy_timeout={busy_ms};")

        return con

    def init_schema(self) -> None:
        with self.write_tx() as con:
            for stmt in _SCHEMA:
                con.execute(stmt)

            row = con.execute("SELECT value FROM meta WHERE key='schema_version' LIMIT 1;").fetchone()
            if row is None:
                con.execute("INSERT INTO meta(key, value) VALUES('schema_version', ?);", (str(self.SCHEMA_VERSION),))
                return
            try:
                have = int(str(row["value"]))
            except ValueError:
                have = 0
            if have != self.SCHEMA_VERSION:
                raise RuntimeError(
                    f"sqlite schema_version mismatch: have={have} want={self.SCHEMA_VERSION}. "
                    "Refuse to start to avoid corrupting reward data."
                )

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        con = self._connect()
        try:
            yield con
        finally:
            con.close()

    @staticmethod
    def _is_locked_error(e: Exception) -> bool:
        msg = str(e).lower()
        return ("database is locked" in msg) or ("database is busy" in msg)

    @staticmethod
    def _is_transient_error(e: Exception) -> bool:
        msg = str(e).lower()
        return any(s in msg for s in _TRANSIENT_MARKERS)

    @staticmethod
    def _backoff_s(attempt: int, base_s: float, max_s: float) -> float:
        sleep_s = min(max_s, base_s * (2.0 ** min(attempt, 8)))
        return sleep_s * (0.5 + random.random())

    @staticmethod
    def _rollback(con: sqlite3.Connection) -> None:
        try:
            con.execute("ROLLBACK;")
        except sqlite3.Error:
            pass

    @contextmanager
    def write_tx(self) -> Iterator[sqlite3.Connection]:
        """Open a write transaction with bounded retry on writer-lock contention.

        Policy:
          - retry BEGIN IMMEDIATE until a deadline, exponential backoff with jitter
          - COMMIT gets the same treatment
          - any exception inside the block rolls back and propagates
          - lock timeouts and I/O failures surface as PersistenceError (retryable)
        """
        deadline_ms = max(250, _env_int("MINTPOWER_SQLITE_WRITE_DEADLINE_MS", 30_000))
        deadline_ts = _now_ms() + deadline_ms

        base_sleep = max(0.001, float(_env_int("MINTPOWER_SQLITE_WRITE_BACKOFF_BASE_MS", 5)) / 1000.0)
        max_sleep = max(base_sleep, float(_env_int("MINTPOWER_SQLITE_WRITE_BACKOFF_MAX_MS", 250)) / 1000.0)

        with self.connection() as con:
            attempt = 0
            while True:
                try:
                    con.execute("BEGIN IMMEDIATE;")
                    break
                except sqlite3.OperationalError as e:
                    if self._is_locked_error(e) and _now_ms() < deadline_ts:
                        time.sleep(self._backoff_s(attempt, base_sleep, max_sleep))
                        attempt += 1
                        continue
                    if self._is_transient_error(e):
                        raise PersistenceError("begin_failed", {"path": self.path, "error": str(e)}) from e
                    raise

            try:
                yield con

                attempt = 0
                while True:
                    try:
                        con.execute("COMMIT;")
                        break
                    except sqlite3.OperationalError as e:
                        if self._is_locked_error(e) and _now_ms() < deadline_ts:
                            time.sleep(self._backoff_s(attempt, base_sleep, max_sleep))
                            attempt += 1
                            continue
                        if self._is_transient_error(e):
                            raise PersistenceError("commit_failed", {"path": self.path, "error": str(e)}) from e
                        raise
            except sqlite3.OperationalError as e:
                self._rollback(con)
                if self._is_transient_error(e):
                    raise PersistenceError("write_failed", {"path": self.path, "error": str(e)}) from e
                raise
            except BaseException:
                self._rollback(con)
                raise

    def get_meta(self, key: str) -> str | None:
        with self.connection() as con:
            row = con.execute("SELECT value FROM meta WHERE key=? LIMIT 1;", (str(key),)).fetchone()
        return None if row is None else str(row["value"])

    def set_meta(self, key: str, value: str) -> None:
        with self.write_tx() as con:
            con.execute(
                """
                INSERT INTO meta(key, value) VALUES(?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value;
                """,
                (str(key), str(value)),
            )
