# src/mintpower/ledger/balances.py
from __future__ import annotations

import sqlite3
import time
from contextlib import contextmanager
from typing import Dict, Iterator, List

from mintpower.runtime.errors import EngineError, InvalidParticipantError, NotFoundError
from mintpower.runtime.sqlite_db import SqliteDB


def _now_ms() -> int:
    return int(time.time() * 1000)


class InsufficientBalanceError(EngineError):
    def __init__(self, participant_id: str, symbol: str, have: int, want: int) -> None:
        super().__init__(
            "insufficient_balance",
            "debit_exceeds_balance",
            {"participant_id": participant_id, "symbol": symbol, "have": int(have), "want": int(want)},
        )


class SqliteBalanceLedger:
    """Per-participant, per-symbol integer balances with an append-only journal.

    Every credit/debit writes one `balance_journal` row tagged with a reason
    and a reference (e.g. the reward entry id), which is what claim audits
    reconcile against.
    """

    def __init__(self, *, db: SqliteDB) -> None:
        self._db = db

    @contextmanager
    def _tx(self, con: sqlite3.Connection | None) -> Iterator[sqlite3.Connection]:
        if con is not None:
            yield con
            return
        with self._db.write_tx() as own:
            yield own

    @staticmethod
    def _check(participant_id: str, amount: int, symbol: str) -> None:
        if not str(participant_id or "").strip():
            raise InvalidParticipantError("missing_participant_id")
        if not str(symbol or "").strip():
            raise ValueError("symbol must be a non-empty string")
        if int(amount) < 0:
            raise ValueError(f"amount must be >= 0; got {amount}")

    def credit(
        self,
        participant_id: str,
        amount: int,
        *,
        symbol: str,
        reason: str,
        ref: str | None = None,
        con: sqlite3.Connection | None = None,
    ) -> int:
        """Add `amount` units; returns the new balance."""
        self._check(participant_id, amount, symbol)
        now = _now_ms()
        with self._tx(con) as c:
            if c.execute("SELECT 1 FROM participants WHERE participant_id=?;", (participant_id,)).fetchone() is None:
                raise NotFoundError("unknown_participant", {"participant_id": participant_id})
            c.execute(
                """
                INSERT INTO balances(participant_id, symbol, amount, updated_ts_ms)
                VALUES(?, ?, ?, ?)
                ON CONFLICT(participant_id, symbol) DO UPDATE SET
                  amount = amount + excluded.amount,
                  updated_ts_ms = excluded.updated_ts_ms;
                """,
                (participant_id, symbol, int(amount), now),
            )
            c.execute(
                """
                INSERT INTO balance_journal(participant_id, symbol, delta, reason, ref, created_ts_ms)
                VALUES(?, ?, ?, ?, ?, ?);
                """,
                (participant_id, symbol, int(amount), str(reason), ref, now),
            )
            row = c.execute(
                "SELECT amount FROM balances WHERE participant_id=? AND symbol=?;",
                (participant_id, symbol),
            ).fetchone()
        return int(row["amount"])

    def debit(
        self,
        participant_id: str,
        amount: int,
        *,
        symbol: str,
        reason: str,
        ref: str | None = None,
        con: sqlite3.Connection | None = None,
    ) -> int:
        """Remove `amount` units; refuses to go negative. Returns the new balance."""
        self._check(participant_id, amount, symbol)
        now = _now_ms()
        with self._tx(con) as c:
            cur = c.execute(
                """
                UPDATE balances
                SET amount = amount - ?, updated_ts_ms = ?
                WHERE participant_id=? AND symbol=? AND amount >= ?;
                """,
                (int(amount), now, participant_id, symbol, int(amount)),
            )
            if cur.rowcount != 1:
                have = self._read_balance(c, participant_id, symbol)
                raise InsufficientBalanceError(participant_id, symbol, have, int(amount))
            c.execute(
                """
                INSERT INTO balance_journal(participant_id, symbol, delta, reason, ref, created_ts_ms)
                VALUES(?, ?, ?, ?, ?, ?);
                """,
                (participant_id, symbol, -int(amount), str(reason), ref, now),
            )
            return self._read_balance(c, participant_id, symbol)

    @staticmethod
    def _read_balance(con: sqlite3.Connection, participant_id: str, symbol: str) -> int:
        row = con.execute(
            "SELECT amount FROM balances WHERE participant_id=? AND symbol=?;",
            (participant_id, symbol),
        ).fetchone()
        return 0 if row is None else int(row["amount"])

    def get_balance(self, participant_id: str, symbol: str) -> int:
        with self._db.connection() as con:
            return self._read_balance(con, participant_id, symbol)

    def get_balances(self, participant_id: str) -> Dict[str, int]:
        with self._db.connection() as con:
            rows = con.execute(
                "SELECT symbol, amount FROM balances WHERE participant_id=? ORDER BY symbol;",
                (participant_id,),
            ).fetchall()
        return {str(r["symbol"]): int(r["amount"]) for r in rows}

    def journal_for(self, *, reason: str, ref: str) -> List[dict]:
        with self._db.connection() as con:
            rows = con.execute(
                """
                SELECT participant_id, symbol, delta, reason, ref, created_ts_ms
                FROM balance_journal WHERE reason=? AND ref=?
                ORDER BY journal_id;
                """,
                (str(reason), str(ref)),
            ).fetchall()
        return [dict(r) for r in rows]
