# src/mintpower/engine/claims.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from mintpower.engine.models import RewardEntry
from mintpower.ledger.interfaces import BalanceLedger
from mintpower.runtime.errors import (
    AlreadyClaimedError,
    FatalInconsistencyError,
    NotFoundError,
    NotOwnerError,
)
from mintpower.runtime.metrics import inc_counter
from mintpower.runtime.sqlite_db import SqliteDB
from mintpower.runtime.structured_logging import log_event

log = logging.getLogger("mintpower.engine.claims")

Json = Dict[str, Any]

CLAIM_REASON = "reward_claim"

OUTCOME_CLAIMED = "claimed"
OUTCOME_ALREADY_CLAIMED = "already_claimed"
OUTCOME_NOT_FOUND = "not_found"
OUTCOME_NOT_OWNER = "not_owner"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class ClaimResult:
    participant_id: str
    amount: int = 0
    outcomes: Dict[str, str] = field(default_factory=dict)

    @property
    def claimed_entries(self) -> List[str]:
        return [eid for eid, o in self.outcomes.items() if o == OUTCOME_CLAIMED]

    def to_dict(self) -> Json:
        return {"participant_id": self.participant_id, "amount": self.amount, "outcomes": dict(self.outcomes)}


class ClaimLedger:
    """Converts unclaimed reward entries into balance credits, at most once per entry.

    The claimed flag flips with `... WHERE claimed=0` and the credit is
    written through the balance ledger in the same transaction, so an entry
    is never claimed without being paid. Concurrent claims on one entry race
    on the conditional update and exactly one wins.
    """

    def __init__(
        self,
        *,
        db: SqliteDB,
        balances: BalanceLedger,
        reward_symbol: str,
        on_credit: Optional[Callable[[str], Any]] = None,
    ) -> None:
        sym = str(reward_symbol or "").strip()
        if not sym:
            raise ValueError("reward_symbol must be a non-empty string")
        self._db = db
        self._balances = balances
        self._reward_symbol = sym
        # Called with the participant id after a paying claim commits.
        self._on_credit = on_credit

    def _credited(self, participant_id: str, amount: int) -> None:
        if amount > 0 and self._on_credit is not None:
            self._on_credit(participant_id)

    @property
    def reward_symbol(self) -> str:
        return self._reward_symbol

    def _claim_one(self, participant_id: str, entry_id: str) -> tuple[str, int]:
        now = _now_ms()
        with self._db.write_tx() as con:
            row = con.execute(
                "SELECT participant_id, amount, claimed FROM reward_entries WHERE entry_id=?;",
                (entry_id,),
            ).fetchone()
            if row is None:
                return OUTCOME_NOT_FOUND, 0
            if str(row["participant_id"]) != participant_id:
                return OUTCOME_NOT_OWNER, 0
            if int(row["claimed"]) != 0:
                return OUTCOME_ALREADY_CLAIMED, 0

            cur = con.execute(
                """
                UPDATE reward_entries SET claimed=1, claimed_ts_ms=?
                WHERE entry_id=? AND participant_id=? AND claimed=0;
                """,
                (now, entry_id, participant_id),
            )
            if cur.rowcount != 1:
                inc_counter("claim_races_lost_total", 1)
                return OUTCOME_ALREADY_CLAIMED, 0

            amount = int(row["amount"])
            self._balances.credit(
                participant_id,
                amount,
                symbol=self._reward_symbol,
                reason=CLAIM_REASON,
                ref=entry_id,
                con=con,
            )
        return OUTCOME_CLAIMED, amount

    def claim(self, participant_id: str, entry_ids: Iterable[str]) -> ClaimResult:
        """Claim the given entries. Foreign, unknown and already-claimed entries are skipped."""
        pid = str(participant_id)
        result = ClaimResult(participant_id=pid)
        for raw in entry_ids:
            eid = str(raw)
            if eid in result.outcomes:
                continue
            outcome, amount = self._claim_one(pid, eid)
            result.outcomes[eid] = outcome
            result.amount += amount
            if outcome == OUTCOME_CLAIMED:
                inc_counter("claims_total", 1)
                inc_counter("claimed_units_total", amount)
            else:
                inc_counter(f"claims_skipped_{outcome}_total", 1)

        log_event(
            log,
            "rewards_claimed",
            participant_id=pid,
            amount=result.amount,
            claimed=len(result.claimed_entries),
            skipped=len(result.outcomes) - len(result.claimed_entries),
            symbol=self._reward_symbol,
        )
        self._credited(pid, result.amount)
        return result

    def claim_all(self, participant_id: str) -> ClaimResult:
        pid = str(participant_id)
        with self._db.connection() as con:
            if con.execute("SELECT 1 FROM participants WHERE participant_id=?;", (pid,)).fetchone() is None:
                raise NotFoundError("unknown_participant", {"participant_id": pid})
            rows = con.execute(
                "SELECT entry_id FROM reward_entries WHERE participant_id=? AND claimed=0 ORDER BY created_ts_ms, entry_id;",
                (pid,),
            ).fetchall()
        return self.claim(pid, [str(r["entry_id"]) for r in rows])

    def claim_entry(self, participant_id: str, entry_id: str) -> int:
        """Claim a single entry, raising the specific error kind when it cannot be claimed."""
        pid = str(participant_id)
        eid = str(entry_id)
        outcome, amount = self._claim_one(pid, eid)
        details = {"participant_id": pid, "entry_id": eid}
        if outcome == OUTCOME_NOT_FOUND:
            raise NotFoundError("unknown_entry", details)
        if outcome == OUTCOME_NOT_OWNER:
            raise NotOwnerError("entry_owned_by_another_participant", details)
        if outcome == OUTCOME_ALREADY_CLAIMED:
            raise AlreadyClaimedError("entry_already_claimed", details)
        inc_counter("claims_total", 1)
        inc_counter("claimed_units_total", amount)
        log_event(log, "reward_claimed", participant_id=pid, entry_id=eid, amount=amount, symbol=self._reward_symbol)
        self._credited(pid, amount)
        return amount

    def get_entry(self, entry_id: str) -> Optional[RewardEntry]:
        with self._db.connection() as con:
            row = con.execute("SELECT * FROM reward_entries WHERE entry_id=?;", (str(entry_id),)).fetchone()
        return None if row is None else RewardEntry.from_row(row)

    def unclaimed(self, participant_id: str) -> List[RewardEntry]:
        with self._db.connection() as con:
            rows = con.execute(
                "SELECT * FROM reward_entries WHERE participant_id=? AND claimed=0 ORDER BY created_ts_ms, entry_id;",
                (str(participant_id),),
            ).fetchall()
        return [RewardEntry.from_row(r) for r in rows]

    def summary(self, participant_id: str) -> Json:
        """Earned / claimed / pending totals for one participant."""
        pid = str(participant_id)
        with self._db.connection() as con:
            if con.execute("SELECT 1 FROM participants WHERE participant_id=?;", (pid,)).fetchone() is None:
                raise NotFoundError("unknown_participant", {"participant_id": pid})
            row = con.execute(
                """
                SELECT
                  COALESCE(SUM(amount), 0) AS earned,
                  COALESCE(SUM(CASE WHEN claimed=1 THEN amount ELSE 0 END), 0) AS claimed,
                  COALESCE(SUM(CASE WHEN claimed=0 THEN 1 ELSE 0 END), 0) AS unclaimed_count,
                  MAX(claimed_ts_ms) AS last_claim_ts_ms
                FROM reward_entries WHERE participant_id=?;
                """,
                (pid,),
            ).fetchone()
        earned = int(row["earned"])
        claimed = int(row["claimed"])
        return {
            "participant_id": pid,
            "symbol": self._reward_symbol,
            "total_earned": earned,
            "total_claimed": claimed,
            "pending": earned - claimed,
            "unclaimed_count": int(row["unclaimed_count"]),
            "last_claim_ts_ms": None if row["last_claim_ts_ms"] is None else int(row["last_claim_ts_ms"]),
        }

    def audit(self, *, limit: Optional[int] = None) -> List[Json]:
        """Claimed entries with no matching credit in the balance journal.

        Each hit is a fatal inconsistency; nothing here repairs it.
        """
        sql = """
            SELECT e.entry_id, e.participant_id, e.amount, e.claimed_ts_ms
            FROM reward_entries e
            WHERE e.claimed=1 AND NOT EXISTS (
              SELECT 1 FROM balance_journal j
              WHERE j.reason=? AND j.ref=e.entry_id
                AND j.participant_id=e.participant_id AND j.delta=e.amount AND j.symbol=?
            )
            ORDER BY e.claimed_ts_ms, e.entry_id
        """
        args: list = [CLAIM_REASON, self._reward_symbol]
        if limit is not None:
            sql += " LIMIT ?"
            args.append(int(limit))
        with self._db.connection() as con:
            rows = con.execute(sql + ";", tuple(args)).fetchall()
        found = [dict(r) for r in rows]
        if found:
            inc_counter("claim_audit_inconsistencies_total", len(found))
            log_event(log, "claim_audit_inconsistent", level=logging.CRITICAL, count=len(found))
        return found

    def verify_entry_credited(self, entry_id: str) -> None:
        """Raise FatalInconsistencyError if a claimed entry was never credited."""
        eid = str(entry_id)
        entry = self.get_entry(eid)
        if entry is None:
            raise NotFoundError("unknown_entry", {"entry_id": eid})
        if not entry.claimed:
            return
        credits = [
            j
            for j in self._balances.journal_for(reason=CLAIM_REASON, ref=eid)
            if j["participant_id"] == entry.participant_id and j["symbol"] == self._reward_symbol
        ]
        credited = sum(int(j["delta"]) for j in credits)
        if not credits or credited != entry.amount:
            log_event(
                log,
                "claim_uncredited",
                level=logging.CRITICAL,
                entry_id=eid,
                participant_id=entry.participant_id,
                amount=entry.amount,
                credited=credited,
            )
            raise FatalInconsistencyError(
                "claimed_entry_not_credited",
                {"entry_id": eid, "participant_id": entry.participant_id, "amount": entry.amount, "credited": credited},
            )


__all__ = [
    "CLAIM_REASON",
    "ClaimLedger",
    "ClaimResult",
    "OUTCOME_ALREADY_CLAIMED",
    "OUTCOME_CLAIMED",
    "OUTCOME_NOT_FOUND",
    "OUTCOME_NOT_OWNER",
]
