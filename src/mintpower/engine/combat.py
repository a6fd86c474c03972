# src/mintpower/engine/combat.py
from __future__ import annotations

"""Combat power: personal power per participant, team power per ancestor.

Personal power = (holdings + LP weight + burn weight) x active multiplier,
rounded down to the minimum unit. Team power is the sum of personal power
over a participant's whole downline. It is maintained incrementally by
adding personal-power deltas to every ancestor, and re-derived from scratch
by `recalculate_team_stats` / `reconcile` to correct drift.

Per participant: stale -> recalculating -> current.
"""

import logging
import sqlite3
import threading
import time
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

from mintpower.engine.models import (
    STATE_CURRENT,
    STATE_RECALCULATING,
    STATE_STALE,
    CombatPowerRecord,
    TeamStats,
)
from mintpower.ledger.constants import apply_multiplier
from mintpower.ledger.forest import walk_ancestors
from mintpower.ledger.interfaces import MultiplierSource, ReferralForest, WeightSource
from mintpower.runtime.errors import EngineError, NotFoundError, PersistenceError
from mintpower.runtime.metrics import inc_counter, set_gauge
from mintpower.runtime.sqlite_db import SqliteDB
from mintpower.runtime.structured_logging import log_event

if TYPE_CHECKING:
    from mintpower.runtime.recalc_worker import RecalcQueue

log = logging.getLogger("mintpower.engine.combat")

RECONCILE_CURSOR_KEY = "reconcile_cursor"

# Bound on SQLite host parameters per IN (...) query.
_IN_CHUNK = 500


def _now_ms() -> int:
    return int(time.time() * 1000)


def _chunks(items: List[str], size: int) -> Iterable[List[str]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


class CombatPowerAggregator:
    def __init__(
        self,
        *,
        db: SqliteDB,
        forest: ReferralForest,
        weights: WeightSource,
        multipliers: MultiplierSource,
        max_depth: int,
        queue: Optional["RecalcQueue"] = None,
    ) -> None:
        if int(max_depth) < 1:
            raise ValueError(f"max_depth must be >= 1; got {max_depth}")
        self._db = db
        self._forest = forest
        self._weights = weights
        self._multipliers = multipliers
        self._max_depth = int(max_depth)
        self._queue = queue

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def _ensure_record(self, con: sqlite3.Connection, participant_id: str) -> None:
        if con.execute("SELECT 1 FROM participants WHERE participant_id=?;", (participant_id,)).fetchone() is None:
            raise NotFoundError("unknown_participant", {"participant_id": participant_id})
        con.execute(
            """
            INSERT OR IGNORE INTO combat_power(participant_id, personal_power, team_power, lp_weight, burn_weight, state, updated_ts_ms)
            VALUES(?, 0, 0, 0, 0, ?, ?);
            """,
            (participant_id, STATE_CURRENT, _now_ms()),
        )

    def ensure_record(self, participant_id: str) -> None:
        with self._db.write_tx() as con:
            self._ensure_record(con, str(participant_id))

    def get_record(self, participant_id: str) -> CombatPowerRecord:
        pid = str(participant_id)
        with self._db.connection() as con:
            row = con.execute("SELECT * FROM combat_power WHERE participant_id=?;", (pid,)).fetchone()
        if row is None:
            if not self._forest.exists(pid):
                raise NotFoundError("unknown_participant", {"participant_id": pid})
            return CombatPowerRecord.zero(pid)
        return CombatPowerRecord.from_row(row)

    def on_participant_joined(self, participant_id: str) -> None:
        """Zero-initialize the new participant's record and refresh the inviter's team stats."""
        pid = str(participant_id)
        self.ensure_record(pid)
        inviter = self._forest.get_inviter(pid)
        if inviter is None:
            return
        if self._queue is not None:
            self._queue.enqueue_team_stats(inviter)
        else:
            self.recalculate_team_stats(inviter)

    # ------------------------------------------------------------------
    # Personal power
    # ------------------------------------------------------------------

    def mark_stale(self, participant_id: str) -> None:
        """Flag a participant whose weights changed and schedule its recalculation."""
        pid = str(participant_id)
        with self._db.write_tx() as con:
            self._ensure_record(con, pid)
            con.execute(
                "UPDATE combat_power SET state=?, updated_ts_ms=? WHERE participant_id=?;",
                (STATE_STALE, _now_ms(), pid),
            )
        inc_counter("combat_marked_stale_total", 1)
        if self._queue is not None:
            self._queue.enqueue_personal(pid)
        else:
            self.recalculate_personal(pid)

    def compute_personal(self, participant_id: str) -> int:
        """Personal power from current weight inputs, without persisting it."""
        pid = str(participant_id)
        base = (
            int(self._weights.get_holdings_weight(pid))
            + int(self._weights.get_lp_weight(pid))
            + int(self._weights.get_burn_weight(pid))
        )
        return apply_multiplier(base, self._multipliers.get_active_multiplier(pid))

    def recalculate_personal(self, participant_id: str) -> int:
        """Recompute, persist and propagate a participant's personal power. Returns the new power."""
        pid = str(participant_id)
        with self._db.write_tx() as con:
            self._ensure_record(con, pid)
            con.execute(
                "UPDATE combat_power SET state=?, updated_ts_ms=? WHERE participant_id=?;",
                (STATE_RECALCULATING, _now_ms(), pid),
            )

        try:
            lp = int(self._weights.get_lp_weight(pid))
            burn = int(self._weights.get_burn_weight(pid))
            holdings = int(self._weights.get_holdings_weight(pid))
            checked_ms = int(self._multipliers.now_ms())
            multiplier = self._multipliers.get_active_multiplier(pid, at_ms=checked_ms)
            power = apply_multiplier(holdings + lp + burn, multiplier)
        except Exception:
            with self._db.write_tx() as con:
                con.execute(
                    "UPDATE combat_power SET state=? WHERE participant_id=? AND state=?;",
                    (STATE_STALE, pid, STATE_RECALCULATING),
                )
            raise

        with self._db.write_tx() as con:
            row = con.execute("SELECT personal_power FROM combat_power WHERE participant_id=?;", (pid,)).fetchone()
            old = int(row["personal_power"])
            # A concurrent mark_stale leaves the row stale so the queued job runs again.
            con.execute(
                """
                UPDATE combat_power
                SET personal_power=?, lp_weight=?, burn_weight=?, multiplier_ts_ms=?,
                    state=CASE WHEN state=? THEN ? ELSE state END,
                    updated_ts_ms=?
                WHERE participant_id=?;
                """,
                (power, lp, burn, checked_ms, STATE_RECALCULATING, STATE_CURRENT, _now_ms(), pid),
            )
        delta = power - old

        inc_counter("combat_personal_recalculated_total", 1)
        log_event(
            log,
            "personal_power_recalculated",
            participant_id=pid,
            holdings=holdings,
            lp_weight=lp,
            burn_weight=burn,
            multiplier=str(multiplier),
            personal_power=power,
            delta=delta,
        )

        if delta != 0:
            self.propagate_to_ancestors(pid, delta)
        return power

    def refresh_expired_multipliers(self) -> int:
        """Mark stale every participant whose stored power still counts an entitlement that has expired.

        `multiplier_ts_ms` is the multiplier clock at the last recalculation;
        an entitlement expiring after it and not later than now is unaccounted.
        Returns the number of participants marked.
        """
        now = int(self._multipliers.now_ms())
        with self._db.connection() as con:
            rows = con.execute(
                """
                SELECT DISTINCT e.participant_id
                FROM entitlements e
                JOIN combat_power c ON c.participant_id = e.participant_id
                WHERE e.expires_ts_ms IS NOT NULL
                  AND e.expires_ts_ms <= ?
                  AND e.expires_ts_ms > c.multiplier_ts_ms
                ORDER BY e.participant_id;
                """,
                (now,),
            ).fetchall()
        pids = [str(r["participant_id"]) for r in rows]
        for pid in pids:
            self.mark_stale(pid)
        if pids:
            inc_counter("combat_multiplier_expired_total", len(pids))
            log_event(log, "multiplier_expiry_refreshed", participants=len(pids), at_ms=now)
        return len(pids)

    # ------------------------------------------------------------------
    # Team power
    # ------------------------------------------------------------------

    def apply_team_delta(self, ancestor_id: str, delta: int) -> None:
        """Add `delta` to one participant's team power."""
        with self._db.write_tx() as con:
            con.execute(
                """
                INSERT INTO combat_power(participant_id, personal_power, team_power, lp_weight, burn_weight, state, updated_ts_ms)
                VALUES(?, 0, ?, 0, 0, ?, ?)
                ON CONFLICT(participant_id) DO UPDATE SET
                  team_power = team_power + excluded.team_power,
                  updated_ts_ms = excluded.updated_ts_ms;
                """,
                (str(ancestor_id), int(delta), STATE_CURRENT, _now_ms()),
            )

    def propagate_to_ancestors(self, participant_id: str, delta: int) -> int:
        """Add `delta` to every ancestor's team power, one hop per transaction.

        A failed hop is logged and skipped; with a queue attached it is
        re-queued as a single-hop job, otherwise reconciliation repairs it.
        Returns the number of ancestors updated.
        """
        pid = str(participant_id)
        d = int(delta)
        if d == 0:
            return 0
        applied = 0
        for depth, ancestor in walk_ancestors(pid, self._forest.get_inviter, max_depth=self._max_depth):
            try:
                self.apply_team_delta(ancestor, d)
                applied += 1
            except (sqlite3.Error, PersistenceError) as e:
                inc_counter("combat_propagation_failures_total", 1)
                log_event(
                    log,
                    "propagation_hop_failed",
                    level=logging.ERROR,
                    participant_id=pid,
                    ancestor=ancestor,
                    depth=depth,
                    delta=d,
                    error=f"{type(e).__name__}:{e}",
                )
                if self._queue is not None:
                    self._queue.enqueue_propagate(ancestor, d)
        inc_counter("combat_propagation_hops_total", applied)
        log_event(log, "power_propagated", participant_id=pid, delta=d, ancestors=applied)
        return applied

    def _sum_personal(self, members: List[str]) -> int:
        total = 0
        with self._db.connection() as con:
            for chunk in _chunks(members, _IN_CHUNK):
                marks = ",".join("?" for _ in chunk)
                row = con.execute(
                    f"SELECT COALESCE(SUM(personal_power), 0) FROM combat_power WHERE participant_id IN ({marks});",
                    tuple(chunk),
                ).fetchone()
                total += int(row[0])
        return total

    def compute_team_stats(self, participant_id: str) -> TeamStats:
        """Full downline enumeration; nothing is written."""
        pid = str(participant_id)
        if not self._forest.exists(pid):
            raise NotFoundError("unknown_participant", {"participant_id": pid})
        members = list(self._forest.get_downline(pid))
        direct = len(self._forest.get_direct_referrals(pid))
        return TeamStats(team_power=self._sum_personal(members), team_members=len(members), direct_referrals=direct)

    def recalculate_team_stats(self, participant_id: str) -> TeamStats:
        """Recompute team stats from scratch, persist them and overwrite the incremental team power."""
        pid = str(participant_id)
        stats = self.compute_team_stats(pid)
        now = _now_ms()
        with self._db.write_tx() as con:
            self._ensure_record(con, pid)
            row = con.execute("SELECT team_power FROM combat_power WHERE participant_id=?;", (pid,)).fetchone()
            drift = stats.team_power - int(row["team_power"])
            con.execute(
                "UPDATE combat_power SET team_power=?, updated_ts_ms=? WHERE participant_id=?;",
                (stats.team_power, now, pid),
            )
            con.execute(
                """
                INSERT INTO team_stats(participant_id, team_power, team_members, direct_referrals, updated_ts_ms)
                VALUES(?, ?, ?, ?, ?)
                ON CONFLICT(participant_id) DO UPDATE SET
                  team_power=excluded.team_power,
                  team_members=excluded.team_members,
                  direct_referrals=excluded.direct_referrals,
                  updated_ts_ms=excluded.updated_ts_ms;
                """,
                (pid, stats.team_power, stats.team_members, stats.direct_referrals, now),
            )
        if drift != 0:
            inc_counter("combat_team_drift_corrected_total", 1)
            log_event(log, "team_power_drift_corrected", level=logging.WARNING, participant_id=pid, drift=drift)
        log_event(log, "team_stats_recalculated", participant_id=pid, **stats.to_dict())
        return stats

    def get_team_stats(self, participant_id: str) -> Optional[TeamStats]:
        """Last persisted team stats, or None if never computed."""
        with self._db.connection() as con:
            row = con.execute(
                "SELECT team_power, team_members, direct_referrals FROM team_stats WHERE participant_id=?;",
                (str(participant_id),),
            ).fetchone()
        if row is None:
            return None
        return TeamStats(int(row["team_power"]), int(row["team_members"]), int(row["direct_referrals"]))

    def reconcile(
        self,
        *,
        batch_size: int,
        cancel: Optional[threading.Event] = None,
        max_participants: Optional[int] = None,
    ) -> Dict[str, object]:
        """Walk every participant, re-deriving team stats, resumable via a persisted cursor.

        Participants whose stored power still counts an expired multiplier are
        marked stale first, so their personal power gets recalculated too.
        Stops early when `cancel` is set or `max_participants` have been
        processed; the next call continues after the last finished participant.
        """
        size = max(1, int(batch_size))
        expired = self.refresh_expired_multipliers()
        cursor = self._db.get_meta(RECONCILE_CURSOR_KEY) or None
        processed = 0
        failed = 0

        while True:
            batch = list(self._forest.iter_participants(after=cursor, limit=size))
            if not batch:
                self._db.set_meta(RECONCILE_CURSOR_KEY, "")
                set_gauge("combat_reconcile_in_progress", 0)
                log_event(log, "reconcile_complete", processed=processed, failed=failed)
                return {"done": True, "processed": processed, "failed": failed, "expired": expired, "cursor": None}

            for pid in batch:
                if (cancel is not None and cancel.is_set()) or (
                    max_participants is not None and processed + failed >= int(max_participants)
                ):
                    set_gauge("combat_reconcile_in_progress", 1)
                    log_event(log, "reconcile_paused", processed=processed, failed=failed, cursor=cursor)
                    return {"done": False, "processed": processed, "failed": failed, "expired": expired, "cursor": cursor}
                try:
                    self.recalculate_team_stats(pid)
                    processed += 1
                except (sqlite3.Error, EngineError) as e:
                    failed += 1
                    inc_counter("combat_reconcile_failures_total", 1)
                    log_event(
                        log,
                        "reconcile_participant_failed",
                        level=logging.ERROR,
                        participant_id=pid,
                        error=f"{type(e).__name__}:{e}",
                    )
                cursor = pid
                self._db.set_meta(RECONCILE_CURSOR_KEY, cursor)
