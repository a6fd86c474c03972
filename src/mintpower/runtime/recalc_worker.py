# src/mintpower/runtime/recalc_worker.py
from __future__ import annotations

"""SQLite-backed queue for combat-power follow-up work.

Job kinds:
  - personal:   recalculate one participant's personal power (then its delta propagates)
  - propagate:  add a delta to one ancestor's team power (retry of a failed hop)
  - team_stats: recompute a participant's team stats from scratch

personal and team_stats jobs are keyed by participant, so enqueueing the
same participant twice while a job is pending is a no-op. Propagation jobs
carry a delta and are never merged.
"""

import json
import logging
import sqlite3
import time
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from mintpower.runtime.errors import EngineError
from mintpower.runtime.metrics import inc_counter, set_gauge
from mintpower.runtime.sqlite_db import SqliteDB, _canon_json
from mintpower.runtime.structured_logging import log_event

if TYPE_CHECKING:
    from mintpower.engine.combat import CombatPowerAggregator

log = logging.getLogger("mintpower.recalc_worker")

Json = Dict[str, Any]

KIND_PERSONAL = "personal"
KIND_PROPAGATE = "propagate"
KIND_TEAM_STATS = "team_stats"
JOB_KINDS = (KIND_PERSONAL, KIND_PROPAGATE, KIND_TEAM_STATS)

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_FAILED = "failed"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class RecalcQueueConfig:
    max_attempts: int = 8
    backoff_base_ms: int = 500
    backoff_cap_ms: int = 60_000
    # A job left "running" this long (worker crash) becomes pending again.
    running_timeout_ms: int = 5 * 60 * 1000


class RecalcQueue:
    def __init__(self, *, db: SqliteDB, cfg: Optional[RecalcQueueConfig] = None) -> None:
        self._db = db
        self.cfg = cfg or RecalcQueueConfig()

    def _enqueue_keyed(self, kind: str, participant_id: str) -> str:
        pid = str(participant_id)
        job_id = f"{kind}:{pid}"
        now = _now_ms()
        with self._db.write_tx() as con:
            # Pending: already queued. Running: flip back to pending so the
            # worker runs it again instead of deleting it. Failed: revive.
            con.execute(
                """
                INSERT INTO recalc_jobs(job_id, kind, participant_id, payload_json, status, attempts, next_attempt_ms, last_error, created_ts_ms, updated_ts_ms)
                VALUES(?, ?, ?, ?, ?, 0, 0, NULL, ?, ?)
                ON CONFLICT(job_id) DO UPDATE SET
                  status=excluded.status,
                  attempts=CASE WHEN recalc_jobs.status=? THEN 0 ELSE recalc_jobs.attempts END,
                  next_attempt_ms=0,
                  updated_ts_ms=excluded.updated_ts_ms
                WHERE recalc_jobs.status IN (?, ?);
                """,
                (job_id, kind, pid, _canon_json({}), STATUS_PENDING, now, now, STATUS_FAILED, STATUS_RUNNING, STATUS_FAILED),
            )
        inc_counter(f"recalc_enqueued_{kind}_total", 1)
        return job_id

    def enqueue_personal(self, participant_id: str) -> str:
        return self._enqueue_keyed(KIND_PERSONAL, participant_id)

    def enqueue_team_stats(self, participant_id: str) -> str:
        return self._enqueue_keyed(KIND_TEAM_STATS, participant_id)

    def enqueue_propagate(self, participant_id: str, delta: int) -> str:
        pid = str(participant_id)
        job_id = f"{KIND_PROPAGATE}:{uuid.uuid4().hex}"
        now = _now_ms()
        with self._db.write_tx() as con:
            con.execute(
                """
                INSERT INTO recalc_jobs(job_id, kind, participant_id, payload_json, status, attempts, next_attempt_ms, last_error, created_ts_ms, updated_ts_ms)
                VALUES(?, ?, ?, ?, ?, 0, 0, NULL, ?, ?);
                """,
                (job_id, KIND_PROPAGATE, pid, _canon_json({"delta": int(delta)}), STATUS_PENDING, now, now),
            )
        inc_counter(f"recalc_enqueued_{KIND_PROPAGATE}_total", 1)
        return job_id

    def get(self, job_id: str) -> Optional[Json]:
        with self._db.connection() as con:
            row = con.execute("SELECT * FROM recalc_jobs WHERE job_id=?;", (str(job_id),)).fetchone()
        return None if row is None else dict(row)

    def due(self, *, limit: int, now_ms: Optional[int] = None) -> List[Json]:
        now = _now_ms() if now_ms is None else int(now_ms)
        with self._db.connection() as con:
            rows = con.execute(
                """
                SELECT * FROM recalc_jobs
                WHERE status=? AND next_attempt_ms<=?
                ORDER BY created_ts_ms ASC, job_id ASC
                LIMIT ?;
                """,
                (STATUS_PENDING, now, int(limit)),
            ).fetchall()
        return [dict(r) for r in rows]

    def counts(self) -> Dict[str, int]:
        with self._db.connection() as con:
            rows = con.execute("SELECT status, COUNT(*) AS n FROM recalc_jobs GROUP BY status;").fetchall()
        out = {STATUS_PENDING: 0, STATUS_RUNNING: 0, STATUS_FAILED: 0}
        for r in rows:
            out[str(r["status"])] = int(r["n"])
        return out

    def failed(self, *, limit: int = 100) -> List[Json]:
        with self._db.connection() as con:
            rows = con.execute(
                "SELECT * FROM recalc_jobs WHERE status=? ORDER BY updated_ts_ms DESC LIMIT ?;",
                (STATUS_FAILED, int(limit)),
            ).fetchall()
        return [dict(r) for r in rows]

    def retry_failed(self) -> int:
        """Put every failed job back in the queue with a fresh attempt budget."""
        with self._db.write_tx() as con:
            cur = con.execute(
                """
                UPDATE recalc_jobs SET status=?, attempts=0, next_attempt_ms=0, updated_ts_ms=?
                WHERE status=?;
                """,
                (STATUS_PENDING, _now_ms(), STATUS_FAILED),
            )
            return int(cur.rowcount)

    def claim(self, job_id: str) -> bool:
        with self._db.write_tx() as con:
            cur = con.execute(
                "UPDATE recalc_jobs SET status=?, updated_ts_ms=? WHERE job_id=? AND status=?;",
                (STATUS_RUNNING, _now_ms(), str(job_id), STATUS_PENDING),
            )
            return cur.rowcount == 1

    def complete(self, job_id: str) -> bool:
        """Drop a finished job. False if it was re-queued while running."""
        with self._db.write_tx() as con:
            cur = con.execute(
                "DELETE FROM recalc_jobs WHERE job_id=? AND status=?;",
                (str(job_id), STATUS_RUNNING),
            )
            return cur.rowcount == 1

    def _compute_backoff_ms(self, attempts: int) -> int:
        # attempts starts at 1 for the first failure.
        a = max(1, int(attempts))
        base = max(50, int(self.cfg.backoff_base_ms))
        cap = max(base, int(self.cfg.backoff_cap_ms))
        return int(min(cap, base * (2 ** min(30, a - 1))))

    def fail(self, job_id: str, *, error: str, retryable: bool) -> str:
        """Record a failed attempt; returns the job's new status."""
        now = _now_ms()
        with self._db.write_tx() as con:
            row = con.execute(
                "SELECT attempts, status FROM recalc_jobs WHERE job_id=?;",
                (str(job_id),),
            ).fetchone()
            if row is None:
                return ""
            attempts = int(row["attempts"]) + 1
            give_up = (not retryable) or attempts >= int(self.cfg.max_attempts)
            status = STATUS_FAILED if give_up else STATUS_PENDING
            con.execute(
                """
                UPDATE recalc_jobs
                SET status=?, attempts=?, next_attempt_ms=?, last_error=?, updated_ts_ms=?
                WHERE job_id=? AND status=?;
                """,
                (
                    status,
                    attempts,
                    now + self._compute_backoff_ms(attempts),
                    str(error)[:2000],
                    now,
                    str(job_id),
                    STATUS_RUNNING,
                ),
            )
        return status

    def recover_abandoned(self, *, now_ms: Optional[int] = None) -> int:
        now = _now_ms() if now_ms is None else int(now_ms)
        with self._db.write_tx() as con:
            cur = con.execute(
                "UPDATE recalc_jobs SET status=?, updated_ts_ms=? WHERE status=? AND updated_ts_ms<?;",
                (STATUS_PENDING, now, STATUS_RUNNING, now - int(self.cfg.running_timeout_ms)),
            )
            n = int(cur.rowcount)
        if n:
            log_event(log, "recalc_jobs_recovered", level=logging.WARNING, count=n)
        return n


class RecalcWorker:
    """Drains due jobs from a RecalcQueue through the combat-power aggregator."""

    def __init__(self, *, queue: RecalcQueue, aggregator: "CombatPowerAggregator", batch_size: int = 100) -> None:
        self.queue = queue
        self._aggregator = aggregator
        self._batch_size = max(1, int(batch_size))

    def _execute(self, job: Json) -> None:
        kind = str(job["kind"])
        pid = str(job["participant_id"])
        if kind == KIND_PERSONAL:
            self._aggregator.recalculate_personal(pid)
        elif kind == KIND_PROPAGATE:
            payload = json.loads(str(job["payload_json"] or "{}"))
            self._aggregator.apply_team_delta(pid, int(payload.get("delta", 0)))
        elif kind == KIND_TEAM_STATS:
            self._aggregator.recalculate_team_stats(pid)
        else:
            raise ValueError(f"unknown recalc job kind: {kind!r}")

    def run_once(self, *, limit: Optional[int] = None) -> Json:
        """Process one batch of due jobs.

        Behavior:
          - success: the job is deleted
          - failure: attempts/last_error/next_attempt_ms are updated; non-retryable
            errors and exhausted budgets end in status "failed"
        """
        self.queue.recover_abandoned()
        jobs = self.queue.due(limit=self._batch_size if limit is None else int(limit))
        processed = 0
        done = 0
        retrying = 0
        failed = 0
        skipped = 0

        for job in jobs:
            job_id = str(job["job_id"])
            if not self.queue.claim(job_id):
                skipped += 1
                continue
            processed += 1
            try:
                self._execute(job)
            except (EngineError, sqlite3.Error, ValueError) as e:
                retryable = isinstance(e, sqlite3.Error) or (isinstance(e, EngineError) and e.retryable)
                status = self.queue.fail(job_id, error=f"{type(e).__name__}:{e}", retryable=retryable)
                if status == STATUS_FAILED:
                    failed += 1
                    inc_counter("recalc_jobs_failed_total", 1)
                else:
                    retrying += 1
                    inc_counter("recalc_jobs_retried_total", 1)
                log_event(
                    log,
                    "recalc_job_failed",
                    level=logging.ERROR if status == STATUS_FAILED else logging.WARNING,
                    job_id=job_id,
                    kind=job["kind"],
                    participant_id=job["participant_id"],
                    attempts=int(job["attempts"]) + 1,
                    status=status,
                    error=f"{type(e).__name__}:{e}",
                )
                continue

            self.queue.complete(job_id)
            done += 1
            inc_counter("recalc_jobs_done_total", 1)
            log_event(log, "recalc_job_done", level=logging.DEBUG, job_id=job_id, kind=job["kind"])

        counts = self.queue.counts()
        set_gauge("recalc_jobs_pending", counts.get(STATUS_PENDING, 0))
        set_gauge("recalc_jobs_failed", counts.get(STATUS_FAILED, 0))
        return {
            "ok": True,
            "processed": processed,
            "done": done,
            "retrying": retrying,
            "failed": failed,
            "skipped": skipped,
        }

    def drain(self, *, max_rounds: int = 1000) -> Json:
        """Run batches until nothing is due (or `max_rounds`). Used by tests and the CLI."""
        total = {"processed": 0, "done": 0, "retrying": 0, "failed": 0, "skipped": 0}
        for _ in range(max(1, int(max_rounds))):
            res = self.run_once()
            for k in total:
                total[k] += int(res[k])
            if res["processed"] == 0:
                break
        return {"ok": True, **total}
