from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import List

from mintpower.runtime.errors import NotFoundError, PersistenceError
from mintpower.runtime.recalc_worker import RecalcQueue, RecalcQueueConfig, RecalcWorker
from mintpower.runtime.sqlite_db import SqliteDB


class _FakeAggregator:
    def __init__(self, *, fail_with: Exception | None = None) -> None:
        self.calls: List[tuple] = []
        self.fail_with = fail_with

    def _maybe_fail(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def recalculate_personal(self, pid: str) -> int:
        self.calls.append(("personal", pid))
        self._maybe_fail()
        return 0

    def apply_team_delta(self, pid: str, delta: int) -> None:
        self.calls.append(("propagate", pid, delta))
        self._maybe_fail()

    def recalculate_team_stats(self, pid: str) -> None:
        self.calls.append(("team_stats", pid))
        self._maybe_fail()


def _mk(tmp_path: Path, agg: _FakeAggregator, **cfg) -> RecalcWorker:
    db = SqliteDB(path=str(tmp_path / "mintpower_test.db"))
    db.init_schema()
    queue = RecalcQueue(db=db, cfg=RecalcQueueConfig(**cfg))
    return RecalcWorker(queue=queue, aggregator=agg, batch_size=50)


def test_keyed_jobs_are_deduplicated(tmp_path: Path) -> None:
    w = _mk(tmp_path, _FakeAggregator())
    w.queue.enqueue_personal("a")
    w.queue.enqueue_personal("a")
    w.queue.enqueue_team_stats("a")
    w.queue.enqueue_propagate("root", 5)
    w.queue.enqueue_propagate("root", 5)

    assert w.queue.counts()["pending"] == 4


def test_run_once_executes_and_deletes(tmp_path: Path) -> None:
    agg = _FakeAggregator()
    w = _mk(tmp_path, agg)
    w.queue.enqueue_personal("a")
    w.queue.enqueue_propagate("root", -3)
    w.queue.enqueue_team_stats("root")

    stats = w.run_once()
    assert stats["ok"] is True
    assert stats["processed"] == 3
    assert stats["done"] == 3
    assert sorted(c[0] for c in agg.calls) == ["personal", "propagate", "team_stats"]
    assert ("propagate", "root", -3) in agg.calls

    stats2 = w.run_once()
    assert stats2["processed"] == 0
    assert w.queue.counts() == {"pending": 0, "running": 0, "failed": 0}


def test_transient_failure_backs_off_then_fails(tmp_path: Path) -> None:
    w = _mk(tmp_path, _FakeAggregator(fail_with=sqlite3.OperationalError("database is locked")), max_attempts=2)
    job_id = w.queue.enqueue_personal("a")

    stats = w.run_once()
    assert stats["retrying"] == 1
    job = w.queue.get(job_id)
    assert job["status"] == "pending"
    assert job["attempts"] == 1
    assert "database is locked" in job["last_error"]

    # Backoff keeps it out of the next pass.
    assert w.run_once()["processed"] == 0

    with w.queue._db.write_tx() as con:
        con.execute("UPDATE recalc_jobs SET next_attempt_ms=0 WHERE job_id=?;", (job_id,))
    stats = w.run_once()
    assert stats["failed"] == 1
    assert w.queue.get(job_id)["status"] == "failed"
    assert len(w.queue.failed()) == 1


def test_retryable_engine_error_is_retried(tmp_path: Path) -> None:
    w = _mk(tmp_path, _FakeAggregator(fail_with=PersistenceError("io")), max_attempts=5)
    job_id = w.queue.enqueue_team_stats("a")
    assert w.run_once()["retrying"] == 1
    assert w.queue.get(job_id)["status"] == "pending"


def test_non_retryable_error_fails_immediately(tmp_path: Path) -> None:
    w = _mk(tmp_path, _FakeAggregator(fail_with=NotFoundError("unknown_participant")), max_attempts=5)
    job_id = w.queue.enqueue_personal("ghost")

    stats = w.run_once()
    assert stats["failed"] == 1
    assert w.queue.get(job_id)["status"] == "failed"

    # Re-enqueueing revives it with a fresh budget.
    w.queue.enqueue_personal("ghost")
    job = w.queue.get(job_id)
    assert job["status"] == "pending"
    assert job["attempts"] == 0


def test_retry_failed_requeues_everything(tmp_path: Path) -> None:
    w = _mk(tmp_path, _FakeAggregator(fail_with=ValueError("bad")))
    w.queue.enqueue_personal("a")
    w.queue.enqueue_personal("b")
    w.run_once()
    assert w.queue.counts()["failed"] == 2
    assert w.queue.retry_failed() == 2
    assert w.queue.counts()["pending"] == 2


def test_enqueue_while_running_keeps_job(tmp_path: Path) -> None:
    w = _mk(tmp_path, _FakeAggregator())
    job_id = w.queue.enqueue_personal("a")
    assert w.queue.claim(job_id) is True

    w.queue.enqueue_personal("a")
    assert w.queue.get(job_id)["status"] == "pending"
    assert w.queue.complete(job_id) is False
    assert w.queue.get(job_id) is not None


def test_abandoned_running_job_is_recovered(tmp_path: Path) -> None:
    w = _mk(tmp_path, _FakeAggregator(), running_timeout_ms=1_000)
    job_id = w.queue.enqueue_personal("a")
    w.queue.claim(job_id)

    assert w.queue.recover_abandoned(now_ms=w.queue.get(job_id)["updated_ts_ms"] + 5_000) == 1
    assert w.queue.get(job_id)["status"] == "pending"
