# src/mintpower/runtime/engine_loop.py
from __future__ import annotations

import fcntl
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional

from mintpower.runtime.metrics import inc_counter, set_gauge
from mintpower.runtime.structured_logging import log_event

if TYPE_CHECKING:
    from mintpower.engine.combat import CombatPowerAggregator
    from mintpower.engine.scheduler import MintBlockScheduler
    from mintpower.runtime.config import EngineConfig
    from mintpower.runtime.recalc_worker import RecalcWorker


log = logging.getLogger("mintpower.engine_loop")

Json = Dict[str, Any]


@dataclass(frozen=True, slots=True)
class EngineLoopConfig:
    enabled: bool
    tick_ms: int
    lock_path: str

    # Reliability knobs
    fail_fast_after: int
    error_backoff_min_ms: int
    error_backoff_max_ms: int


def engine_loop_config(cfg: "EngineConfig") -> EngineLoopConfig:
    error_backoff_min_ms = max(50, int(cfg.error_backoff_min_ms))
    return EngineLoopConfig(
        enabled=bool(cfg.loop_enabled),
        tick_ms=max(50, int(cfg.loop_tick_ms)),
        lock_path=str(cfg.lock_path),
        fail_fast_after=max(1, int(cfg.fail_fast_after)),
        error_backoff_min_ms=error_backoff_min_ms,
        error_backoff_max_ms=max(error_backoff_min_ms, int(cfg.error_backoff_max_ms)),
    )


class _FileLock:
    """Single-instance lock so several processes on one host don't all mint."""

    def __init__(self, path: str) -> None:
        self._path = path
        self._fh = None

    def acquire(self) -> bool:
        os.makedirs(os.path.dirname(self._path) or ".", exist_ok=True)
        try:
            fh = open(self._path, "a+", encoding="utf-8")
        except OSError:
            return False

        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            fh.close()
            return False

        self._fh = fh
        fh.seek(0)
        fh.truncate()
        fh.write(f"pid={os.getpid()}\n")
        fh.flush()
        return True

    def release(self) -> None:
        fh = self._fh
        self._fh = None
        if fh is None:
            return
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
        finally:
            fh.close()


class EngineLoop:
    """Background loop driving block minting and the recalculation queue.

    Each tick:
      - scheduler.tick(): finish an open block, else mint one when due
      - combat.refresh_expired_multipliers(): stale-mark power that outlived a badge
      - worker.run_once(): one batch of combat-power jobs

    Consecutive failures back off exponentially; after `fail_fast_after`
    the loop marks itself unhealthy and stops.
    """

    def __init__(
        self,
        *,
        scheduler: "MintBlockScheduler",
        worker: "RecalcWorker",
        cfg: EngineLoopConfig,
        combat: Optional["CombatPowerAggregator"] = None,
    ) -> None:
        self._scheduler = scheduler
        self._worker = worker
        self._combat = combat
        self._cfg = cfg

        self._lock = _FileLock(self._cfg.lock_path)
        self._t: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._started = False

        self._consecutive_failures = 0
        self._last_error: str = ""
        self._unhealthy = False

    @property
    def started(self) -> bool:
        return self._started

    @property
    def unhealthy(self) -> bool:
        return self._unhealthy

    def status(self) -> Json:
        return {
            "running": self._started and not self._stop.is_set(),
            "unhealthy": self._unhealthy,
            "consecutive_failures": self._consecutive_failures,
            "last_error": self._last_error,
        }

    def start(self) -> bool:
        if self._started:
            return True
        if not self._cfg.enabled:
            return False
        if not self._lock.acquire():
            log_event(log, "engine_loop_lock_busy", level=logging.WARNING, lock_path=self._cfg.lock_path)
            return False
        self._stop.clear()
        self._t = threading.Thread(target=self._run, name="mintpower-engine-loop", daemon=True)
        self._t.start()
        self._started = True
        inc_counter("engine_loop_start_total", 1)
        return True

    def stop(self) -> None:
        self._stop.set()
        t = self._t
        if t is not None:
            t.join(timeout=2.0)
        self._lock.release()
        self._started = False
        inc_counter("engine_loop_stop_total", 1)

    def wait(self, timeout: Optional[float] = None) -> None:
        t = self._t
        if t is not None:
            t.join(timeout=timeout)

    def _mark_error(self, *, where: str, err: Exception) -> None:
        self._consecutive_failures += 1
        self._last_error = f"{where}:{type(err).__name__}:{err}"

        inc_counter("engine_loop_errors_total", 1)
        set_gauge("engine_loop_consecutive_failures", self._consecutive_failures)

        log.exception("engine loop error (%s) failures=%s", where, self._consecutive_failures)

    def _clear_error(self) -> None:
        if self._consecutive_failures == 0 and not self._last_error:
            return
        self._consecutive_failures = 0
        self._last_error = ""
        set_gauge("engine_loop_consecutive_failures", 0)

    def _backoff_ms(self) -> int:
        n = max(1, int(self._consecutive_failures))
        base = int(self._cfg.error_backoff_min_ms)
        cap = int(self._cfg.error_backoff_max_ms)
        return min(cap, base * (2 ** min(10, n - 1)))

    def _trip_unhealthy_and_stop(self) -> None:
        self._unhealthy = True
        set_gauge("engine_loop_unhealthy", 1)
        inc_counter("engine_loop_failfast_total", 1)
        log.error(
            "engine loop fail-fast tripped: failures=%s last_error=%s",
            self._consecutive_failures,
            self._last_error,
        )
        self._stop.set()

    def tick(self) -> Json:
        """One iteration. Exceptions propagate to the caller."""
        inc_counter("engine_loop_ticks_total", 1)
        minted = self._scheduler.tick()
        expired = self._combat.refresh_expired_multipliers() if self._combat is not None else 0
        worked = self._worker.run_once()
        return {"scheduler": minted, "expired": expired, "worker": worked}

    def _run(self) -> None:
        tick_s = float(self._cfg.tick_ms) / 1000.0
        while not self._stop.is_set():
            try:
                res = self.tick()
                self._clear_error()
                if res["scheduler"].get("action") != "idle":
                    log_event(log, "engine_loop_tick", **res["scheduler"])
            except Exception as err:
                self._mark_error(where="tick", err=err)
                if self._consecutive_failures >= int(self._cfg.fail_fast_after):
                    self._trip_unhealthy_and_stop()
                    break
                self._stop.wait(float(self._backoff_ms()) / 1000.0)
                continue
            self._stop.wait(tick_s)
