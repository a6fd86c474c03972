from __future__ import annotations

from pathlib import Path

from mintpower.runtime import metrics
from mintpower.runtime.engine_boot import Engine, build_engine
from mintpower.runtime.engine_loop import EngineLoop, EngineLoopConfig


def _loop_cfg(tmp_path: Path, **kw) -> EngineLoopConfig:
    base = dict(
        enabled=True,
        tick_ms=50,
        lock_path=str(tmp_path / "loop.lock"),
        fail_fast_after=2,
        error_backoff_min_ms=50,
        error_backoff_max_ms=100,
    )
    base.update(kw)
    return EngineLoopConfig(**base)


class _BrokenScheduler:
    def tick(self) -> dict:
        raise RuntimeError("scheduler down")


class _IdleWorker:
    def run_once(self) -> dict:
        return {"ok": True, "processed": 0}


def test_tick_mints_first_block_and_drains_jobs(engine: Engine) -> None:
    engine.register_participant("alice")
    engine.credit("alice", 10, symbol="LAN", reason="deposit")
    loop = engine.build_loop()

    res = loop.tick()
    assert res["scheduler"]["action"] == "minted"
    assert res["worker"]["done"] >= 1
    assert engine.scheduler.last_block().distributed is True

    # Next block is not due yet.
    assert loop.tick()["scheduler"]["action"] == "idle"
    assert metrics.counter("engine_loop_ticks_total") == 2


def test_only_one_loop_holds_the_lock(tmp_path: Path) -> None:
    cfg = _loop_cfg(tmp_path, tick_ms=60_000)
    a = EngineLoop(scheduler=_BrokenScheduler(), worker=_IdleWorker(), cfg=cfg)
    b = EngineLoop(scheduler=_BrokenScheduler(), worker=_IdleWorker(), cfg=cfg)
    try:
        assert a.start() is True
        assert b.start() is False
    finally:
        a.stop()
        b.stop()


def test_disabled_loop_does_not_start(tmp_path: Path) -> None:
    loop = EngineLoop(scheduler=_BrokenScheduler(), worker=_IdleWorker(), cfg=_loop_cfg(tmp_path, enabled=False))
    assert loop.start() is False
    assert loop.started is False


def test_repeated_failures_trip_fail_fast(tmp_path: Path) -> None:
    loop = EngineLoop(scheduler=_BrokenScheduler(), worker=_IdleWorker(), cfg=_loop_cfg(tmp_path))
    assert loop.start() is True
    loop.wait(timeout=10.0)
    try:
        assert loop.unhealthy is True
        st = loop.status()
        assert st["consecutive_failures"] == 2
        assert "scheduler down" in st["last_error"]
        assert metrics.counter("engine_loop_failfast_total") == 1
    finally:
        loop.stop()


class _Clock:
    def __init__(self, start: int) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now


def test_tick_recalculates_power_once_a_multiplier_expires(make_cfg) -> None:
    clock = _Clock(1_000)
    engine = build_engine(make_cfg(), clock_ms=clock)
    engine.register_participant("p")
    engine.credit("p", 10, symbol="LAN", reason="deposit")
    engine.weight_book.grant_multiplier("p", 2, expires_ts_ms=2_000)
    loop = engine.build_loop()

    assert loop.tick()["expired"] == 0
    assert engine.combat.get_record("p").personal_power == 20

    clock.now = 5_000
    res = loop.tick()
    assert res["expired"] == 1
    assert res["scheduler"]["action"] == "idle"
    assert engine.combat.get_record("p").personal_power == 10
