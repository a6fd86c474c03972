from __future__ import annotations

import sqlite3

import pytest

from mintpower.runtime import metrics
from mintpower.runtime.engine_boot import Engine
from mintpower.runtime.errors import AlreadyDistributedError, NotFoundError, PersistenceError


def _open_block(engine: Engine, block_id: str = "blk1", number: int = 1) -> str:
    with engine.db.write_tx() as con:
        con.execute(
            "INSERT INTO mint_blocks(block_id, block_number, total_reward, created_ts_ms) VALUES(?, ?, 100, 1);",
            (block_id, number),
        )
    return block_id


def test_snapshot_captures_holdings_and_record_weights(engine: Engine) -> None:
    engine.register_participant("alice")
    engine.register_participant("bob", "alice")
    engine.credit("alice", 70, symbol="CAN", reason="deposit")
    engine.credit("alice", 99, symbol="USDT", reason="deposit")
    engine.weight_book.set_lp_weight("bob", 40)
    engine.credit("bob", 10, symbol="LAN", reason="deposit")
    engine.weight_book.record_burn("bob", "LAN", 4)
    engine.worker.drain()

    bid = _open_block(engine)
    assert engine.snapshotter.snapshot(bid) == 2

    a = engine.snapshotter.get(bid, "alice")
    assert (a.transaction_weight, a.lp_weight, a.burn_weight) == (70, 0, 0)
    b = engine.snapshotter.get(bid, "bob")
    assert (b.transaction_weight, b.lp_weight, b.burn_weight) == (6, 40, 4)
    assert b.total_weight == 50
    assert engine.snapshotter.totals(bid) == {"participants": 2, "total_weight": 120}


def test_snapshot_is_idempotent_per_participant(engine: Engine) -> None:
    engine.register_participant("alice")
    engine.credit("alice", 5, symbol="LAN", reason="deposit")
    bid = _open_block(engine)

    assert engine.snapshotter.snapshot(bid) == 1
    engine.credit("alice", 500, symbol="LAN", reason="deposit")
    assert engine.snapshotter.snapshot(bid) == 1

    # The first capture is kept.
    assert engine.snapshotter.get(bid, "alice").transaction_weight == 5
    assert metrics.counter("snapshot_rows_total") == 1


def test_one_failed_participant_does_not_stop_the_snapshot(engine: Engine, monkeypatch: pytest.MonkeyPatch) -> None:
    for pid in ("a", "b", "c"):
        engine.register_participant(pid)
        engine.credit(pid, 1, symbol="LAN", reason="deposit")
    bid = _open_block(engine)

    real = engine.weights.get_holdings_weight

    def _flaky(pid: str) -> int:
        if pid == "b":
            raise sqlite3.OperationalError("disk I/O error")
        return real(pid)

    monkeypatch.setattr(engine.weights, "get_holdings_weight", _flaky)

    assert engine.snapshotter.snapshot(bid) == 2
    assert engine.snapshotter.get(bid, "b") is None
    assert metrics.counter("snapshot_failures_total") == 1

    res = engine.distributor.distribute(bid)
    assert res.entries == 2
    assert {e.participant_id for e in engine.distributor.entries_for_block(bid)} == {"a", "c"}


def test_snapshot_rejects_unknown_or_distributed_block(engine: Engine) -> None:
    with pytest.raises(NotFoundError):
        engine.snapshotter.snapshot("missing")

    bid = _open_block(engine)
    engine.snapshotter.snapshot(bid)
    engine.distributor.distribute(bid)
    with pytest.raises(AlreadyDistributedError):
        engine.snapshotter.snapshot(bid)


def test_snapshot_pages_through_many_participants(make_cfg) -> None:
    from mintpower.engine.snapshotter import WeightSnapshotter
    from mintpower.runtime.engine_boot import build_engine

    engine = build_engine(make_cfg())
    for i in range(7):
        engine.register_participant(f"p{i}")
    snap = WeightSnapshotter(db=engine.db, forest=engine.forest, weights=engine.weights, page_size=3)
    bid = _open_block(engine)
    assert snap.snapshot(bid) == 7


def test_weight_source_error_skips_only_that_participant(engine: Engine, monkeypatch: pytest.MonkeyPatch) -> None:
    for pid in ("a", "b"):
        engine.register_participant(pid)
        engine.credit(pid, 3, symbol="LAN", reason="deposit")
    bid = _open_block(engine)

    real = engine.weights.get_holdings_weight

    def _unavailable(pid: str) -> int:
        if pid == "a":
            raise PersistenceError("holdings_unavailable")
        return real(pid)

    monkeypatch.setattr(engine.weights, "get_holdings_weight", _unavailable)

    assert engine.snapshotter.snapshot(bid) == 1
    assert engine.snapshotter.get(bid, "a") is None
    assert engine.snapshotter.get(bid, "b").transaction_weight == 3
    assert metrics.counter("snapshot_failures_total") == 1
