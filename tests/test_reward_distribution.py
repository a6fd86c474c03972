from __future__ import annotations

from typing import Dict

import pytest

from mintpower.engine.distributor import compute_shares
from mintpower.runtime import metrics
from mintpower.runtime.engine_boot import Engine
from mintpower.runtime.errors import AlreadyDistributedError, NotFoundError


def _seed(engine: Engine, holdings: Dict[str, int]) -> None:
    for pid, amount in holdings.items():
        engine.register_participant(pid)
        if amount:
            engine.credit(pid, amount, symbol="LAN", reason="deposit")


def _open_block(engine: Engine, reward: int, number: int = 1) -> str:
    block_id = f"blk{number}"
    with engine.db.write_tx() as con:
        con.execute(
            "INSERT INTO mint_blocks(block_id, block_number, total_reward, created_ts_ms) VALUES(?, ?, ?, ?);",
            (block_id, number, reward, 1),
        )
    return block_id


def test_reward_of_600_splits_100_200_300(engine: Engine) -> None:
    _seed(engine, {"alice": 100, "bob": 200, "carol": 300})
    block = engine.scheduler.create_block(600)

    assert block.block_number == 1
    assert block.distributed is True

    amounts = {e.participant_id: e.amount for e in engine.distributor.entries_for_block(block.block_id)}
    assert amounts == {"alice": 100, "bob": 200, "carol": 300}
    assert all(not e.claimed for e in engine.distributor.entries_for_block(block.block_id))

    with pytest.raises(AlreadyDistributedError):
        engine.distributor.distribute(block.block_id)


def test_second_distribute_does_not_duplicate_entries(engine: Engine) -> None:
    _seed(engine, {"a": 5, "b": 7})
    bid = _open_block(engine, 1_000)
    engine.snapshotter.snapshot(bid)

    first = engine.distributor.distribute(bid)
    assert first.entries == 2

    with pytest.raises(AlreadyDistributedError) as ei:
        engine.distributor.distribute(bid)
    assert ei.value.code == "already_distributed"
    assert ei.value.retryable is False
    assert len(engine.distributor.entries_for_block(bid)) == 2


def test_conservation_and_floor_rounding(engine: Engine) -> None:
    weights = {"p1": 1, "p2": 3, "p3": 7, "p4": 11, "p5": 13, "p6": 17, "p7": 19}
    _seed(engine, weights)
    total = 1_000
    bid = _open_block(engine, total)
    engine.snapshotter.snapshot(bid)
    res = engine.distributor.distribute(bid)

    entries = engine.distributor.entries_for_block(bid)
    paid = sum(e.amount for e in entries)
    w_sum = sum(weights.values())

    assert paid <= total
    assert total - paid < len(entries)
    assert res.residue == total - paid
    assert engine.distributor.block_total(bid) == paid
    for e in entries:
        assert e.amount == total * weights[e.participant_id] // w_sum
        assert e.weight_value == weights[e.participant_id]
    assert metrics.counter("reward_residue_forfeited_units_total") == total - paid


def test_zero_weight_participant_gets_zero_entry(engine: Engine) -> None:
    _seed(engine, {"rich": 50, "idle": 0})
    block = engine.scheduler.create_block(500)

    entries = {e.participant_id: e for e in engine.distributor.entries_for_block(block.block_id)}
    assert entries["rich"].amount == 500
    assert entries["idle"].amount == 0

    res = engine.claims.claim("idle", [entries["idle"].entry_id])
    assert res.amount == 0
    assert res.outcomes[entries["idle"].entry_id] == "claimed"


def test_zero_total_weight_forfeits_pool(engine: Engine) -> None:
    _seed(engine, {"a": 0, "b": 0})
    block = engine.scheduler.create_block(900)

    assert block.distributed is True
    assert engine.distributor.entries_for_block(block.block_id) == []
    assert metrics.counter("reward_pools_forfeited_total") == 1


def test_distribute_unknown_block(engine: Engine) -> None:
    with pytest.raises(NotFoundError):
        engine.distributor.distribute("nope")


def test_compute_shares_rejects_negative_inputs() -> None:
    with pytest.raises(ValueError):
        compute_shares(-1, [("a", 1)])
    with pytest.raises(ValueError):
        compute_shares(10, [("a", -1)])
    assert compute_shares(10, [("a", 0), ("b", 0)]) == [("a", 0, 0), ("b", 0, 0)]
    assert compute_shares(10, [("a", 1), ("b", 2)]) == [("a", 1, 3), ("b", 2, 6)]
