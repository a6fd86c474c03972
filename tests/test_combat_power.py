from __future__ import annotations

import threading
from decimal import Decimal

import pytest

from mintpower.engine.models import STATE_CURRENT, STATE_STALE
from mintpower.runtime import metrics
from mintpower.runtime.engine_boot import Engine, build_engine
from mintpower.runtime.errors import NotFoundError


def _chain(engine: Engine, *ids: str) -> None:
    """Register ids so each one is invited by the previous."""
    inviter = None
    for pid in ids:
        engine.register_participant(pid, inviter)
        inviter = pid
    engine.worker.drain()


def _assert_team_consistent(engine: Engine) -> None:
    for pid in engine.forest.iter_participants():
        stats = engine.combat.compute_team_stats(pid)
        members = list(engine.forest.get_downline(pid))
        expected = sum(engine.combat.get_record(m).personal_power for m in members)
        assert stats.team_power == expected
        assert engine.combat.get_record(pid).team_power == expected, pid


def test_new_participant_has_zero_record(engine: Engine) -> None:
    engine.register_participant("root")
    rec = engine.combat.get_record("root")
    assert rec.personal_power == 0
    assert rec.team_power == 0
    assert rec.state == STATE_CURRENT


def test_personal_power_sums_weights_and_applies_multipliers(engine: Engine) -> None:
    engine.register_participant("p")
    engine.credit("p", 100, symbol="LAN", reason="deposit")
    engine.credit("p", 30, symbol="CAN", reason="deposit")
    engine.credit("p", 999, symbol="USDT", reason="deposit")  # not a power symbol
    engine.weight_book.record_burn("p", "CAN", 30)
    engine.weight_book.set_lp_weight("p", 50)
    engine.weight_book.grant_multiplier("p", "1.5")
    engine.weight_book.grant_multiplier("p", 2)
    engine.worker.drain()

    assert engine.multipliers.get_active_multiplier("p") == Decimal("3.0")
    rec = engine.combat.get_record("p")
    # (100 LAN + 0 CAN + 50 LP + 30 burn) * 3
    assert rec.personal_power == 540
    assert rec.lp_weight == 50
    assert rec.burn_weight == 30
    assert rec.state == STATE_CURRENT


def test_expired_multiplier_is_ignored(engine: Engine) -> None:
    engine.register_participant("p")
    engine.credit("p", 10, symbol="LAN", reason="deposit")
    engine.weight_book.grant_multiplier("p", 5, expires_ts_ms=1)
    engine.worker.drain()
    assert engine.combat.get_record("p").personal_power == 10


def test_mark_stale_then_worker_recalculates(engine: Engine) -> None:
    engine.register_participant("p")
    engine.worker.drain()
    engine.balances.credit("p", 42, symbol="LAN", reason="deposit")
    engine.combat.mark_stale("p")
    assert engine.combat.get_record("p").state == STATE_STALE

    engine.worker.drain()
    rec = engine.combat.get_record("p")
    assert rec.state == STATE_CURRENT
    assert rec.personal_power == 42


def test_delta_propagates_to_every_ancestor(engine: Engine) -> None:
    _chain(engine, "root", "a", "b", "c")
    engine.credit("c", 100, symbol="LAN", reason="deposit")
    engine.worker.drain()

    assert engine.combat.get_record("b").team_power == 100
    assert engine.combat.get_record("a").team_power == 100
    assert engine.combat.get_record("root").team_power == 100
    assert engine.combat.get_record("c").team_power == 0

    engine.debit("c", 40, symbol="LAN", reason="withdraw")
    engine.worker.drain()
    assert engine.combat.get_record("root").team_power == 60
    _assert_team_consistent(engine)


def test_team_stats_from_scratch(engine: Engine) -> None:
    _chain(engine, "root", "a", "a1")
    engine.register_participant("b", "root")
    engine.register_participant("b1", "b")
    engine.register_participant("b2", "b")
    for pid, amount in {"a": 1, "a1": 2, "b": 4, "b1": 8, "b2": 16}.items():
        engine.credit(pid, amount, symbol="LAN", reason="deposit")
    engine.worker.drain()

    stats = engine.combat.recalculate_team_stats("root")
    assert stats.team_power == 31
    assert stats.team_members == 5
    assert stats.direct_referrals == 2
    assert engine.combat.get_team_stats("root") == stats

    b = engine.combat.recalculate_team_stats("b")
    assert (b.team_power, b.team_members, b.direct_referrals) == (24, 2, 2)
    _assert_team_consistent(engine)


def test_joining_refreshes_inviter_team_stats(engine: Engine) -> None:
    engine.register_participant("root")
    engine.register_participant("kid", "root")
    assert engine.queue.get("team_stats:root") is not None

    engine.worker.drain()
    stats = engine.combat.get_team_stats("root")
    assert stats is not None
    assert stats.team_members == 1
    assert stats.direct_referrals == 1


def test_recalculate_team_stats_corrects_drift(engine: Engine) -> None:
    _chain(engine, "root", "a")
    engine.credit("a", 10, symbol="LAN", reason="deposit")
    engine.worker.drain()

    with engine.db.write_tx() as con:
        con.execute("UPDATE combat_power SET team_power=999 WHERE participant_id='root';")

    engine.combat.recalculate_team_stats("root")
    assert engine.combat.get_record("root").team_power == 10
    assert metrics.counter("combat_team_drift_corrected_total") == 1


def test_reconcile_is_resumable(engine: Engine) -> None:
    _chain(engine, "p1", "p2", "p3", "p4", "p5")
    engine.credit("p5", 7, symbol="LAN", reason="deposit")
    engine.worker.drain()
    with engine.db.write_tx() as con:
        con.execute("UPDATE combat_power SET team_power=0;")

    first = engine.combat.reconcile(batch_size=2, max_participants=2)
    assert first["done"] is False
    assert first["processed"] == 2
    assert first["cursor"] == "p2"
    assert engine.db.get_meta("reconcile_cursor") == "p2"
    assert engine.combat.get_record("p3").team_power == 0

    second = engine.combat.reconcile(batch_size=2)
    assert second["done"] is True
    assert second["processed"] == 3
    assert engine.db.get_meta("reconcile_cursor") == ""
    _assert_team_consistent(engine)


def test_reconcile_stops_when_cancelled(engine: Engine) -> None:
    _chain(engine, "p1", "p2")
    cancel = threading.Event()
    cancel.set()
    res = engine.combat.reconcile(batch_size=10, cancel=cancel)
    assert res["done"] is False
    assert res["processed"] == 0


def test_propagation_respects_depth_guard(make_cfg) -> None:
    engine = build_engine(make_cfg(max_ancestor_depth=2))
    _chain(engine, "r", "a", "b", "c")
    engine.credit("c", 5, symbol="LAN", reason="deposit")
    engine.worker.drain()

    assert engine.combat.get_record("b").team_power == 5
    assert engine.combat.get_record("a").team_power == 5
    assert engine.combat.get_record("r").team_power == 0
    assert metrics.counter("forest_depth_guard_total") >= 1


def test_unknown_participant(engine: Engine) -> None:
    with pytest.raises(NotFoundError):
        engine.combat.get_record("ghost")
    with pytest.raises(NotFoundError):
        engine.combat.mark_stale("ghost")
    with pytest.raises(NotFoundError):
        engine.combat.recalculate_team_stats("ghost")


class _Clock:
    def __init__(self, start: int) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now


def test_reconcile_drops_multiplier_after_it_expires(make_cfg) -> None:
    clock = _Clock(1_000)
    engine = build_engine(make_cfg(), clock_ms=clock)
    _chain(engine, "root", "p")
    engine.credit("p", 10, symbol="LAN", reason="deposit")
    engine.weight_book.grant_multiplier("p", 3, expires_ts_ms=2_000)
    engine.worker.drain()
    assert engine.combat.get_record("p").personal_power == 30
    assert engine.combat.get_record("root").team_power == 30

    clock.now = 5_000
    res = engine.combat.reconcile(batch_size=10)
    assert res["expired"] == 1
    engine.worker.drain()

    assert engine.combat.get_record("p").personal_power == 10
    assert engine.combat.get_record("root").team_power == 10
    assert metrics.counter("combat_multiplier_expired_total") == 1
    # The expiry is accounted for now; a second sweep finds nothing.
    assert engine.combat.refresh_expired_multipliers() == 0
    _assert_team_consistent(engine)
