# src/mintpower/runtime/engine_boot.py

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional

from mintpower.engine.claims import ClaimLedger
from mintpower.engine.combat import CombatPowerAggregator
from mintpower.engine.distributor import RewardDistributor
from mintpower.engine.scheduler import MintBlockScheduler
from mintpower.engine.snapshotter import WeightSnapshotter
from mintpower.ledger.balances import SqliteBalanceLedger
from mintpower.ledger.forest import SqliteReferralForest
from mintpower.ledger.weights import SqliteMultiplierSource, SqliteWeightSource, WeightBook
from mintpower.runtime.config import EngineConfig, load_engine_config
from mintpower.runtime.engine_loop import EngineLoop, engine_loop_config
from mintpower.runtime.recalc_worker import RecalcQueue, RecalcQueueConfig, RecalcWorker
from mintpower.runtime.sqlite_db import SqliteDB


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Engine:
    cfg: EngineConfig
    db: SqliteDB
    balances: SqliteBalanceLedger
    forest: SqliteReferralForest
    weights: SqliteWeightSource
    multipliers: SqliteMultiplierSource
    weight_book: WeightBook
    queue: RecalcQueue
    combat: CombatPowerAggregator
    worker: RecalcWorker
    snapshotter: WeightSnapshotter
    distributor: RewardDistributor
    scheduler: MintBlockScheduler
    claims: ClaimLedger

    def register_participant(self, participant_id: str, inviter_id: Optional[str] = None) -> None:
        """Add a forest edge and zero-initialize the participant's power record."""
        self.forest.register(participant_id, inviter_id)
        self.combat.on_participant_joined(participant_id)

    def credit(self, participant_id: str, amount: int, *, symbol: str, reason: str, ref: Optional[str] = None) -> int:
        """Balance credit that keeps combat power in step when a power symbol moves."""
        new_balance = self.balances.credit(participant_id, amount, symbol=symbol, reason=reason, ref=ref)
        if symbol in self.weights.power_symbols:
            self.combat.mark_stale(participant_id)
        return new_balance

    def debit(self, participant_id: str, amount: int, *, symbol: str, reason: str, ref: Optional[str] = None) -> int:
        new_balance = self.balances.debit(participant_id, amount, symbol=symbol, reason=reason, ref=ref)
        if symbol in self.weights.power_symbols:
            self.combat.mark_stale(participant_id)
        return new_balance

    def build_loop(self) -> EngineLoop:
        return EngineLoop(
            scheduler=self.scheduler,
            worker=self.worker,
            cfg=engine_loop_config(self.cfg),
            combat=self.combat,
        )


def build_engine(
    cfg: Optional[EngineConfig] = None,
    *,
    init_schema: bool = True,
    clock_ms: Optional[Callable[[], int]] = None,
) -> Engine:
    """Wire every component from one config.

    Fixed references (reward symbol, power symbols, depth guard) are read
    here once and handed to the components that need them. `clock_ms`
    replaces wall-clock time for block timing and multiplier expiry.
    """
    c = cfg or load_engine_config()
    clock = clock_ms or _now_ms
    db = SqliteDB(path=c.db_path)
    if init_schema:
        db.init_schema()

    balances = SqliteBalanceLedger(db=db)
    forest = SqliteReferralForest(db=db, max_depth=c.max_ancestor_depth)
    weights = SqliteWeightSource(db=db, power_symbols=c.power_symbols)
    multipliers = SqliteMultiplierSource(db=db, clock_ms=clock)
    queue = RecalcQueue(
        db=db,
        cfg=RecalcQueueConfig(
            max_attempts=c.recalc_max_attempts,
            backoff_base_ms=c.recalc_backoff_base_ms,
            backoff_cap_ms=c.recalc_backoff_cap_ms,
        ),
    )
    combat = CombatPowerAggregator(
        db=db,
        forest=forest,
        weights=weights,
        multipliers=multipliers,
        max_depth=c.max_ancestor_depth,
        queue=queue,
    )
    weight_book = WeightBook(db=db, balances=balances, on_change=combat.mark_stale)
    snapshotter = WeightSnapshotter(db=db, forest=forest, weights=weights)
    distributor = RewardDistributor(db=db)
    scheduler = MintBlockScheduler(
        db=db,
        snapshotter=snapshotter,
        distributor=distributor,
        interval_ms=c.mint_interval_ms,
        block_reward=c.block_reward,
        clock_ms=clock,
    )
    return Engine(
        cfg=c,
        db=db,
        balances=balances,
        forest=forest,
        weights=weights,
        multipliers=multipliers,
        weight_book=weight_book,
        queue=queue,
        combat=combat,
        worker=RecalcWorker(queue=queue, aggregator=combat, batch_size=c.recalc_batch_size),
        snapshotter=snapshotter,
        distributor=distributor,
        scheduler=scheduler,
        claims=ClaimLedger(
            db=db,
            balances=balances,
            reward_symbol=c.reward_symbol,
            on_credit=combat.mark_stale if c.reward_symbol in weights.power_symbols else None,
        ),
    )
