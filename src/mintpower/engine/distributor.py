# src/mintpower/engine/distributor.py
from __future__ import annotations

"""Proportional division of a block's reward pool over its weight snapshots.

share_i = total_reward * w_i // W, floored to the minimum unit. The floor
residue (strictly less than one unit per participant) is forfeited, never
carried into the next block. A block whose snapshots sum to zero weight is
marked distributed with no entries: its pool is forfeited.
"""

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence, Tuple

from mintpower.engine.models import RewardEntry, WeightSnapshot
from mintpower.runtime.errors import AlreadyDistributedError, NotFoundError
from mintpower.runtime.metrics import inc_counter
from mintpower.runtime.sqlite_db import SqliteDB
from mintpower.runtime.structured_logging import log_event

log = logging.getLogger("mintpower.engine.distributor")

Json = Dict[str, Any]


def _now_ms() -> int:
    return int(time.time() * 1000)


def compute_shares(total_reward: int, weights: Sequence[Tuple[str, int]]) -> List[Tuple[str, int, int]]:
    """Return (participant_id, weight, share) for every weight, floored.

    Zero-weight participants get a zero share. If the weights sum to zero,
    every share is zero.
    """
    total = int(total_reward)
    if total < 0:
        raise ValueError(f"total_reward must be >= 0; got {total_reward}")
    w_sum = 0
    for _, w in weights:
        if int(w) < 0:
            raise ValueError(f"weight must be >= 0; got {w}")
        w_sum += int(w)
    if w_sum == 0:
        return [(pid, int(w), 0) for pid, w in weights]
    return [(pid, int(w), total * int(w) // w_sum) for pid, w in weights]


@dataclass(frozen=True)
class DistributionResult:
    block_id: str
    total_reward: int
    total_weight: int
    entries: int
    distributed_amount: int

    @property
    def residue(self) -> int:
        return self.total_reward - self.distributed_amount

    @property
    def forfeited(self) -> bool:
        return self.total_weight == 0

    def to_dict(self) -> Json:
        return {
            "block_id": self.block_id,
            "total_reward": self.total_reward,
            "total_weight": self.total_weight,
            "entries": self.entries,
            "distributed_amount": self.distributed_amount,
            "residue": self.residue,
        }


class RewardDistributor:
    def __init__(self, *, db: SqliteDB) -> None:
        self._db = db

    def distribute(self, block_id: str) -> DistributionResult:
        """Turn the block's snapshots into unclaimed reward entries and mark it distributed.

        Runs in one transaction; the distributed flag flips with a conditional
        update, so a second run (or a concurrent one) raises
        AlreadyDistributedError and writes nothing.
        """
        bid = str(block_id)
        now = _now_ms()
        with self._db.write_tx() as con:
            block = con.execute(
                "SELECT total_reward, distributed FROM mint_blocks WHERE block_id=?;",
                (bid,),
            ).fetchone()
            if block is None:
                raise NotFoundError("unknown_block", {"block_id": bid})
            if int(block["distributed"]) != 0:
                raise AlreadyDistributedError("block_already_distributed", {"block_id": bid})

            total_reward = int(block["total_reward"])
            rows = con.execute(
                "SELECT * FROM weight_snapshots WHERE block_id=? ORDER BY participant_id;",
                (bid,),
            ).fetchall()
            snaps = [WeightSnapshot.from_row(r) for r in rows]
            shares = compute_shares(total_reward, [(s.participant_id, s.total_weight) for s in snaps])
            total_weight = sum(w for _, w, _ in shares)

            created = 0
            paid = 0
            if total_weight > 0:
                for pid, weight, amount in shares:
                    cur = con.execute(
                        """
                        INSERT OR IGNORE INTO reward_entries(
                          entry_id, participant_id, block_id, amount, weight_value, claimed, claimed_ts_ms, created_ts_ms
                        ) VALUES(?, ?, ?, ?, ?, 0, NULL, ?);
                        """,
                        (uuid.uuid4().hex, pid, bid, amount, weight, now),
                    )
                    if cur.rowcount == 1:
                        created += 1
                        paid += amount

            cur = con.execute(
                "UPDATE mint_blocks SET distributed=1, distributed_ts_ms=? WHERE block_id=? AND distributed=0;",
                (now, bid),
            )
            if cur.rowcount != 1:
                raise AlreadyDistributedError("block_already_distributed", {"block_id": bid})

        result = DistributionResult(
            block_id=bid,
            total_reward=total_reward,
            total_weight=total_weight,
            entries=created,
            distributed_amount=paid,
        )
        inc_counter("reward_entries_created_total", created)
        inc_counter("reward_residue_forfeited_units_total", result.residue)
        if result.forfeited:
            inc_counter("reward_pools_forfeited_total", 1)
            log_event(log, "reward_pool_forfeited", level=logging.WARNING, block_id=bid, total_reward=total_reward)
        log_event(log, "block_distributed", **result.to_dict())
        return result

    def entries_for_block(self, block_id: str) -> List[RewardEntry]:
        with self._db.connection() as con:
            rows = con.execute(
                "SELECT * FROM reward_entries WHERE block_id=? ORDER BY participant_id;",
                (str(block_id),),
            ).fetchall()
        return [RewardEntry.from_row(r) for r in rows]

    def block_total(self, block_id: str) -> int:
        """Sum of entry amounts for the block."""
        with self._db.connection() as con:
            row = con.execute(
                "SELECT COALESCE(SUM(amount), 0) FROM reward_entries WHERE block_id=?;",
                (str(block_id),),
            ).fetchone()
        return int(row[0])
