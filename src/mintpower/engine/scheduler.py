# src/mintpower/engine/scheduler.py
from __future__ import annotations

import logging
import sqlite3
import time
import uuid
from typing import Any, Callable, Dict, Optional, Tuple

from mintpower.engine.distributor import DistributionResult, RewardDistributor
from mintpower.engine.models import MintBlock
from mintpower.engine.snapshotter import WeightSnapshotter
from mintpower.runtime.errors import BlockCreationError, EngineError, NotFoundError, PersistenceError
from mintpower.runtime.metrics import inc_counter, set_gauge
from mintpower.runtime.sqlite_db import SqliteDB
from mintpower.runtime.structured_logging import log_event

log = logging.getLogger("mintpower.engine.scheduler")

Json = Dict[str, Any]


def _now_ms() -> int:
    return int(time.time() * 1000)


class MintBlockScheduler:
    """Owns the mint block lifecycle: open -> snapshotted -> distributed.

    A block is due `interval_ms` after the previous block's creation. Block
    numbers are allocated inside the insert transaction; the UNIQUE
    block_number constraint rejects any writer that slips past it.
    """

    def __init__(
        self,
        *,
        db: SqliteDB,
        snapshotter: WeightSnapshotter,
        distributor: RewardDistributor,
        interval_ms: int,
        block_reward: int,
        clock_ms: Callable[[], int] = _now_ms,
    ) -> None:
        if int(interval_ms) <= 0:
            raise ValueError(f"interval_ms must be > 0; got {interval_ms}")
        if int(block_reward) < 0:
            raise ValueError(f"block_reward must be >= 0; got {block_reward}")
        self._db = db
        self._snapshotter = snapshotter
        self._distributor = distributor
        self._interval_ms = int(interval_ms)
        self._block_reward = int(block_reward)
        self._clock_ms = clock_ms

    @property
    def interval_ms(self) -> int:
        return self._interval_ms

    def last_block(self) -> Optional[MintBlock]:
        with self._db.connection() as con:
            row = con.execute("SELECT * FROM mint_blocks ORDER BY block_number DESC LIMIT 1;").fetchone()
        return None if row is None else MintBlock.from_row(row)

    def open_block(self) -> Optional[MintBlock]:
        with self._db.connection() as con:
            row = con.execute(
                "SELECT * FROM mint_blocks WHERE distributed=0 ORDER BY block_number ASC LIMIT 1;"
            ).fetchone()
        return None if row is None else MintBlock.from_row(row)

    def get_block(self, block_id: str) -> Optional[MintBlock]:
        with self._db.connection() as con:
            row = con.execute("SELECT * FROM mint_blocks WHERE block_id=?;", (str(block_id),)).fetchone()
        return None if row is None else MintBlock.from_row(row)

    def current_block(self) -> Tuple[Optional[MintBlock], int]:
        """(open block or None, ms until the next block is due). Never negative."""
        last = self.last_block()
        if last is None:
            return None, self._interval_ms
        remaining = last.created_ts_ms + self._interval_ms - int(self._clock_ms())
        return self.open_block(), max(0, remaining)

    def is_due(self) -> bool:
        last = self.last_block()
        return last is None or int(self._clock_ms()) >= last.created_ts_ms + self._interval_ms

    def create_block(self, total_reward: Optional[int] = None) -> MintBlock:
        """Persist the next block, then snapshot and distribute it.

        Raises BlockCreationError when the row cannot be written. A failure
        after the row exists (snapshot or distribution) is logged and the
        block stays open for `finish_open_block` to retry.
        """
        reward = self._block_reward if total_reward is None else int(total_reward)
        if reward < 0:
            raise BlockCreationError("negative_reward", {"total_reward": reward})

        block_id = uuid.uuid4().hex
        now = int(self._clock_ms())
        try:
            with self._db.write_tx() as con:
                row = con.execute("SELECT MAX(block_number) FROM mint_blocks;").fetchone()
                number = (int(row[0]) if row[0] is not None else 0) + 1
                con.execute(
                    """
                    INSERT INTO mint_blocks(block_id, block_number, total_reward, created_ts_ms, distributed, distributed_ts_ms)
                    VALUES(?, ?, ?, ?, 0, NULL);
                    """,
                    (block_id, number, reward, now),
                )
        except sqlite3.IntegrityError as e:
            inc_counter("block_create_failures_total", 1)
            raise BlockCreationError("duplicate_block_number", {"error": str(e)}) from e
        except (sqlite3.Error, PersistenceError) as e:
            inc_counter("block_create_failures_total", 1)
            raise BlockCreationError("persist_failed", {"error": f"{type(e).__name__}:{e}"}) from e

        inc_counter("blocks_minted_total", 1)
        set_gauge("last_block_number", number)
        log_event(log, "block_created", block_id=block_id, block_number=number, total_reward=reward)

        try:
            self._settle(block_id)
        except (EngineError, sqlite3.Error) as e:
            inc_counter("block_settle_failures_total", 1)
            log_event(
                log,
                "block_settle_failed",
                level=logging.ERROR,
                block_id=block_id,
                block_number=number,
                error=f"{type(e).__name__}:{e}",
            )

        block = self.get_block(block_id)
        if block is None:
            raise NotFoundError("unknown_block", {"block_id": block_id})
        return block

    def _settle(self, block_id: str) -> DistributionResult:
        # Snapshot must finish before distribution reads it.
        count = self._snapshotter.snapshot(block_id)
        result = self._distributor.distribute(block_id)
        log_event(log, "block_settled", block_id=block_id, snapshots=count, entries=result.entries)
        return result

    def finish_open_block(self) -> Optional[DistributionResult]:
        """Snapshot and distribute the oldest undistributed block, if any."""
        block = self.open_block()
        if block is None:
            return None
        log_event(log, "block_resume", block_id=block.block_id, block_number=block.block_number)
        return self._settle(block.block_id)

    def tick(self) -> Json:
        """One scheduling step: finish an open block, else mint one if due."""
        block = self.open_block()
        if block is not None:
            result = self.finish_open_block()
            return {"action": "finished", "block_id": block.block_id, "entries": 0 if result is None else result.entries}
        if self.is_due():
            created = self.create_block()
            return {"action": "minted", "block_id": created.block_id, "block_number": created.block_number}
        _, remaining = self.current_block()
        return {"action": "idle", "time_remaining_ms": remaining}
