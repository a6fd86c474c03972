# src/mintpower/engine/snapshotter.py
from __future__ import annotations

import logging
import sqlite3
import time
from typing import Dict, List, Optional

from mintpower.engine.models import WeightSnapshot
from mintpower.ledger.interfaces import ReferralForest, WeightSource
from mintpower.runtime.errors import AlreadyDistributedError, EngineError, NotFoundError
from mintpower.runtime.metrics import inc_counter
from mintpower.runtime.sqlite_db import SqliteDB
from mintpower.runtime.structured_logging import log_event

log = logging.getLogger("mintpower.engine.snapshotter")


def _now_ms() -> int:
    return int(time.time() * 1000)


class WeightSnapshotter:
    """Captures every participant's weight components for one block.

    Holdings come from the weight source; LP and burn weight come from the
    participant's combat-power record, which is what the power score was
    last computed from. One short transaction per participant: a failed row
    is logged and skipped, the rest of the forest still gets snapshotted.
    """

    def __init__(
        self,
        *,
        db: SqliteDB,
        forest: ReferralForest,
        weights: WeightSource,
        page_size: int = 500,
    ) -> None:
        self._db = db
        self._forest = forest
        self._weights = weights
        self._page_size = max(1, int(page_size))

    def _require_open_block(self, block_id: str) -> None:
        with self._db.connection() as con:
            row = con.execute("SELECT distributed FROM mint_blocks WHERE block_id=?;", (block_id,)).fetchone()
        if row is None:
            raise NotFoundError("unknown_block", {"block_id": block_id})
        if int(row["distributed"]) != 0:
            raise AlreadyDistributedError("block_already_distributed", {"block_id": block_id})

    def _record_weights(self, participant_id: str) -> tuple[int, int]:
        with self._db.connection() as con:
            row = con.execute(
                "SELECT lp_weight, burn_weight FROM combat_power WHERE participant_id=?;",
                (participant_id,),
            ).fetchone()
        if row is None:
            return 0, 0
        return int(row["lp_weight"]), int(row["burn_weight"])

    def _snapshot_one(self, block_id: str, participant_id: str) -> bool:
        """Returns True when a new row was written, False when one already existed."""
        holdings = int(self._weights.get_holdings_weight(participant_id))
        lp, burn = self._record_weights(participant_id)
        with self._db.write_tx() as con:
            cur = con.execute(
                """
                INSERT OR IGNORE INTO weight_snapshots(
                  participant_id, block_id, transaction_weight, lp_weight, burn_weight, created_ts_ms
                ) VALUES(?, ?, ?, ?, ?, ?);
                """,
                (participant_id, block_id, holdings, lp, burn, _now_ms()),
            )
            return cur.rowcount == 1

    def snapshot(self, block_id: str) -> int:
        """Snapshot all participants for `block_id`.

        Idempotent per participant: re-running after an interruption only
        fills the gaps. Returns the number of participants holding a
        snapshot for the block afterwards.
        """
        bid = str(block_id)
        self._require_open_block(bid)

        written = 0
        existing = 0
        failed = 0
        cursor: Optional[str] = None
        while True:
            page: List[str] = list(self._forest.iter_participants(after=cursor, limit=self._page_size))
            if not page:
                break
            for pid in page:
                try:
                    if self._snapshot_one(bid, pid):
                        written += 1
                    else:
                        existing += 1
                except (sqlite3.Error, EngineError, ValueError) as e:
                    failed += 1
                    inc_counter("snapshot_failures_total", 1)
                    log_event(
                        log,
                        "snapshot_participant_failed",
                        level=logging.ERROR,
                        block_id=bid,
                        participant_id=pid,
                        error=f"{type(e).__name__}:{e}",
                    )
            cursor = page[-1]

        inc_counter("snapshot_rows_total", written)
        log_event(log, "block_snapshotted", block_id=bid, written=written, existing=existing, failed=failed)
        return written + existing

    def load(self, block_id: str) -> List[WeightSnapshot]:
        with self._db.connection() as con:
            rows = con.execute(
                "SELECT * FROM weight_snapshots WHERE block_id=? ORDER BY participant_id;",
                (str(block_id),),
            ).fetchall()
        return [WeightSnapshot.from_row(r) for r in rows]

    def get(self, block_id: str, participant_id: str) -> Optional[WeightSnapshot]:
        with self._db.connection() as con:
            row = con.execute(
                "SELECT * FROM weight_snapshots WHERE block_id=? AND participant_id=?;",
                (str(block_id), str(participant_id)),
            ).fetchone()
        return None if row is None else WeightSnapshot.from_row(row)

    def totals(self, block_id: str) -> Dict[str, int]:
        with self._db.connection() as con:
            row = con.execute(
                """
                SELECT COUNT(*) AS n,
                       COALESCE(SUM(transaction_weight + lp_weight + burn_weight), 0) AS w
                FROM weight_snapshots WHERE block_id=?;
                """,
                (str(block_id),),
            ).fetchone()
        return {"participants": int(row["n"]), "total_weight": int(row["w"])}
