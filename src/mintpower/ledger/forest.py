# src/mintpower/ledger/forest.py
from __future__ import annotations

"""Referral forest: each participant has at most one inviter.

The traversal helpers are plain functions over lookup callables so the
aggregation logic can be exercised without a database. Both walks carry a
visited set; a cycle in stored data ends the walk instead of looping.
"""

import logging
import time
from collections import deque
from typing import Callable, Iterable, Iterator, List, Optional, Tuple

from mintpower.runtime.errors import InvalidParticipantError, NotFoundError
from mintpower.runtime.metrics import inc_counter
from mintpower.runtime.sqlite_db import SqliteDB
from mintpower.runtime.structured_logging import log_event

log = logging.getLogger("mintpower.ledger.forest")


def _now_ms() -> int:
    return int(time.time() * 1000)


def walk_ancestors(
    start: str,
    get_inviter: Callable[[str], Optional[str]],
    *,
    max_depth: int,
) -> Iterator[Tuple[int, str]]:
    """Yield (depth, ancestor) from the inviter of `start` up to a root.

    Depth 1 is the direct inviter. Stops at `max_depth` hops or when an id
    repeats.
    """
    seen = {start}
    cur = start
    depth = 0
    while depth < int(max_depth):
        parent = get_inviter(cur)
        if parent is None:
            return
        if parent in seen:
            inc_counter("forest_cycle_detected_total", 1)
            log_event(log, "forest_cycle_detected", level=logging.ERROR, start=start, at=cur, parent=parent)
            return
        depth += 1
        seen.add(parent)
        yield depth, parent
        cur = parent
    if get_inviter(cur) is not None:
        inc_counter("forest_depth_guard_total", 1)
        log_event(log, "forest_depth_guard_hit", level=logging.WARNING, start=start, max_depth=int(max_depth))


def walk_downline(root: str, get_children: Callable[[str], Iterable[str]]) -> Iterator[Tuple[int, str]]:
    """Breadth-first (depth, member) over everyone below `root` (root excluded)."""
    seen = {root}
    queue: deque[Tuple[int, str]] = deque([(0, root)])
    while queue:
        depth, node = queue.popleft()
        for child in get_children(node):
            if child in seen:
                inc_counter("forest_cycle_detected_total", 1)
                continue
            seen.add(child)
            yield depth + 1, child
            queue.append((depth + 1, child))


class SqliteReferralForest:
    """Participant registry and inviter edges stored in `participants`."""

    def __init__(self, *, db: SqliteDB, max_depth: int) -> None:
        self._db = db
        self._max_depth = int(max_depth)

    @property
    def max_depth(self) -> int:
        return self._max_depth

    def register(self, participant_id: str, inviter_id: Optional[str] = None) -> None:
        pid = str(participant_id or "").strip()
        if not pid:
            raise InvalidParticipantError("missing_participant_id")
        inv = str(inviter_id).strip() if inviter_id is not None else None
        if inv == "":
            inv = None
        if inv == pid:
            raise InvalidParticipantError("self_invite", {"participant_id": pid})

        with self._db.write_tx() as con:
            if con.execute("SELECT 1 FROM participants WHERE participant_id=?;", (pid,)).fetchone() is not None:
                raise InvalidParticipantError("already_registered", {"participant_id": pid})
            if inv is not None:
                if con.execute("SELECT 1 FROM participants WHERE participant_id=?;", (inv,)).fetchone() is None:
                    raise NotFoundError("unknown_inviter", {"participant_id": pid, "inviter_id": inv})
            con.execute(
                "INSERT INTO participants(participant_id, inviter_id, created_ts_ms) VALUES(?, ?, ?);",
                (pid, inv, _now_ms()),
            )
        log_event(log, "participant_registered", participant_id=pid, inviter_id=inv)

    def exists(self, participant_id: str) -> bool:
        with self._db.connection() as con:
            return (
                con.execute("SELECT 1 FROM participants WHERE participant_id=?;", (str(participant_id),)).fetchone()
                is not None
            )

    def count(self) -> int:
        with self._db.connection() as con:
            return int(con.execute("SELECT COUNT(*) FROM participants;").fetchone()[0])

    def get_inviter(self, participant_id: str) -> Optional[str]:
        with self._db.connection() as con:
            row = con.execute(
                "SELECT inviter_id FROM participants WHERE participant_id=?;",
                (str(participant_id),),
            ).fetchone()
        if row is None or row["inviter_id"] is None:
            return None
        return str(row["inviter_id"])

    def get_direct_referrals(self, participant_id: str) -> List[str]:
        with self._db.connection() as con:
            rows = con.execute(
                "SELECT participant_id FROM participants WHERE inviter_id=? ORDER BY created_ts_ms, participant_id;",
                (str(participant_id),),
            ).fetchall()
        return [str(r["participant_id"]) for r in rows]

    def get_downline(self, participant_id: str) -> Iterator[str]:
        for _, member in walk_downline(str(participant_id), self.get_direct_referrals):
            yield member

    def get_ancestors(self, participant_id: str) -> List[str]:
        """Inviter chain, nearest first."""
        return [a for _, a in walk_ancestors(str(participant_id), self.get_inviter, max_depth=self._max_depth)]

    def downline_depth(self, participant_id: str) -> int:
        depth = 0
        for d, _ in walk_downline(str(participant_id), self.get_direct_referrals):
            depth = max(depth, d)
        return depth

    def iter_participants(self, *, after: str | None = None, limit: int | None = None) -> Iterator[str]:
        """Participant ids in ascending order, optionally starting after a cursor."""
        sql = "SELECT participant_id FROM participants"
        args: list = []
        if after is not None:
            sql += " WHERE participant_id > ?"
            args.append(str(after))
        sql += " ORDER BY participant_id"
        if limit is not None:
            sql += " LIMIT ?"
            args.append(int(limit))
        with self._db.connection() as con:
            rows = con.execute(sql + ";", tuple(args)).fetchall()
        for r in rows:
            yield str(r["participant_id"])
