# src/mintpower/ledger/weights.py
from __future__ import annotations

import logging
import time
import uuid
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Iterable, Optional

from mintpower.ledger.balances import SqliteBalanceLedger
from mintpower.ledger.constants import BURN_POWER_RATIO
from mintpower.runtime.errors import NotFoundError
from mintpower.runtime.metrics import inc_counter
from mintpower.runtime.sqlite_db import SqliteDB
from mintpower.runtime.structured_logging import log_event

log = logging.getLogger("mintpower.ledger.weights")

ONE = Decimal(1)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _as_factor(v: Any) -> Decimal:
    try:
        d = Decimal(str(v))
    except InvalidOperation as e:
        raise ValueError(f"multiplier factor must be numeric; got {v!r}") from e
    if not d.is_finite() or d < 0:
        raise ValueError(f"multiplier factor must be a non-negative finite number; got {v!r}")
    return d


class SqliteWeightSource:
    """Reads the three weight inputs for a participant.

    - holdings: sum of balances in the power symbols (others do not count)
    - LP: current liquidity position weight
    - burn: cumulative power gained from burns
    """

    def __init__(self, *, db: SqliteDB, power_symbols: Iterable[str]) -> None:
        self._db = db
        self._power_symbols = tuple(sorted({str(s).strip() for s in power_symbols if str(s).strip()}))
        if not self._power_symbols:
            raise ValueError("power_symbols must name at least one symbol")

    @property
    def power_symbols(self) -> tuple[str, ...]:
        return self._power_symbols

    def get_holdings_weight(self, participant_id: str) -> int:
        marks = ",".join("?" for _ in self._power_symbols)
        with self._db.connection() as con:
            row = con.execute(
                f"SELECT COALESCE(SUM(amount), 0) FROM balances WHERE participant_id=? AND symbol IN ({marks});",
                (str(participant_id), *self._power_symbols),
            ).fetchone()
        return int(row[0])

    def get_lp_weight(self, participant_id: str) -> int:
        with self._db.connection() as con:
            row = con.execute(
                "SELECT weight FROM lp_positions WHERE participant_id=?;",
                (str(participant_id),),
            ).fetchone()
        return 0 if row is None else int(row["weight"])

    def get_burn_weight(self, participant_id: str) -> int:
        with self._db.connection() as con:
            row = con.execute(
                "SELECT COALESCE(SUM(power_gained), 0) FROM burns WHERE participant_id=?;",
                (str(participant_id),),
            ).fetchone()
        return int(row[0])


class SqliteMultiplierSource:
    """Active combat-power multiplier from time-limited entitlements (badges).

    Unexpired factors combine multiplicatively; no entitlement means 1.0.
    """

    def __init__(self, *, db: SqliteDB, clock_ms: Callable[[], int] = _now_ms) -> None:
        self._db = db
        self._clock_ms = clock_ms

    def now_ms(self) -> int:
        """Clock that decides whether an entitlement has expired."""
        return int(self._clock_ms())

    def get_active_multiplier(self, participant_id: str, *, at_ms: Optional[int] = None) -> Decimal:
        now = self.now_ms() if at_ms is None else int(at_ms)
        with self._db.connection() as con:
            rows = con.execute(
                """
                SELECT factor FROM entitlements
                WHERE participant_id=? AND (expires_ts_ms IS NULL OR expires_ts_ms > ?)
                ORDER BY entitlement_id;
                """,
                (str(participant_id), now),
            ).fetchall()
        factor = ONE
        for r in rows:
            factor *= _as_factor(r["factor"])
        return factor


class WeightBook:
    """Weight-changing events: burns, LP position updates, entitlement grants.

    Each event reports the participant through `on_change` so the combat-power
    aggregator can mark it stale and schedule a recalculation.
    """

    def __init__(
        self,
        *,
        db: SqliteDB,
        balances: SqliteBalanceLedger,
        on_change: Optional[Callable[[str], Any]] = None,
    ) -> None:
        self._db = db
        self._balances = balances
        self._on_change = on_change

    def _changed(self, participant_id: str) -> None:
        if self._on_change is not None:
            self._on_change(participant_id)

    def _require_participant(self, con, participant_id: str) -> None:
        if con.execute("SELECT 1 FROM participants WHERE participant_id=?;", (participant_id,)).fetchone() is None:
            raise NotFoundError("unknown_participant", {"participant_id": participant_id})

    def record_burn(self, participant_id: str, symbol: str, amount: int) -> int:
        """Burn `amount` units of `symbol`; returns the burn power gained."""
        pid = str(participant_id)
        amt = int(amount)
        if amt <= 0:
            raise ValueError(f"burn amount must be > 0; got {amount}")
        gained = amt * BURN_POWER_RATIO
        with self._db.write_tx() as con:
            self._require_participant(con, pid)
            self._balances.debit(pid, amt, symbol=symbol, reason="burn", con=con)
            con.execute(
                """
                INSERT INTO burns(participant_id, symbol, amount, power_gained, created_ts_ms)
                VALUES(?, ?, ?, ?, ?);
                """,
                (pid, str(symbol), amt, gained, _now_ms()),
            )
        inc_counter("burns_recorded_total", 1)
        log_event(log, "burn_recorded", participant_id=pid, symbol=str(symbol), amount=amt, power_gained=gained)
        self._changed(pid)
        return gained

    def set_lp_weight(self, participant_id: str, weight: int) -> None:
        pid = str(participant_id)
        w = int(weight)
        if w < 0:
            raise ValueError(f"lp weight must be >= 0; got {weight}")
        with self._db.write_tx() as con:
            self._require_participant(con, pid)
            con.execute(
                """
                INSERT INTO lp_positions(participant_id, weight, updated_ts_ms)
                VALUES(?, ?, ?)
                ON CONFLICT(participant_id) DO UPDATE SET
                  weight=excluded.weight,
                  updated_ts_ms=excluded.updated_ts_ms;
                """,
                (pid, w, _now_ms()),
            )
        log_event(log, "lp_weight_set", participant_id=pid, weight=w)
        self._changed(pid)

    def grant_multiplier(self, participant_id: str, factor: Any, *, expires_ts_ms: Optional[int] = None) -> str:
        """Attach a multiplier entitlement; returns its id."""
        pid = str(participant_id)
        f = _as_factor(factor)
        ent_id = uuid.uuid4().hex
        with self._db.write_tx() as con:
            self._require_participant(con, pid)
            con.execute(
                """
                INSERT INTO entitlements(entitlement_id, participant_id, factor, expires_ts_ms, created_ts_ms)
                VALUES(?, ?, ?, ?, ?);
                """,
                (ent_id, pid, str(f), None if expires_ts_ms is None else int(expires_ts_ms), _now_ms()),
            )
        log_event(log, "multiplier_granted", participant_id=pid, factor=str(f), expires_ts_ms=expires_ts_ms)
        self._changed(pid)
        return ent_id
