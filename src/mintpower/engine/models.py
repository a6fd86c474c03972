# src/mintpower/engine/models.py
from __future__ import annotations

import sqlite3
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

Json = Dict[str, Any]

# Per-participant recalculation state.
STATE_STALE = "stale"
STATE_RECALCULATING = "recalculating"
STATE_CURRENT = "current"


@dataclass(frozen=True)
class MintBlock:
    block_id: str
    block_number: int
    total_reward: int
    created_ts_ms: int
    distributed: bool
    distributed_ts_ms: Optional[int]

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "MintBlock":
        return cls(
            block_id=str(row["block_id"]),
            block_number=int(row["block_number"]),
            total_reward=int(row["total_reward"]),
            created_ts_ms=int(row["created_ts_ms"]),
            distributed=bool(row["distributed"]),
            distributed_ts_ms=None if row["distributed_ts_ms"] is None else int(row["distributed_ts_ms"]),
        )

    def to_dict(self) -> Json:
        return asdict(self)


@dataclass(frozen=True)
class WeightSnapshot:
    participant_id: str
    block_id: str
    transaction_weight: int
    lp_weight: int
    burn_weight: int
    created_ts_ms: int

    @property
    def total_weight(self) -> int:
        return int(self.transaction_weight) + int(self.lp_weight) + int(self.burn_weight)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "WeightSnapshot":
        return cls(
            participant_id=str(row["participant_id"]),
            block_id=str(row["block_id"]),
            transaction_weight=int(row["transaction_weight"]),
            lp_weight=int(row["lp_weight"]),
            burn_weight=int(row["burn_weight"]),
            created_ts_ms=int(row["created_ts_ms"]),
        )


@dataclass(frozen=True)
class RewardEntry:
    entry_id: str
    participant_id: str
    block_id: str
    amount: int
    weight_value: int
    claimed: bool
    claimed_ts_ms: Optional[int]
    created_ts_ms: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "RewardEntry":
        return cls(
            entry_id=str(row["entry_id"]),
            participant_id=str(row["participant_id"]),
            block_id=str(row["block_id"]),
            amount=int(row["amount"]),
            weight_value=int(row["weight_value"]),
            claimed=bool(row["claimed"]),
            claimed_ts_ms=None if row["claimed_ts_ms"] is None else int(row["claimed_ts_ms"]),
            created_ts_ms=int(row["created_ts_ms"]),
        )

    def to_dict(self) -> Json:
        return asdict(self)


@dataclass(frozen=True)
class CombatPowerRecord:
    participant_id: str
    personal_power: int
    team_power: int
    lp_weight: int
    burn_weight: int
    state: str
    updated_ts_ms: int

    @classmethod
    def zero(cls, participant_id: str) -> "CombatPowerRecord":
        return cls(participant_id, 0, 0, 0, 0, STATE_CURRENT, 0)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "CombatPowerRecord":
        return cls(
            participant_id=str(row["participant_id"]),
            personal_power=int(row["personal_power"]),
            team_power=int(row["team_power"]),
            lp_weight=int(row["lp_weight"]),
            burn_weight=int(row["burn_weight"]),
            state=str(row["state"]),
            updated_ts_ms=int(row["updated_ts_ms"]),
        )

    def to_dict(self) -> Json:
        return asdict(self)


@dataclass(frozen=True)
class TeamStats:
    team_power: int
    team_members: int
    direct_referrals: int

    def to_dict(self) -> Json:
        return asdict(self)
