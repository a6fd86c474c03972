"""mintpower.ledger.interfaces

Narrow collaborator interfaces the engine consumes. The SQLite-backed
implementations in this package satisfy them; other deployments can plug in
their own (e.g. a balance service owned by another team).
"""

from __future__ import annotations

import sqlite3
from decimal import Decimal
from typing import Iterator, Optional, Protocol


class BalanceLedger(Protocol):
    """The single balance-mutation primitive shared by every payout path.

    `con` lets a caller run the mutation inside its own write transaction so
    that a claim flag flip and the matching credit commit together.
    """

    def credit(
        self,
        participant_id: str,
        amount: int,
        *,
        symbol: str,
        reason: str,
        ref: str | None = None,
        con: sqlite3.Connection | None = None,
    ) -> int: ...

    def debit(
        self,
        participant_id: str,
        amount: int,
        *,
        symbol: str,
        reason: str,
        ref: str | None = None,
        con: sqlite3.Connection | None = None,
    ) -> int: ...

    def get_balance(self, participant_id: str, symbol: str) -> int: ...

    def journal_for(self, *, reason: str, ref: str) -> list[dict]: ...


class WeightSource(Protocol):
    def get_holdings_weight(self, participant_id: str) -> int: ...

    def get_lp_weight(self, participant_id: str) -> int: ...

    def get_burn_weight(self, participant_id: str) -> int: ...


class MultiplierSource(Protocol):
    def get_active_multiplier(self, participant_id: str, *, at_ms: Optional[int] = None) -> Decimal: ...

    def now_ms(self) -> int: ...


class ReferralForest(Protocol):
    def get_inviter(self, participant_id: str) -> Optional[str]: ...

    def get_direct_referrals(self, participant_id: str) -> list[str]: ...

    def get_downline(self, participant_id: str) -> Iterator[str]: ...

    def exists(self, participant_id: str) -> bool: ...

    def iter_participants(self, *, after: str | None = None, limit: int | None = None) -> Iterator[str]: ...
