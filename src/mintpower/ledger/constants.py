# src/mintpower/ledger/constants.py
"""Monetary constants for the reward engine.

All amounts (balances, weights, rewards, power) are fixed-point integers
counted in minimum units. 1 token = COIN units.
"""

from __future__ import annotations

from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Any

COIN_DECIMALS: int = 8
COIN: int = 10**COIN_DECIMALS

# Reward asset credited on claim; power assets count towards holdings weight.
DEFAULT_REWARD_SYMBOL: str = "CAN"
DEFAULT_POWER_SYMBOLS: tuple[str, ...] = ("LAN", "CAN")

DEFAULT_BLOCK_REWARD_TOKENS: int = 1_000
DEFAULT_BLOCK_REWARD: int = DEFAULT_BLOCK_REWARD_TOKENS * COIN

# 30 minutes between mint blocks
DEFAULT_MINT_INTERVAL_MS: int = 30 * 60 * 1000

# Upward walks stop here even if the forest data is corrupt (cycle).
DEFAULT_MAX_ANCESTOR_DEPTH: int = 1024

# Burns convert 1:1 into burn weight.
BURN_POWER_RATIO: int = 1


def to_units(tokens: Any) -> int:
    """Convert a token amount ("12.5", 12.5, Decimal) to minimum units, rounding down."""
    try:
        d = Decimal(str(tokens))
    except InvalidOperation as e:
        raise ValueError(f"not a token amount: {tokens!r}") from e
    if not d.is_finite():
        raise ValueError(f"not a token amount: {tokens!r}")
    return int((d * COIN).to_integral_value(rounding=ROUND_DOWN))


def from_units(units: int) -> Decimal:
    return Decimal(int(units)).scaleb(-COIN_DECIMALS)


def format_units(units: int) -> str:
    return f"{from_units(units):.{COIN_DECIMALS}f}"


def apply_multiplier(units: int, factor: Any) -> int:
    """Scale an integer amount by a non-negative real factor, rounding down."""
    f = Decimal(str(factor))
    if not f.is_finite() or f < 0:
        raise ValueError(f"multiplier must be a non-negative finite number; got {factor!r}")
    return int((Decimal(int(units)) * f).to_integral_value(rounding=ROUND_DOWN))
