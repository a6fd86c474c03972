# src/mintpower/runtime/config.py
from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError

from mintpower.ledger.constants import (
    DEFAULT_BLOCK_REWARD,
    DEFAULT_MAX_ANCESTOR_DEPTH,
    DEFAULT_MINT_INTERVAL_MS,
    DEFAULT_POWER_SYMBOLS,
    DEFAULT_REWARD_SYMBOL,
)

Json = Dict[str, Any]


def _as_int(v: Any, default: int) -> int:
    try:
        return int(v)
    except Exception:
        return int(default)


def _as_str(v: Any, default: str) -> str:
    if v is None:
        return str(default)
    s = str(v)
    return s if s.strip() else str(default)


def _as_bool(v: Any, default: bool) -> bool:
    if v is None:
        return bool(default)
    if isinstance(v, bool):
        return v
    s = str(v).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)


def _as_symbols(v: Any, default: Tuple[str, ...]) -> Tuple[str, ...]:
    if v is None:
        return tuple(default)
    items = v.split(",") if isinstance(v, str) else list(v)
    out = tuple(str(s).strip().upper() for s in items if str(s).strip())
    return out or tuple(default)


@dataclass(frozen=True)
class EngineConfig:
    mode: str  # "dev" | "testnet" | "prod"

    db_path: str

    reward_symbol: str
    power_symbols: Tuple[str, ...]
    block_reward: int
    mint_interval_ms: int

    max_ancestor_depth: int
    reconcile_batch_size: int

    # Recalculation queue retry knobs
    recalc_max_attempts: int
    recalc_backoff_base_ms: int
    recalc_backoff_cap_ms: int
    recalc_batch_size: int

    # Engine loop
    loop_enabled: bool
    loop_tick_ms: int
    lock_path: str
    fail_fast_after: int
    error_backoff_min_ms: int
    error_backoff_max_ms: int

    log_level: str


class EngineConfigFile(BaseModel):
    """Shape of the optional YAML/JSON config file. Unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid")

    mode: Optional[str] = None
    db_path: Optional[str] = None
    reward_symbol: Optional[str] = None
    power_symbols: Optional[list[str] | str] = None
    block_reward: Optional[int] = None
    mint_interval_ms: Optional[int] = None
    max_ancestor_depth: Optional[int] = None
    reconcile_batch_size: Optional[int] = None
    recalc_max_attempts: Optional[int] = None
    recalc_backoff_base_ms: Optional[int] = None
    recalc_backoff_cap_ms: Optional[int] = None
    recalc_batch_size: Optional[int] = None
    loop_enabled: Optional[bool] = None
    loop_tick_ms: Optional[int] = None
    lock_path: Optional[str] = None
    fail_fast_after: Optional[int] = None
    error_backoff_min_ms: Optional[int] = None
    error_backoff_max_ms: Optional[int] = None
    log_level: Optional[str] = None


_ALLOWED_MODES = {"dev", "testnet", "prod"}
_ALLOWED_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def validate_engine_config(cfg: EngineConfig) -> None:
    """Fail-fast validation for operator config."""

    mode = str(cfg.mode or "").strip().lower()
    if mode not in _ALLOWED_MODES:
        raise ValueError(f"mode must be one of {_ALLOWED_MODES}; got: {cfg.mode!r}")

    if not isinstance(cfg.db_path, str) or not cfg.db_path.strip():
        raise ValueError("db_path must be a non-empty string")

    if not isinstance(cfg.reward_symbol, str) or not cfg.reward_symbol.strip():
        raise ValueError("reward_symbol must be a non-empty string")

    if not cfg.power_symbols:
        raise ValueError("power_symbols must name at least one symbol")

    if int(cfg.block_reward) < 0:
        raise ValueError(f"block_reward must be >= 0; got: {cfg.block_reward}")

    if int(cfg.mint_interval_ms) < 1_000:
        # Sub-second mint intervals turn the loop into a busy writer.
        raise ValueError(f"mint_interval_ms must be >= 1000; got: {cfg.mint_interval_ms}")

    if int(cfg.max_ancestor_depth) < 1:
        raise ValueError(f"max_ancestor_depth must be >= 1; got: {cfg.max_ancestor_depth}")

    for name in ("reconcile_batch_size", "recalc_batch_size", "recalc_max_attempts", "fail_fast_after"):
        if int(getattr(cfg, name)) < 1:
            raise ValueError(f"{name} must be >= 1; got: {getattr(cfg, name)}")

    if int(cfg.recalc_backoff_cap_ms) < int(cfg.recalc_backoff_base_ms):
        raise ValueError("recalc_backoff_cap_ms must be >= recalc_backoff_base_ms")

    if int(cfg.loop_tick_ms) < 50:
        raise ValueError(f"loop_tick_ms must be >= 50; got: {cfg.loop_tick_ms}")

    if int(cfg.error_backoff_max_ms) < int(cfg.error_backoff_min_ms):
        raise ValueError("error_backoff_max_ms must be >= error_backoff_min_ms")

    if str(cfg.log_level or "").strip().upper() not in _ALLOWED_LOG_LEVELS:
        raise ValueError(f"log_level must be one of {_ALLOWED_LOG_LEVELS}; got: {cfg.log_level!r}")


def default_engine_config() -> EngineConfig:
    return EngineConfig(
        # Without an explicit config the engine runs with production durability.
        mode="prod",
        db_path="./data/mintpower.db",
        reward_symbol=DEFAULT_REWARD_SYMBOL,
        power_symbols=tuple(DEFAULT_POWER_SYMBOLS),
        block_reward=DEFAULT_BLOCK_REWARD,
        mint_interval_ms=DEFAULT_MINT_INTERVAL_MS,
        max_ancestor_depth=DEFAULT_MAX_ANCESTOR_DEPTH,
        reconcile_batch_size=200,
        recalc_max_attempts=8,
        recalc_backoff_base_ms=500,
        recalc_backoff_cap_ms=60_000,
        recalc_batch_size=100,
        loop_enabled=True,
        loop_tick_ms=1_000,
        lock_path="./data/engine_loop.lock",
        fail_fast_after=10,
        error_backoff_min_ms=250,
        error_backoff_max_ms=10_000,
        log_level="INFO",
    )


def _overlay(base: EngineConfig, raw: Json) -> EngineConfig:
    """Apply loosely typed values (file or env strings) on top of `base`."""
    changes: Json = {}
    for f in fields(EngineConfig):
        if f.name not in raw or raw[f.name] is None:
            continue
        cur = getattr(base, f.name)
        v = raw[f.name]
        if f.name == "power_symbols":
            changes[f.name] = _as_symbols(v, cur)
        elif isinstance(cur, bool):
            changes[f.name] = _as_bool(v, cur)
        elif isinstance(cur, int):
            changes[f.name] = _as_int(v, cur)
        else:
            changes[f.name] = _as_str(v, cur)
    if "reward_symbol" in changes:
        changes["reward_symbol"] = changes["reward_symbol"].strip().upper()
    if "mode" in changes:
        changes["mode"] = changes["mode"].strip().lower()
    return replace(base, **changes)


def read_engine_config_file(path: str, *, base: Optional[EngineConfig] = None) -> EngineConfig:
    """Load a YAML (or JSON) config file over `base` (defaults when omitted)."""
    p = Path(path)
    raw = yaml.safe_load(p.read_text(encoding="utf-8"))
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValueError("engine config must be a mapping")
    try:
        parsed = EngineConfigFile.model_validate(raw)
    except ValidationError as e:
        raise ValueError(f"invalid engine config {str(p)!r}: {e}") from e
    return _overlay(base or default_engine_config(), parsed.model_dump(exclude_none=True))


def _env_overrides() -> Json:
    out: Json = {}
    for f in fields(EngineConfig):
        v = os.environ.get(f"MINTPOWER_{f.name.upper()}")
        if v is not None and v.strip():
            out[f.name] = v
    return out


def load_engine_config(*, config_path: Optional[str] = None) -> EngineConfig:
    """defaults <- config file (arg or MINTPOWER_CONFIG_PATH) <- MINTPOWER_* env."""
    cfg = default_engine_config()
    p = config_path or os.environ.get("MINTPOWER_CONFIG_PATH")
    if p:
        cfg = read_engine_config_file(p, base=cfg)
    cfg = _overlay(cfg, _env_overrides())
    validate_engine_config(cfg)
    return cfg


def apply_engine_config_to_env(cfg: EngineConfig) -> None:
    """Expose settings read by lower layers (sqlite pragmas, log level)."""
    validate_engine_config(cfg)
    os.environ["MINTPOWER_MODE"] = (cfg.mode or "prod").strip().lower()
    os.environ["MINTPOWER_DB_PATH"] = cfg.db_path
    os.environ["MINTPOWER_LOG_LEVEL"] = cfg.log_level
