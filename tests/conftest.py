from __future__ import annotations

import sys
from dataclasses import replace
from pathlib import Path
from typing import Callable

import pytest

# Ensure local "src/" takes precedence over any globally-installed "mintpower" package.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

src_str = str(SRC)
if src_str not in sys.path:
    sys.path.insert(0, src_str)

from mintpower.runtime import metrics  # noqa: E402
from mintpower.runtime.config import EngineConfig, default_engine_config  # noqa: E402
from mintpower.runtime.engine_boot import Engine, build_engine  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_metrics() -> None:
    metrics.reset()


@pytest.fixture
def make_cfg(tmp_path: Path) -> Callable[..., EngineConfig]:
    def _mk(**overrides) -> EngineConfig:
        base = replace(
            default_engine_config(),
            mode="dev",
            db_path=str(tmp_path / "mintpower_test.db"),
            lock_path=str(tmp_path / "engine_loop.lock"),
        )
        return replace(base, **overrides)

    return _mk


@pytest.fixture
def engine(make_cfg) -> Engine:
    return build_engine(make_cfg())
