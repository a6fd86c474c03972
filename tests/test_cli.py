from __future__ import annotations

import json
from pathlib import Path

import pytest

from mintpower.__main__ import main
from mintpower.runtime.config import load_engine_config
from mintpower.runtime.engine_boot import build_engine
from mintpower.runtime import structured_logging


@pytest.fixture
def cfg_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    db = tmp_path / "cli.db"
    p = tmp_path / "engine.yaml"
    p.write_text(f"mode: dev\ndb_path: {db}\nblock_reward: 600\nlock_path: {tmp_path / 'l.lock'}\n", encoding="utf-8")
    # main() exports these; monkeypatch restores them afterwards.
    monkeypatch.setenv("MINTPOWER_MODE", "dev")
    monkeypatch.setenv("MINTPOWER_DB_PATH", str(db))
    monkeypatch.setenv("MINTPOWER_LOG_LEVEL", "WARNING")
    monkeypatch.setenv("MINTPOWER_DOTENV_PATH", str(tmp_path / "missing.env"))
    # Keep pytest's log capture handlers on the root logger.
    monkeypatch.setattr(structured_logging, "configure_structured_logging", lambda *_a, **_k: None)
    return str(p)


def _run(capsys: pytest.CaptureFixture, *argv: str) -> tuple[int, dict]:
    rc = main(list(argv))
    out = capsys.readouterr().out
    return rc, json.loads(out)


def test_init_status_and_mint(cfg_path: str, capsys: pytest.CaptureFixture) -> None:
    rc, out = _run(capsys, "--config", cfg_path, "init-db")
    assert rc == 0 and out["ok"] is True

    rc, out = _run(capsys, "--config", cfg_path, "mint")
    assert rc == 0
    assert out["block"]["block_number"] == 1
    assert out["block"]["total_reward"] == 600

    rc, out = _run(capsys, "--config", cfg_path, "status")
    assert rc == 0
    assert out["last_block"]["block_number"] == 1
    assert out["participants"] == 0


def test_unknown_participant_reports_error_kind(cfg_path: str, capsys: pytest.CaptureFixture) -> None:
    rc, out = _run(capsys, "--config", cfg_path, "summary", "--participant", "ghost")
    assert rc == 1
    assert out["error"] == "not_found"


def test_work_and_reconcile(cfg_path: str, capsys: pytest.CaptureFixture) -> None:
    rc, out = _run(capsys, "--config", cfg_path, "work", "--drain")
    assert rc == 0 and out["processed"] == 0

    rc, out = _run(capsys, "--config", cfg_path, "reconcile")
    assert rc == 0 and out["done"] is True


def test_mint_in_tokens_and_summary_in_tokens(cfg_path: str, capsys: pytest.CaptureFixture) -> None:
    engine = build_engine(load_engine_config(config_path=cfg_path))
    engine.register_participant("alice")
    engine.credit("alice", 5, symbol="LAN", reason="deposit")

    rc, out = _run(capsys, "--config", cfg_path, "mint", "--reward-tokens", "1.5")
    assert rc == 0
    assert out["block"]["total_reward"] == 150_000_000

    rc, out = _run(capsys, "--config", cfg_path, "summary", "--participant", "alice")
    assert rc == 0
    assert out["pending"] == 150_000_000
    assert out["pending_tokens"] == "1.50000000"
    assert out["balances"] == {"LAN": 5}

    rc, out = _run(capsys, "--config", cfg_path, "claim-all", "--participant", "alice")
    assert rc == 0
    assert out["amount_tokens"] == "1.50000000"
