# src/mintpower/__main__.py
from __future__ import annotations

import argparse
import json
import signal
import sys
import threading
from typing import Any, Dict, List, Optional

from mintpower.env import load_dotenv_if_present
from mintpower.ledger.constants import format_units, to_units

Json = Dict[str, Any]


def _print(obj: Json) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True, default=str))


def _parse_args(argv: List[str]) -> argparse.Namespace:
    ap = argparse.ArgumentParser(prog="mintpower", description="Reward minting and combat-power engine (SQLite-backed)")
    ap.add_argument("--config", dest="config_path", default=None, help="YAML/JSON config file (else MINTPOWER_CONFIG_PATH)")
    sub = ap.add_subparsers(dest="cmd", required=True)

    sub.add_parser("init-db", help="create tables")
    sub.add_parser("status", help="current block, queue and participant counts")

    p = sub.add_parser("mint", help="create, snapshot and distribute the next block")
    g = p.add_mutually_exclusive_group()
    g.add_argument("--reward", dest="reward", type=int, default=None, help="total reward in minimum units")
    g.add_argument("--reward-tokens", dest="reward_tokens", type=to_units, default=None, help="total reward in tokens, e.g. 12.5")

    p = sub.add_parser("claim-all", help="claim every unclaimed entry of a participant")
    p.add_argument("--participant", required=True)

    p = sub.add_parser("summary", help="reward summary of a participant")
    p.add_argument("--participant", required=True)

    p = sub.add_parser("reconcile", help="recompute team stats for every participant (resumable)")
    p.add_argument("--batch-size", dest="batch_size", type=int, default=None)
    p.add_argument("--max", dest="max_participants", type=int, default=None)

    p = sub.add_parser("work", help="run one pass of the recalculation worker")
    p.add_argument("--drain", action="store_true", help="keep going until nothing is due")

    sub.add_parser("run", help="run the engine loop until interrupted")
    sub.add_parser("audit", help="list claimed entries with no matching balance credit")
    sub.add_parser("metrics", help="print in-process metrics (Prometheus text)")

    return ap.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    # Load .env before anything reads MINTPOWER_* variables.
    load_dotenv_if_present()

    from mintpower.runtime.config import apply_engine_config_to_env, load_engine_config
    from mintpower.runtime.engine_boot import build_engine
    from mintpower.runtime.errors import EngineError
    from mintpower.runtime.metrics import format_prometheus
    from mintpower.runtime.structured_logging import configure_structured_logging

    args = _parse_args(list(sys.argv[1:] if argv is None else argv))

    try:
        cfg = load_engine_config(config_path=args.config_path)
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2
    apply_engine_config_to_env(cfg)
    configure_structured_logging(cfg.log_level)

    engine = build_engine(cfg)

    try:
        if args.cmd == "init-db":
            _print({"ok": True, "db_path": cfg.db_path})
            return 0

        if args.cmd == "status":
            block, remaining = engine.scheduler.current_block()
            last = engine.scheduler.last_block()
            _print(
                {
                    "ok": True,
                    "open_block": None if block is None else block.to_dict(),
                    "last_block": None if last is None else last.to_dict(),
                    "time_remaining_ms": remaining,
                    "participants": engine.forest.count(),
                    "recalc_jobs": engine.queue.counts(),
                }
            )
            return 0

        if args.cmd == "mint":
            reward = args.reward if args.reward_tokens is None else args.reward_tokens
            block = engine.scheduler.create_block(reward)
            _print({"ok": block.distributed, "block": block.to_dict()})
            return 0 if block.distributed else 1

        if args.cmd == "claim-all":
            res = engine.claims.claim_all(args.participant)
            _print({"ok": True, **res.to_dict(), "amount_tokens": format_units(res.amount)})
            return 0

        if args.cmd == "summary":
            s = engine.claims.summary(args.participant)
            _print(
                {
                    "ok": True,
                    **s,
                    "total_earned_tokens": format_units(s["total_earned"]),
                    "pending_tokens": format_units(s["pending"]),
                    "balances": engine.balances.get_balances(s["participant_id"]),
                }
            )
            return 0

        if args.cmd == "reconcile":
            batch = args.batch_size or cfg.reconcile_batch_size
            res = engine.combat.reconcile(batch_size=batch, max_participants=args.max_participants)
            _print({"ok": True, **res})
            return 0

        if args.cmd == "work":
            res = engine.worker.drain() if args.drain else engine.worker.run_once()
            _print(res)
            return 0

        if args.cmd == "audit":
            found = engine.claims.audit()
            _print({"ok": not found, "inconsistent": found})
            return 0 if not found else 1

        if args.cmd == "metrics":
            sys.stdout.write(format_prometheus())
            return 0

        if args.cmd == "run":
            loop = engine.build_loop()
            if not loop.start():
                print("ERROR: engine loop disabled or lock held by another process", file=sys.stderr)
                return 1
            stop = threading.Event()
            signal.signal(signal.SIGINT, lambda *_: stop.set())
            signal.signal(signal.SIGTERM, lambda *_: stop.set())
            while not stop.is_set() and not loop.unhealthy:
                stop.wait(1.0)
            loop.stop()
            _print({"ok": not loop.unhealthy, **loop.status()})
            return 0 if not loop.unhealthy else 1

    except EngineError as e:
        _print({"ok": False, "error": e.code, "reason": e.reason, "details": e.details})
        return 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main())
