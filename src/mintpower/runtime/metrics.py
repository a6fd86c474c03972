from __future__ import annotations

import threading
import time
from typing import Dict


_lock = threading.Lock()
_counters: Dict[str, int] = {}
_gauges: Dict[str, int] = {}
_started_ms = int(time.time() * 1000)


def inc_counter(name: str, value: int = 1) -> None:
    n = str(name or "").strip()
    if not n:
        return
    with _lock:
        _counters[n] = int(_counters.get(n, 0)) + int(value)


def set_gauge(name: str, value: int) -> None:
    n = str(name or "").strip()
    if not n:
        return
    with _lock:
        _gauges[n] = int(value)


def counter(name: str) -> int:
    with _lock:
        return int(_counters.get(str(name), 0))


def snapshot() -> dict:
    with _lock:
        now = int(time.time() * 1000)
        return {
            "ts_ms": now,
            "started_ms": int(_started_ms),
            "uptime_ms": now - int(_started_ms),
            "counters": dict(_counters),
            "gauges": dict(_gauges),
        }


def reset() -> None:
    """Drop all counters and gauges (tests and long-running CLI sessions)."""
    with _lock:
        _counters.clear()
        _gauges.clear()


def format_prometheus(prefix: str = "mintpower_") -> str:
    """Prometheus exposition text: integer counters/gauges only."""
    pre = str(prefix or "").strip() or "mintpower_"
    snap = snapshot()
    lines: list[str] = [f"{pre}uptime_ms {int(snap['uptime_ms'])}"]

    for name, value in sorted(snap["counters"].items()):
        lines.append(f"{pre}{name} {int(value)}")
    for name, value in sorted(snap["gauges"].items()):
        lines.append(f"{pre}{name} {int(value)}")

    return "\n".join(lines) + "\n"
