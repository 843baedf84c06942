#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from src.config.load_config import load_app_config  # noqa: E402
from src.runtime.queue import QueueManager  # noqa: E402


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Enqueue a lane run; a running daemon's worker picks it up.")
    p.add_argument("query", help="User query.")
    p.add_argument("--lane", default="", help="Lane name (default: daemon.default_lane).")
    p.add_argument("--executor", default="", help="Executor name.")
    p.add_argument("--model", default="", help="Model override.")
    p.add_argument("--timeout", type=float, default=0.0, help="Per-attempt timeout in seconds.")
    p.add_argument("--max-attempts", type=int, default=0, help="Override queue.max_attempts.")
    p.add_argument("--delay", type=float, default=0.0, help="Seconds before the first attempt.")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv or sys.argv[1:])
    config = load_app_config()
    queue = QueueManager(
        db_path=config.daemon.db_path,
        max_attempts=config.queue.max_attempts,
        backoff_base_s=config.queue.backoff_base_s,
        backoff_max_s=config.queue.backoff_max_s,
    )
    payload: dict[str, object] = {"lane": args.lane or config.default_lane, "query": args.query}
    if args.executor:
        payload["executor"] = args.executor
    if args.model:
        payload["model"] = args.model
    if args.timeout > 0:
        payload["timeout_s"] = float(args.timeout)
    item_id = queue.enqueue(payload, max_attempts=args.max_attempts or None, delay_s=args.delay)
    print(item_id)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
