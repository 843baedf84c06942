from __future__ import annotations

import argparse
import signal
import sys
from pathlib import Path
from types import FrameType

from src.config.load_config import ConfigError, load_app_config
from src.executors.registry import ExecutorRegistry
from src.runtime.errors import EXIT_FAILED, AlreadyRunning, ExecutorError
from src.runtime.lane_runs import LaneRunManager
from src.storage.sqlite_store import SQLiteStore
from src.utils.logging_setup import configure_logging


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one query on a lane and print the result.")
    parser.add_argument("query", help="User query sent to the executor.")
    parser.add_argument("--lane", default="", help="Lane name (default: daemon.default_lane).")
    parser.add_argument("--executor", default="", help="Executor name (default: lane session or config).")
    parser.add_argument("--model", default="", help="Model override.")
    parser.add_argument("--cwd", default="", help="Working directory for CLI executors.")
    parser.add_argument("--attach", action="append", default=[], help="Attachment path (repeatable).")
    parser.add_argument("--context-file", action="append", default=[], help="Context file (repeatable).")
    parser.add_argument("--timeout", type=float, default=0.0, help="Cancel the run after N seconds.")
    parser.add_argument("--config", default="", help="Config TOML (default: env HOMER_CONFIG_PATH).")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Use the offline dry_run executor instead of a real agent.",
    )
    parser.add_argument("--log-level", default="", help="Logging level (default: env HOMER_LOG_LEVEL or info).")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv or sys.argv[1:])
    configure_logging(args.log_level or None)

    try:
        config = load_app_config(Path(args.config) if args.config else None)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2

    store = SQLiteStore(config.daemon.db_path)
    try:
        store.reconcile_running_runs()
    finally:
        store.close()

    runs = LaneRunManager(config=config, registry=ExecutorRegistry.from_config(config), max_workers=1)
    lane = args.lane or config.default_lane
    executor = "dry_run" if args.dry_run else (args.executor or None)

    try:
        handle = runs.start_run(
            lane,
            args.query,
            executor=executor,
            model=args.model or None,
            cwd=args.cwd or None,
            attachments=args.attach,
            context_files=args.context_file,
        )
    except AlreadyRunning as e:
        print(f"{e} (run_id={e.run_id})", file=sys.stderr)
        return EXIT_FAILED
    except (ExecutorError, ValueError) as e:
        print(str(e), file=sys.stderr)
        return EXIT_FAILED

    def _on_sigint(_signum: int, _frame: FrameType | None) -> None:
        runs.cancel_run(lane, "interrupted")

    previous = signal.signal(signal.SIGINT, _on_sigint)
    try:
        outcome = runs.wait(handle, args.timeout or None)
    finally:
        signal.signal(signal.SIGINT, previous)
        runs.shutdown(cancel=True)

    print(f"run_id={outcome.run_id} status={outcome.status} exit_code={outcome.exit_code}", file=sys.stderr)
    if outcome.output:
        print(outcome.output)
    if outcome.error and outcome.status != "completed":
        print(f"Error: {outcome.error}", file=sys.stderr)
    return int(outcome.exit_code)


if __name__ == "__main__":
    raise SystemExit(main())
