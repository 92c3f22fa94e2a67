# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""
Lifeline CLI - inspect and reset restart supervision state.

Commands:
  lifeline status              Crash-loop and daily restart statistics
  lifeline reset               Clear crash-loop history and the emergency flag
  lifeline clear-flag          Remove the emergency stop flag only
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
import time
from typing import Any

from .core.config import get_config
from .core.logging import configure_logging
from .supervision.crash_loop import CrashLoopGuard, CrashLoopGuardConfig
from .supervision.instance_lock import LOCK_FILE, InstanceLock
from .supervision.restart_limiter import RestartLimiter, RestartLimiterConfig
from .supervision.store import JsonFileStore


def output_result(data: dict[str, Any]) -> None:
    """Pretty-print a result as JSON."""
    print(json.dumps(data, indent=2, default=str))


def output_error(message: str) -> None:
    """Print error message to stderr."""
    print(f"Error: {message}", file=sys.stderr)


def _store(args: argparse.Namespace) -> JsonFileStore:
    return JsonFileStore(args.state_dir or get_config().state_path)


def _guard(store: JsonFileStore) -> CrashLoopGuard:
    config = get_config()
    return CrashLoopGuard(
        store,
        CrashLoopGuardConfig(
            window_seconds=config.crash_loop_window_seconds,
            alert_threshold=config.crash_loop_alert_threshold,
            emergency_threshold=config.crash_loop_emergency_threshold,
            flag_max_age_seconds=config.emergency_flag_max_age_seconds,
            store_timeout=config.store_timeout_seconds,
        ),
    )


async def _status(args: argparse.Namespace) -> dict[str, Any]:
    config = get_config()
    store = _store(args)
    guard = _guard(store)
    limiter = RestartLimiter(
        store,
        RestartLimiterConfig(
            max_restarts_per_day=config.max_restarts_per_day,
            store_timeout=config.store_timeout_seconds,
        ),
    )
    await guard.ledger.load()
    await limiter.load()

    flag = await store.load_flag()
    now = time.time()
    flag_info: dict[str, Any] | None = None
    if flag is not None:
        flag_info = {
            "reason": flag.reason,
            "age_seconds": round(flag.age(now)),
            "fresh": flag.is_fresh(config.emergency_flag_max_age_seconds, now),
        }

    lock = InstanceLock(store.directory / LOCK_FILE)
    return {
        "state_dir": str(store.directory),
        "crash_loop": guard.get_stats(now),
        "daily": limiter.get_stats(now),
        "emergency_stop_flag": flag_info,
        "instance_lock": lock.read(),
    }


def cmd_status(args: argparse.Namespace) -> int:
    """Show restart supervision state."""
    output_result(asyncio.run(_status(args)))
    return 0


def cmd_reset(args: argparse.Namespace) -> int:
    """Clear crash-loop history and the emergency stop flag."""
    guard = _guard(_store(args))
    asyncio.run(guard.reset())
    print("✅ Crash loop history and emergency stop flag cleared")
    return 0


def cmd_clear_flag(args: argparse.Namespace) -> int:
    """Remove the emergency stop flag."""
    removed = asyncio.run(_store(args).delete_flag())
    if removed:
        print("✅ Emergency stop flag removed")
    else:
        print("No emergency stop flag present")
    return 0


def app() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="lifeline",
        description="Connection resilience and restart supervision",
    )
    parser.add_argument(
        "--state-dir",
        default=None,
        help="State directory (default: LIFELINE_STATE_DIR or .lifeline)",
    )
    parser.add_argument("--log-level", default="WARNING", help="Log level for this command")

    subparsers = parser.add_subparsers(dest="command")

    status_p = subparsers.add_parser("status", help="Show crash-loop and daily restart statistics")
    status_p.set_defaults(func=cmd_status)

    reset_p = subparsers.add_parser("reset", help="Clear crash-loop history and the emergency flag")
    reset_p.set_defaults(func=cmd_reset)

    clear_p = subparsers.add_parser("clear-flag", help="Remove the emergency stop flag")
    clear_p.set_defaults(func=cmd_clear_flag)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = app()
    args = parser.parse_args(argv)

    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1

    configure_logging(args.log_level, json_format=False)
    try:
        return handler(args)
    except Exception as e:
        output_error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
