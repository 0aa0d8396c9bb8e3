"""
Main entry point for running cross-boundary moves, recovery and the janitor.
"""

from __future__ import annotations

import argparse
import faulthandler
import json
import os
import sys
import threading
import traceback
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Optional

from boundary import build_boundary_control
from config import AppConfig, ensure_directories
from database import DatabaseManager
from moves.janitor import Janitor
from moves.models import MoveState
from orchestrator import MoveOrchestrator, MoveWorkerPool
from utils import ProgressReporter, ResourceMonitor, setup_logging
from utils.instance_guard import InstanceLockError, acquire_instance_lock


def _enable_crash_diagnostics(logs_dir: Path) -> None:
    logs_dir.mkdir(parents=True, exist_ok=True)
    crash_log = logs_dir / f"crash_traceback_{datetime.utcnow().strftime('%Y%m%d')}.log"
    crash_stream = crash_log.open("a", encoding="utf-8")
    faulthandler.enable(file=crash_stream, all_threads=True)

    def _hook(exc_type, exc, tb):
        with crash_log.open("a", encoding="utf-8") as handle:
            handle.write("\n")
            handle.write(datetime.utcnow().isoformat() + " Unhandled exception\n")
            traceback.print_exception(exc_type, exc, tb, file=handle)
        sys.__excepthook__(exc_type, exc, tb)

    sys.excepthook = _hook
    if hasattr(threading, "excepthook"):
        def _thread_hook(args):
            _hook(args.exc_type, args.exc_value, args.exc_traceback)
        threading.excepthook = _thread_hook


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="quota-mover", description="Cross-boundary move orchestrator")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.yaml")
    subparsers = parser.add_subparsers(dest="command", required=True)

    move = subparsers.add_parser("move", help="Move a file or directory into another boundary")
    move.add_argument("source", type=Path)
    move.add_argument("destination_parent", type=Path)
    move.add_argument("boundary_id")

    status = subparsers.add_parser("status", help="Print an operation record as JSON")
    status.add_argument("task_id", nargs="?")
    status.add_argument("--state", choices=[state.value for state in MoveState])

    subparsers.add_parser("recover", help="Resolve operations interrupted by a crash")

    janitor = subparsers.add_parser("janitor", help="Reclaim orphaned staging artifacts")
    janitor.add_argument("--daemon", action="store_true", help="Keep running on the configured interval")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)
    config = AppConfig.load(args.config)
    logs_dir = config.resolve_path("paths", "logs", default="logs")
    _enable_crash_diagnostics(logs_dir)
    loggers = setup_logging(logs_dir)
    db_paths = config.db_paths()
    ensure_directories([db_paths["state"].parent])
    db_manager = DatabaseManager(
        db_paths, busy_timeout_seconds=float(config.get("database", "busy_timeout_seconds", default=30))
    )
    db_manager.initialize()
    try:
        if args.command == "move":
            return _run_move(config, loggers, args)
        if args.command == "status":
            return _print_status(db_manager, args)
        if args.command == "recover":
            orchestrator = MoveOrchestrator.from_config(config, db_manager, loggers=loggers)
            for operation in orchestrator.recover():
                print(f"{operation.task_id} {operation.state.value}")
            return 0
        return _run_janitor(config, loggers, args.daemon)
    finally:
        db_manager.close()


def _run_move(config: AppConfig, loggers: dict, args: argparse.Namespace) -> int:
    control = build_boundary_control(config, logger=loggers["main"])
    reporter = ProgressReporter(
        config.db_paths(),
        logger=loggers["performance"],
        interval_seconds=int(config.get("dashboard", "interval_seconds", default=30)),
        enabled=bool(config.get("dashboard", "enabled", default=True)),
    )
    reporter.start()
    monitor = ResourceMonitor.from_config(config, logger=loggers["performance"])
    try:
        with MoveWorkerPool(config, control, loggers=loggers, monitor=monitor) as pool:
            task_id = pool.submit(args.source, args.destination_parent, args.boundary_id)
            try:
                operation = pool.wait(task_id)
            except KeyboardInterrupt:
                pool.cancel(task_id)
                operation = pool.wait(task_id)
    finally:
        reporter.stop()
    print(json.dumps(_operation_dict(operation), indent=2))
    return 0 if operation.state == MoveState.COMPLETED else 1


def _print_status(db_manager: DatabaseManager, args: argparse.Namespace) -> int:
    if args.task_id:
        operation = db_manager.get_move_operation(args.task_id)
        if operation is None:
            print(f"Unknown operation: {args.task_id}", file=sys.stderr)
            return 1
        print(json.dumps(_operation_dict(operation), indent=2))
        return 0
    states = [MoveState(args.state)] if args.state else None
    operations = db_manager.list_move_operations(states=states)
    print(json.dumps([_operation_dict(operation) for operation in operations], indent=2))
    return 0


def _run_janitor(config: AppConfig, loggers: dict, daemon: bool) -> int:
    janitor = Janitor(
        build_boundary_control(config, logger=loggers["main"]),
        config.db_paths(),
        staleness_seconds=float(config.get("janitor", "staleness_seconds", default=6 * 60 * 60)),
        interval_seconds=float(config.get("janitor", "interval_seconds", default=300)),
        busy_timeout_seconds=float(config.get("database", "busy_timeout_seconds", default=30)),
        logger=loggers["main"],
        movement_logger=loggers["movement"],
    )
    if not daemon:
        print(json.dumps(asdict(janitor.run_once()), indent=2))
        return 0
    lock_path = config.db_paths()["state"].parent / "janitor.lock"
    instance_lock = None
    if os.environ.get("QUOTA_MOVER_ALLOW_MULTI_INSTANCE") != "1":
        try:
            instance_lock = acquire_instance_lock(lock_path)
        except InstanceLockError as exc:
            message = (
                "ERROR: Another janitor is already running.\n"
                "Stop the other process or set QUOTA_MOVER_ALLOW_MULTI_INSTANCE=1 to override.\n"
            )
            print(message, file=sys.stderr)
            raise SystemExit(2) from exc
    janitor.run_once()
    janitor.start()
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        loggers["main"].info("Janitor interrupted; stopping.")
    finally:
        janitor.stop()
        if instance_lock is not None:
            instance_lock.release()
    return 0


def _operation_dict(operation) -> dict:
    record = asdict(operation)
    record["state"] = operation.state.value
    return record


if __name__ == "__main__":
    raise SystemExit(main())
