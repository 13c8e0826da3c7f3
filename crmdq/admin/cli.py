"""Administrative CLI utilities for the local logs."""
from __future__ import annotations

import argparse
import json
from collections import Counter
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from crmdq.config import DEFAULT_SETTINGS_PATH, load_settings
from crmdq.observability.log import configure_logging
from crmdq.storage.history import ActionLog, FailureLog, ScanHistory
from crmdq.storage.kv import FileStore, KeyValueStore


def _cutoff_ms(days: Optional[int]) -> Optional[int]:
    if not days:
        return None
    return int((datetime.now(timezone.utc) - timedelta(days=days)).timestamp() * 1000)


def cmd_failures(args: argparse.Namespace, store: KeyValueStore) -> Any:
    log = FailureLog(store)
    if args.clear:
        log.clear()
        return {"cleared": True}
    cutoff = _cutoff_ms(args.last)
    failures = [entry for entry in log.list() if cutoff is None or entry.ts >= cutoff]
    if args.summary:
        return dict(Counter(entry.reason for entry in failures))
    return [entry.to_blob() for entry in failures[: args.limit]]


def cmd_history(args: argparse.Namespace, store: KeyValueStore) -> Any:
    history = ScanHistory(store)
    if args.clear:
        history.clear()
        return {"cleared": True}
    scans = [entry for entry in history.list() if not args.tool or entry.tool == args.tool]
    return [entry.to_blob() for entry in scans[: args.limit]]


def cmd_actions(args: argparse.Namespace, store: KeyValueStore) -> Any:
    actions = ActionLog(store)
    entries = [entry for entry in actions.list() if not args.type or entry.type.value == args.type]
    summary: Dict[str, int] = dict(Counter(entry.type.value for entry in entries))
    if args.summary:
        return summary
    return [entry.to_blob() for entry in entries[: args.limit]]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="crmdq-admin", description="Administration commands")
    parser.add_argument("--settings", default=str(DEFAULT_SETTINGS_PATH))
    parser.add_argument("--store", help="Override the store directory from settings")
    sub = parser.add_subparsers(dest="command", required=True)

    failures = sub.add_parser("failures", help="Inspect the failure log")
    failures.add_argument("--last", type=int, help="Lookback window in days")
    failures.add_argument("--limit", type=int, default=50)
    failures.add_argument("--summary", action="store_true", help="Count failures per reason")
    failures.add_argument("--clear", action="store_true")

    history = sub.add_parser("history", help="Show recent scans")
    history.add_argument("--tool")
    history.add_argument("--limit", type=int, default=20)
    history.add_argument("--clear", action="store_true")

    actions = sub.add_parser("actions", help="Show the action log")
    actions.add_argument("--type", help="Filter to one action type")
    actions.add_argument("--limit", type=int, default=50)
    actions.add_argument("--summary", action="store_true", help="Count actions per type")

    return parser


COMMANDS = {
    "failures": cmd_failures,
    "history": cmd_history,
    "actions": cmd_actions,
}


def main(argv: Optional[List[str]] = None, *, store: Optional[KeyValueStore] = None) -> None:
    configure_logging(Path("config/logging.yaml"))
    parser = build_parser()
    args = parser.parse_args(argv)
    if store is None:
        settings = load_settings(Path(args.settings))
        store = FileStore(Path(args.store) if args.store else settings.storage.root)
    print(json.dumps(COMMANDS[args.command](args, store), indent=2))


if __name__ == "__main__":
    main()
