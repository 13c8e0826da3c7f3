"""Command-line entrypoints for the CRM data-quality toolkit."""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from dotenv import load_dotenv
from pydantic import ValidationError

try:
    import uvloop
except ImportError:  # pragma: no cover - uvloop optional on some platforms
    uvloop = None

from crmdq.config import DEFAULT_SETTINGS_PATH, Settings, load_settings
from crmdq.fetch.client import CrmClient, create_client_session
from crmdq.fetch.paginator import fetch_all
from crmdq.normalize.rules import Rule, RuleBook, apply_rules, commit_updates, load_rules_file
from crmdq.observability.log import configure_logging
from crmdq.observability.metrics import MetricsRegistry, record_duration
from crmdq.observability.tracing import clear_context, set_context
from crmdq.quality.anomalies import scan_anomalies
from crmdq.quality.coverage import discover_object_types, enrichment_gaps, property_fill_rates
from crmdq.quality.dedup import Cluster, FuzzyFields, cluster_companies, cluster_exact, cluster_fuzzy
from crmdq.quality.formatting import PRESETS, preset_properties, scan_formatting, to_updates
from crmdq.quality.merge import MergeOrchestrator
from crmdq.quality.review import ReviewError, ReviewQueue
from crmdq.storage.history import ActionLog, FailureLog, ScanHistory
from crmdq.storage.kv import FileStore, KeyValueStore
from crmdq.storage.models import Record


@dataclass
class Workspace:
    """Persistent logs and rules sharing one key-value store."""

    store: KeyValueStore
    actions: ActionLog
    failures: FailureLog
    scans: ScanHistory
    rules: RuleBook


def open_workspace(settings: Settings, store: Optional[KeyValueStore] = None) -> Workspace:
    store = store if store is not None else FileStore(settings.storage.root)
    return Workspace(
        store=store,
        actions=ActionLog(store, limit=settings.storage.action_limit),
        failures=FailureLog(store, limit=settings.storage.failure_limit),
        scans=ScanHistory(store, limit=settings.storage.scan_limit),
        rules=RuleBook(store),
    )


@contextlib.asynccontextmanager
async def scan_session(
    tool: str,
    object_type: str,
    settings: Settings,
    workspace: Workspace,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AsyncIterator[CrmClient]:
    """Open a client for one scan and append its metrics to the scan history."""
    metrics = MetricsRegistry()
    set_context(scan_id=uuid.uuid4().hex[:12], tool=tool, object_type=object_type)
    try:
        with record_duration(metrics, "scan_duration_ms"):
            async with create_client_session(settings, metrics=metrics, transport=transport) as client:
                yield client
        workspace.scans.record(tool, object_type, metrics.snapshot())
    finally:
        clear_context()


async def _fetch(client: CrmClient, object_type: str, settings: Settings) -> List[Record]:
    return await fetch_all(
        client,
        object_type,
        settings.properties_for(object_type),
        page_size=settings.scan.page_size,
        page_pause=settings.scan.page_pause_ms / 1000,
        max_records=settings.scan.max_records,
    )


async def _report_clusters(
    client: CrmClient,
    clusters: List[Cluster],
    *,
    tool: str,
    object_type: str,
    workspace: Workspace,
    suggest: bool,
) -> Dict[str, Any]:
    client.metrics.incr("clusters_found", len(clusters))
    suggested: List[str] = []
    if suggest:
        orchestrator = MergeOrchestrator(
            client, actions=workspace.actions, failures=workspace.failures, object_type=object_type
        )
        for cluster in clusters:
            action = await orchestrator.suggest_merge(cluster, source=tool)
            suggested.append(action.id)
    return {
        "object_type": object_type,
        "clusters": [cluster.summary() for cluster in clusters],
        "suggested": suggested,
    }


async def run_duplicates(args: argparse.Namespace, settings: Settings, workspace: Workspace, *, transport=None) -> Dict[str, Any]:
    """Exact clusters on one governing field (email by default)."""
    async with scan_session("duplicates", args.object, settings, workspace, transport=transport) as client:
        records = await _fetch(client, args.object, settings)
        clusters = cluster_exact(records, args.field)
        return await _report_clusters(
            client, clusters, tool="duplicates", object_type=args.object, workspace=workspace, suggest=args.suggest
        )


async def run_companies(args: argparse.Namespace, settings: Settings, workspace: Workspace, *, transport=None) -> Dict[str, Any]:
    async with scan_session("companies", "companies", settings, workspace, transport=transport) as client:
        records = await _fetch(client, "companies", settings)
        clusters = cluster_companies(records)
        return await _report_clusters(
            client, clusters, tool="companies", object_type="companies", workspace=workspace, suggest=args.suggest
        )


async def run_fuzzy(args: argparse.Namespace, settings: Settings, workspace: Workspace, *, transport=None) -> Dict[str, Any]:
    threshold = args.threshold if args.threshold is not None else settings.scan.fuzzy_threshold
    async with scan_session("fuzzy", args.object, settings, workspace, transport=transport) as client:
        records = await _fetch(client, args.object, settings)
        clusters = cluster_fuzzy(records, fields=FuzzyFields(), threshold=threshold)
        return await _report_clusters(
            client, clusters, tool="fuzzy", object_type=args.object, workspace=workspace, suggest=args.suggest
        )


async def run_merge(args: argparse.Namespace, settings: Settings, workspace: Workspace, *, transport=None) -> Dict[str, Any]:
    async with scan_session("merge", args.object, settings, workspace, transport=transport) as client:
        orchestrator = MergeOrchestrator(
            client,
            actions=workspace.actions,
            failures=workspace.failures,
            object_type=args.object,
            properties=settings.properties_for(args.object),
        )
        result = await orchestrator.execute_merge(args.primary, args.ids, payload={"source": "cli"})
        return result.as_dict()


async def run_review(args: argparse.Namespace, settings: Settings, workspace: Workspace, *, transport=None) -> Any:
    if args.review_command == "list":
        return [action.to_blob() for action in ReviewQueue(None, actions=workspace.actions, failures=workspace.failures).pending()]
    if args.review_command == "reject":
        queue = ReviewQueue(None, actions=workspace.actions, failures=workspace.failures)
        return queue.reject(args.action_id).to_blob()
    async with scan_session(f"review-{args.review_command}", "actions", settings, workspace, transport=transport) as client:
        queue = ReviewQueue(client, actions=workspace.actions, failures=workspace.failures)
        if args.review_command == "accept":
            return (await queue.accept(args.action_id)).as_dict()
        return (await queue.undo(args.action_id)).as_dict()


def _parse_config(pairs: Optional[List[str]]) -> Dict[str, str]:
    config: Dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise SystemExit(f"Invalid --config entry {pair!r}; expected key=value")
        config[key] = value
    return config


async def run_rules(args: argparse.Namespace, settings: Settings, workspace: Workspace, *, transport=None) -> Any:
    book = workspace.rules
    if args.rules_command == "list":
        return [rule.model_dump(mode="json", by_alias=True) for rule in book.list()]
    if args.rules_command == "add":
        rule = Rule(
            object_type=args.object,
            property=args.property,
            op=args.op,
            config=_parse_config(args.config),
            label=args.label,
        )
        return book.save(rule).model_dump(mode="json", by_alias=True)
    if args.rules_command == "import":
        saved = [book.save(rule) for rule in load_rules_file(Path(args.path))]
        return [rule.model_dump(mode="json", by_alias=True) for rule in saved]
    if args.rules_command == "delete":
        return {"id": args.rule_id, "deleted": book.delete(args.rule_id)}

    rules = book.for_object(args.object)
    async with scan_session("rules", args.object, settings, workspace, transport=transport) as client:
        records = await _fetch(client, args.object, settings)
        updates = apply_rules(args.object, records, rules)
        report: Dict[str, Any] = {
            "object_type": args.object,
            "rules": len(rules),
            "records": len(records),
            "updates": [{"id": update.id, "fields": update.fields} for update in updates],
        }
        if args.commit and updates:
            result = await commit_updates(
                client, args.object, updates, records, actions=workspace.actions, failures=workspace.failures
            )
            report["commit"] = result.as_dict()
        return report


async def run_anomalies(args: argparse.Namespace, settings: Settings, workspace: Workspace, *, transport=None) -> Dict[str, Any]:
    async with scan_session("anomalies", args.object, settings, workspace, transport=transport) as client:
        records = await _fetch(client, args.object, settings)
        findings = scan_anomalies(records)
        client.metrics.incr("anomalies", len(findings))
        return {"object_type": args.object, "scanned": len(records), "anomalies": [item.as_dict() for item in findings]}


async def run_fill_rate(args: argparse.Namespace, settings: Settings, workspace: Workspace, *, transport=None) -> Dict[str, Any]:
    async with scan_session("fill-rate", args.object, settings, workspace, transport=transport) as client:
        rates = await property_fill_rates(client, args.object, failures=workspace.failures)
        return {"object_type": args.object, "properties": [rate.as_dict() for rate in rates]}


async def run_format(args: argparse.Namespace, settings: Settings, workspace: Workspace, *, transport=None) -> Dict[str, Any]:
    """Preset formatting suggestions; ``--commit`` writes the selected ones."""
    async with scan_session("format", args.object, settings, workspace, transport=transport) as client:
        records = await fetch_all(
            client,
            args.object,
            preset_properties(args.object),
            page_size=settings.scan.page_size,
            page_pause=settings.scan.page_pause_ms / 1000,
            max_records=settings.scan.max_records,
        )
        suggestions = scan_formatting(args.object, records)
        client.metrics.incr("format_suggestions", len(suggestions))
        report: Dict[str, Any] = {
            "object_type": args.object,
            "scanned": len(records),
            "suggestions": [item.as_dict() for item in suggestions],
        }
        updates = to_updates(suggestions, set(args.only) if args.only else None)
        if args.commit and updates:
            result = await commit_updates(
                client, args.object, updates, records, actions=workspace.actions, failures=workspace.failures
            )
            report["commit"] = result.as_dict()
        return report


async def run_enrich(args: argparse.Namespace, settings: Settings, workspace: Workspace, *, transport=None) -> Dict[str, Any]:
    async with scan_session("enrich", args.object, settings, workspace, transport=transport) as client:
        report = await enrichment_gaps(client, args.object, failures=workspace.failures, properties=args.property)
        return report.as_dict()


async def run_objects(args: argparse.Namespace, settings: Settings, workspace: Workspace, *, transport=None) -> List[Dict[str, Any]]:
    async with scan_session("objects", "schemas", settings, workspace, transport=transport) as client:
        return await discover_object_types(client)


COMMANDS = {
    "duplicates": run_duplicates,
    "companies": run_companies,
    "fuzzy": run_fuzzy,
    "merge": run_merge,
    "review": run_review,
    "rules": run_rules,
    "anomalies": run_anomalies,
    "fill-rate": run_fill_rate,
    "format": run_format,
    "enrich": run_enrich,
    "objects": run_objects,
}


def build_arg_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(prog="crmdq", description="CRM data-quality toolkit")
    parser.add_argument("--settings", default=str(DEFAULT_SETTINGS_PATH), help="Path to settings TOML")
    sub = parser.add_subparsers(dest="command", required=True)

    duplicates = sub.add_parser("duplicates", help="Find exact duplicates on one field")
    duplicates.add_argument("--object", default="contacts", help="Object type to scan")
    duplicates.add_argument("--field", default="email", help="Governing field for exact matching")
    duplicates.add_argument("--suggest", action="store_true", help="Queue clusters as merge suggestions")

    companies = sub.add_parser("companies", help="Find duplicate companies by domain or name")
    companies.add_argument("--suggest", action="store_true", help="Queue clusters as merge suggestions")

    fuzzy = sub.add_parser("fuzzy", help="Find approximate duplicates by name, email and company")
    fuzzy.add_argument("--object", default="contacts")
    fuzzy.add_argument("--threshold", type=float, help="Composite score needed to join a cluster")
    fuzzy.add_argument("--suggest", action="store_true", help="Queue clusters as merge suggestions")

    merge = sub.add_parser("merge", help="Merge records into a primary")
    merge.add_argument("--object", default="contacts")
    merge.add_argument("--primary", required=True, help="Id of the surviving record")
    merge.add_argument("ids", nargs="+", help="Ids to merge into the primary")

    review = sub.add_parser("review", help="Work the merge suggestion queue")
    review_sub = review.add_subparsers(dest="review_command", required=True)
    review_sub.add_parser("list", help="Show pending suggestions")
    for name in ("accept", "reject", "undo"):
        command = review_sub.add_parser(name)
        command.add_argument("action_id")

    rules = sub.add_parser("rules", help="Manage and apply normalisation rules")
    rules_sub = rules.add_subparsers(dest="rules_command", required=True)
    rules_sub.add_parser("list", help="Show saved rules")
    add = rules_sub.add_parser("add", help="Save a new rule")
    add.add_argument("--object", default="contacts")
    add.add_argument("--property", required=True)
    add.add_argument("--op", required=True)
    add.add_argument("--label")
    add.add_argument("--config", action="append", help="Extra option as key=value (repeatable)")
    imported = rules_sub.add_parser("import", help="Load rules from a YAML file")
    imported.add_argument("path")
    delete = rules_sub.add_parser("delete", help="Remove a rule")
    delete.add_argument("rule_id")
    apply = rules_sub.add_parser("apply", help="Preview or commit rule updates")
    apply.add_argument("--object", default="contacts")
    apply.add_argument("--commit", action="store_true", help="Write updates upstream")

    anomalies = sub.add_parser("anomalies", help="Report malformed emails and websites")
    anomalies.add_argument("--object", default="contacts")

    fill_rate = sub.add_parser("fill-rate", help="Percentage of records holding each property")
    fill_rate.add_argument("--object", default="contacts")

    formatting = sub.add_parser("format", help="Suggest preset formatting fixes")
    formatting.add_argument("--object", default="contacts", choices=sorted(PRESETS))
    formatting.add_argument("--only", nargs="+", metavar="ID", help="Restrict committed fixes to these record ids")
    formatting.add_argument("--commit", action="store_true", help="Write the suggested values upstream")

    enrich = sub.add_parser("enrich", help="Coverage of core fields and records missing them")
    enrich.add_argument("--object", default="contacts")
    enrich.add_argument("--property", action="append", help="Core field to check (repeatable; defaults per object type)")

    sub.add_parser("objects", help="List standard and custom object types")

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the CLI."""
    load_dotenv()
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    configure_logging(Path("config/logging.yaml"))
    try:
        settings = load_settings(Path(args.settings))
    except ValueError as exc:
        raise SystemExit(str(exc))
    workspace = open_workspace(settings)

    if uvloop is not None:
        uvloop.install()

    handler = COMMANDS[args.command]
    try:
        result = asyncio.run(handler(args, settings, workspace))
    except (ReviewError, ValidationError) as exc:
        raise SystemExit(str(exc))
    print(json.dumps(result, indent=2, default=str))


if __name__ == "__main__":
    main()
