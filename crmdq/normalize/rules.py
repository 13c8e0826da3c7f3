"""User-authored transform rules and their application to fetched records."""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import httpx
import orjson
import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from crmdq.fetch.client import CrmClient, chunked
from crmdq.fetch.retry import ApiError
from crmdq.normalize import fields as fmt
from crmdq.storage.history import ActionLog, FailureLog
from crmdq.storage.kv import KeyValueStore
from crmdq.storage.models import ActionType, BulkResult, PatchInput, PatchUndo, Record

LOGGER = structlog.get_logger(__name__)

RULES_KEY = "dqc_rules_v1"


class RuleOp(StrEnum):
    LOWERCASE = "lowercase"
    TRIM = "trim"
    TITLECASE = "titlecase"
    EMAIL = "email"
    PHONE = "phone"
    COUNTRY = "country"
    STATE = "state"
    DATE = "date"


Transform = Callable[[str, Mapping[str, Optional[str]], Mapping[str, Any]], str]

TRANSFORMS: Dict[RuleOp, Transform] = {
    RuleOp.LOWERCASE: lambda value, props, config: fmt.lowercase(value),
    RuleOp.TRIM: lambda value, props, config: fmt.trim(value),
    RuleOp.TITLECASE: lambda value, props, config: fmt.title_case(value),
    RuleOp.EMAIL: lambda value, props, config: fmt.normalize_email(value),
    RuleOp.PHONE: lambda value, props, config: fmt.normalize_phone(value, config.get("defaultCountry")),
    RuleOp.COUNTRY: lambda value, props, config: fmt.normalize_country(value),
    RuleOp.STATE: lambda value, props, config: fmt.normalize_state(
        value, props.get(config.get("countryProperty") or "country")
    ),
    RuleOp.DATE: lambda value, props, config: fmt.normalize_date(value),
}


class Rule(BaseModel):
    """A transform applied to one property of one object type."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: new_rule_id())
    object_type: str = Field(alias="objectType")
    property: str
    op: RuleOp
    config: Dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True
    label: Optional[str] = None
    created_at: Optional[int] = Field(default=None, alias="createdAt")

    @model_validator(mode="before")
    @classmethod
    def _lift_legacy_op(cls, data: Any) -> Any:
        # Older blobs stored {"type": "transform", "config": {"op": ...}}.
        if isinstance(data, dict) and "op" not in data:
            config = data.get("config") or {}
            if isinstance(config, dict) and config.get("op"):
                data = {**data, "op": config["op"]}
        return data

    def transform(self, props: Mapping[str, Optional[str]]) -> Optional[str]:
        """Return the transformed value, or None when the property is not a string."""
        value = props.get(self.property)
        if not isinstance(value, str):
            return None
        return TRANSFORMS[self.op](value, props, self.config)


def new_rule_id() -> str:
    return "r_" + uuid.uuid4().hex[:8]


@dataclass(slots=True)
class RecordUpdate:
    """Minimal property diff for one record."""

    id: str
    fields: Dict[str, Optional[str]]

    def to_api(self) -> Dict[str, Any]:
        return {"id": self.id, "properties": dict(self.fields)}


def apply_rules(object_type: str, records: Sequence[Record], rules: Sequence[Rule]) -> List[RecordUpdate]:
    """Run enabled rules in list order and emit only properties that changed.

    Rules targeting the same property see each other's output; the last one
    wins. Records whose final values equal the fetched ones yield no update.
    """
    active = [rule for rule in rules if rule.enabled and rule.object_type == object_type]
    updates: List[RecordUpdate] = []
    if not active:
        return updates
    for record in records:
        working: Dict[str, Optional[str]] = dict(record.fields)
        for rule in active:
            result = rule.transform(working)
            if result is not None and result != working.get(rule.property):
                working[rule.property] = result
        delta = {key: value for key, value in working.items() if record.fields.get(key) != value}
        if delta:
            updates.append(RecordUpdate(id=record.id, fields=delta))
    return updates


class RuleBook:
    """Rules persisted in the key-value store, in insertion order."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    def list(self) -> List[Rule]:
        raw = self._store.get(RULES_KEY)
        if not raw:
            return []
        try:
            items = orjson.loads(raw)
        except orjson.JSONDecodeError:
            LOGGER.warning("rules_blob_corrupt", key=RULES_KEY)
            return []
        rules: List[Rule] = []
        for item in items if isinstance(items, list) else []:
            try:
                rules.append(Rule.model_validate(item))
            except ValidationError as exc:
                LOGGER.warning("rule_skipped", error=str(exc))
        return rules

    def _write(self, rules: Sequence[Rule]) -> None:
        blob = orjson.dumps([rule.model_dump(mode="json", by_alias=True) for rule in rules])
        self._store.set(RULES_KEY, blob.decode())

    def save(self, rule: Rule) -> Rule:
        """Insert the rule, or replace the one with the same id in place."""
        if rule.created_at is None:
            rule = rule.model_copy(update={"created_at": int(time.time() * 1000)})
        rules = self.list()
        for index, existing in enumerate(rules):
            if existing.id == rule.id:
                rules[index] = rule
                break
        else:
            rules.append(rule)
        self._write(rules)
        return rule

    def delete(self, rule_id: str) -> bool:
        rules = self.list()
        kept = [rule for rule in rules if rule.id != rule_id]
        self._write(kept)
        return len(kept) != len(rules)

    def for_object(self, object_type: str) -> List[Rule]:
        return [rule for rule in self.list() if rule.enabled and rule.object_type == object_type]


def load_rules_file(path: Path) -> List[Rule]:
    """Read rule definitions from a YAML document (a list, or ``{rules: [...]}``)."""
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or []
    if isinstance(data, dict):
        data = data.get("rules", [])
    return [Rule.model_validate(item) for item in data]


async def commit_updates(
    client: CrmClient,
    object_type: str,
    updates: Sequence[RecordUpdate],
    records: Sequence[Record],
    *,
    actions: ActionLog,
    failures: FailureLog,
) -> BulkResult:
    """Push updates through batch update, chunk by chunk.

    A failed chunk is written to the failure log and the remaining chunks still
    run. Everything that went through is recorded as one ``updated`` action
    whose patch undo restores the fetched values (absent values restore as "").
    A transport error stops the run after that action is recorded and is re-raised.
    """
    originals = {record.id: record for record in records}
    result = BulkResult()
    undo: List[PatchInput] = []
    fatal: Optional[httpx.TransportError] = None
    chunks = chunked(list(updates))
    for index, chunk in enumerate(chunks):
        ids = [update.id for update in chunk]
        try:
            await client.batch_update(object_type, [update.to_api() for update in chunk])
        except ApiError as exc:
            client.metrics.incr("updates_failed", len(chunk))
            failures.record(
                "batch_update_failed",
                {"objectType": object_type, "ids": ids, "status": exc.status, "message": exc.message},
            )
            result.failed.extend(ids)
            continue
        except httpx.TransportError as exc:
            remaining = [update.id for pending in chunks[index:] for update in pending]
            client.metrics.incr("updates_failed", len(remaining))
            failures.record(
                "batch_update_failed",
                {"objectType": object_type, "ids": ids, "status": None, "message": f"{type(exc).__name__}: {exc}"},
            )
            result.failed.extend(remaining)
            fatal = exc
            break
        client.metrics.incr("updates_ok", len(chunk))
        result.succeeded.extend(ids)
        for update in chunk:
            original = originals.get(update.id)
            previous = {key: (original.get(key) if original else None) or "" for key in update.fields}
            undo.append(PatchInput(id=update.id, fields=previous))
    if result.succeeded:
        action = actions.record(
            ActionType.UPDATED,
            object_type,
            payload={"objectType": object_type, "ids": list(result.succeeded), "count": len(result.succeeded)},
            undo_payload=PatchUndo(payload=undo),
        )
        result.action_id = action.id
    if fatal is not None:
        LOGGER.error("updates_aborted", object_type=object_type, summary=result.summary())
        raise fatal
    LOGGER.info("updates_committed", object_type=object_type, summary=result.summary())
    return result
