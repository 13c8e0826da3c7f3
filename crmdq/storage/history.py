"""Bounded, newest-first logs persisted in a key-value store."""
from __future__ import annotations

import time
import uuid
from typing import Any, Callable, Dict, Generic, List, Mapping, Optional, Type, TypeVar, Union

import orjson
import structlog
from pydantic import ValidationError

from crmdq.storage.kv import KeyValueStore
from crmdq.storage.models import (
    UNDO_PAYLOAD,
    Action,
    ActionType,
    Failure,
    PatchUndo,
    RecreateUndo,
    ScanRecord,
    PersistedModel,
)

LOGGER = structlog.get_logger(__name__)

ACTIONS_KEY = "dqc.actions"
FAILURES_KEY = "dqc.failures"
SCANS_KEY = "dqc.scanHistory"

EntryT = TypeVar("EntryT", bound=PersistedModel)


def _now_ms() -> int:
    return int(time.time() * 1000)


def new_entry_id(ts: int) -> str:
    return f"{ts}-{uuid.uuid4().hex[:5]}"


class _BoundedLog(Generic[EntryT]):
    """Read-modify-write list of entries, newest first, capped at ``limit``."""

    model: Type[EntryT]

    def __init__(self, store: KeyValueStore, *, key: str, limit: int, clock: Callable[[], int] = _now_ms) -> None:
        self._store = store
        self._key = key
        self._limit = limit
        self._clock = clock

    def list(self) -> List[EntryT]:
        raw = self._store.get(self._key)
        if not raw:
            return []
        try:
            items = orjson.loads(raw)
        except orjson.JSONDecodeError:
            LOGGER.warning("log_blob_corrupt", key=self._key)
            return []
        if not isinstance(items, list):
            return []
        entries: List[EntryT] = []
        for item in items:
            try:
                entries.append(self.model.model_validate(item))
            except ValidationError as exc:
                LOGGER.warning("log_entry_skipped", key=self._key, error=str(exc))
        return entries

    def clear(self) -> None:
        self._store.remove(self._key)

    def _write(self, entries: List[EntryT]) -> None:
        blob = orjson.dumps([entry.to_blob() for entry in entries[: self._limit]])
        self._store.set(self._key, blob.decode())

    def _prepend(self, entry: EntryT) -> EntryT:
        self._write([entry, *self.list()])
        return entry


class ActionLog(_BoundedLog[Action]):
    """Append-only record of proposed, accepted, rejected and undone actions."""

    model = Action

    def __init__(self, store: KeyValueStore, *, limit: int = 1000, clock: Callable[[], int] = _now_ms) -> None:
        super().__init__(store, key=ACTIONS_KEY, limit=limit, clock=clock)

    def record(
        self,
        action_type: Union[ActionType, str],
        target_id: str,
        payload: Optional[Mapping[str, Any]] = None,
        undo_payload: Union[PatchUndo, RecreateUndo, Mapping[str, Any], None] = None,
    ) -> Action:
        ts = self._clock()
        if undo_payload is not None and not isinstance(undo_payload, (PatchUndo, RecreateUndo)):
            undo_payload = UNDO_PAYLOAD.validate_python(undo_payload)
        action = Action(
            id=new_entry_id(ts),
            ts=ts,
            type=ActionType(action_type),
            target_id=str(target_id),
            payload=dict(payload or {}),
            undo_payload=undo_payload,
        )
        LOGGER.info("action_recorded", action_id=action.id, type=action.type.value, target_id=action.target_id)
        return self._prepend(action)

    def get(self, action_id: str) -> Optional[Action]:
        return next((action for action in self.list() if action.id == action_id), None)

    def undo(self, action_id: str) -> Union[PatchUndo, RecreateUndo, None]:
        """Stamp ``undoneTs`` and hand back the stored undo payload.

        Unknown ids, actions without an undo payload and actions that were
        already undone all return ``None`` and leave the log untouched.
        """
        entries = self.list()
        for index, action in enumerate(entries):
            if action.id != action_id:
                continue
            if action.undone or action.undo_payload is None:
                return None
            entries[index] = action.model_copy(update={"undone_ts": self._clock()})
            self._write(entries)
            LOGGER.info("action_undone", action_id=action_id, type=action.type.value)
            return action.undo_payload
        return None


class FailureLog(_BoundedLog[Failure]):
    """Per-item failures from bulk operations."""

    model = Failure

    def __init__(self, store: KeyValueStore, *, limit: int = 2000, clock: Callable[[], int] = _now_ms) -> None:
        super().__init__(store, key=FAILURES_KEY, limit=limit, clock=clock)

    def record(self, reason: str, details: Optional[Mapping[str, Any]] = None) -> Failure:
        ts = self._clock()
        failure = Failure(id=new_entry_id(ts), ts=ts, reason=reason, details=dict(details or {}))
        LOGGER.warning("failure_recorded", reason=reason, details=failure.details)
        return self._prepend(failure)


class ScanHistory(_BoundedLog[ScanRecord]):
    """One summary entry per scan, most recent first."""

    model = ScanRecord

    def __init__(self, store: KeyValueStore, *, limit: int = 500, clock: Callable[[], int] = _now_ms) -> None:
        super().__init__(store, key=SCANS_KEY, limit=limit, clock=clock)

    def record(self, tool: str, object_type: str, metrics: Optional[Dict[str, Any]] = None) -> ScanRecord:
        ts = self._clock()
        entry = ScanRecord(id=new_entry_id(ts), ts=ts, tool=tool, object_type=object_type, metrics=dict(metrics or {}))
        return self._prepend(entry)
