"""Review queue over merge suggestions, plus replay of stored undo payloads."""
from __future__ import annotations

from typing import List, Set

import httpx
import structlog

from crmdq.fetch.client import CrmClient
from crmdq.fetch.retry import ApiError
from crmdq.quality.merge import MergeOrchestrator, MergeResult
from crmdq.storage.history import ActionLog, FailureLog
from crmdq.storage.models import Action, ActionType, BulkResult, PatchUndo, RecreateUndo

LOGGER = structlog.get_logger(__name__)

_RESOLVING = {ActionType.ACCEPTED, ActionType.REJECTED, ActionType.UNDONE}
_UNDOABLE = {ActionType.MERGED, ActionType.UPDATED}


class ReviewError(Exception):
    """The requested review operation cannot be applied to this action."""


class UndoUnavailable(ReviewError):
    """The action is unknown, carries no undo payload, or was already undone."""


class ReviewQueue:
    def __init__(self, client: CrmClient, *, actions: ActionLog, failures: FailureLog) -> None:
        self._client = client
        self._actions = actions
        self._failures = failures

    def _resolved_ids(self, entries: List[Action]) -> Set[str]:
        return {
            str(entry.payload.get("sourceId"))
            for entry in entries
            if entry.type in _RESOLVING and entry.payload.get("sourceId")
        }

    def pending(self) -> List[Action]:
        """Suggestions nobody has accepted, rejected or undone yet, newest first."""
        entries = self._actions.list()
        resolved = self._resolved_ids(entries)
        return [
            entry
            for entry in entries
            if entry.type == ActionType.MERGE_SUGGESTION and entry.id not in resolved and not entry.undone
        ]

    def _pending_suggestion(self, action_id: str) -> Action:
        action = next((entry for entry in self.pending() if entry.id == action_id), None)
        if action is None:
            raise ReviewError(f"no pending merge suggestion {action_id}")
        return action

    async def accept(self, action_id: str) -> MergeResult:
        action = self._pending_suggestion(action_id)
        payload = action.payload
        orchestrator = MergeOrchestrator(
            self._client,
            actions=self._actions,
            failures=self._failures,
            object_type=str(payload.get("objectType") or "contacts"),
        )
        result = await orchestrator.execute_merge(
            str(payload.get("primaryId") or action.target_id),
            [str(member) for member in payload.get("mergeIds") or []],
            payload={"sourceId": action.id},
        )
        self._actions.record(
            ActionType.ACCEPTED,
            action.target_id,
            payload={"sourceId": action.id, "mergeActionId": result.action_id, "summary": result.summary()},
        )
        return result

    def reject(self, action_id: str) -> Action:
        action = self._pending_suggestion(action_id)
        return self._actions.record(ActionType.REJECTED, action.target_id, payload={"sourceId": action.id})

    async def undo(self, action_id: str) -> BulkResult:
        """Replay the stored undo payload and record an ``undone`` action.

        Only ``merged`` and ``updated`` actions are undoable: a suggestion never
        touched the store. Merged-away records come back through create calls,
        so they receive new ids; a failed batch create falls back to creating
        records one by one. A transport error still records the ``undone``
        action for whatever was replayed before it is re-raised.
        """
        action = self._actions.get(action_id)
        if action is not None and action.type not in _UNDOABLE:
            raise UndoUnavailable(f"{action.type} action {action_id} cannot be undone")
        undo_payload = self._actions.undo(action_id)
        if action is None or undo_payload is None:
            raise UndoUnavailable(f"no undo information available for {action_id}")
        object_type = str(action.payload.get("objectType") or "contacts")
        result = BulkResult()
        try:
            if isinstance(undo_payload, PatchUndo):
                await self._patch(object_type, undo_payload.payload, result)
            elif isinstance(undo_payload, RecreateUndo):
                await self._patch(object_type, undo_payload.payload.patch, result)
                await self._recreate(object_type, undo_payload.payload.create, result)
        finally:
            entry = self._actions.record(ActionType.UNDONE, action.target_id, payload={"sourceId": action.id})
            result.action_id = entry.id
        LOGGER.info("undo_complete", action_id=action_id, summary=result.summary())
        return result

    async def _patch(self, object_type: str, inputs, result: BulkResult) -> None:
        if not inputs:
            return
        ids = [item.id for item in inputs]
        try:
            await self._client.batch_update(object_type, [item.to_api() for item in inputs])
        except ApiError as exc:
            self._failures.record(
                "undo_patch_failed",
                {"objectType": object_type, "ids": ids, "status": exc.status, "message": exc.message},
            )
            result.failed.extend(ids)
            return
        except httpx.TransportError as exc:
            self._failures.record(
                "undo_patch_failed",
                {"objectType": object_type, "ids": ids, "status": None, "message": f"{type(exc).__name__}: {exc}"},
            )
            result.failed.extend(ids)
            raise
        result.succeeded.extend(ids)

    async def _recreate(self, object_type: str, inputs, result: BulkResult) -> None:
        if not inputs:
            return
        try:
            await self._client.batch_create(object_type, [item.to_api() for item in inputs])
        except ApiError as exc:
            LOGGER.warning("batch_create_failed", object_type=object_type, status=exc.status, fallback="single")
        except httpx.TransportError as exc:
            for item in inputs:
                self._record_create_failure(object_type, item, status=None, message=f"{type(exc).__name__}: {exc}")
            result.failed.extend(f"created:{index}" for index in range(len(inputs)))
            raise
        else:
            result.succeeded.extend(f"created:{index}" for index in range(len(inputs)))
            return
        for index, item in enumerate(inputs):
            try:
                created = await self._client.create_object(object_type, item.to_api()["properties"])
            except ApiError as exc:
                self._record_create_failure(object_type, item, status=exc.status, message=exc.message)
                result.failed.append(f"created:{index}")
                continue
            except httpx.TransportError as exc:
                for pending in inputs[index:]:
                    self._record_create_failure(object_type, pending, status=None, message=f"{type(exc).__name__}: {exc}")
                result.failed.extend(f"created:{position}" for position in range(index, len(inputs)))
                raise
            result.succeeded.append(str(created.get("id") or f"created:{index}"))

    def _record_create_failure(self, object_type: str, item, *, status, message: str) -> None:
        self._failures.record(
            "undo_create_failed",
            {"objectType": object_type, "fields": dict(item.fields), "status": status, "message": message},
        )
