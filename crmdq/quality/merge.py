"""Merge execution with undo capture."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx
import structlog

from crmdq.fetch.client import CrmClient
from crmdq.fetch.retry import ApiError
from crmdq.quality.dedup import Cluster, choose_primary
from crmdq.storage.history import ActionLog, FailureLog
from crmdq.storage.models import (
    Action,
    ActionType,
    CreateInput,
    PatchInput,
    RecreatePayload,
    RecreateUndo,
)

LOGGER = structlog.get_logger(__name__)


@dataclass(slots=True)
class MergeResult:
    primary_id: str
    merged: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    action_id: Optional[str] = None

    def summary(self) -> str:
        return f"{len(self.merged)} succeeded, {len(self.failed)} failed"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "primary_id": self.primary_id,
            "merged": list(self.merged),
            "failed": list(self.failed),
            "action_id": self.action_id,
            "summary": self.summary(),
        }


class MergeOrchestrator:
    """Snapshots, merges sequentially and records one ``merged`` action."""

    def __init__(
        self,
        client: CrmClient,
        *,
        actions: ActionLog,
        failures: FailureLog,
        object_type: str = "contacts",
        properties: Sequence[str] = (),
    ) -> None:
        self._client = client
        self._actions = actions
        self._failures = failures
        self.object_type = object_type
        self.properties = list(properties)

    async def snapshot(self, ids: Sequence[str]) -> Dict[str, Dict[str, Optional[str]]]:
        """Fetch current properties for each id; unreachable records are skipped."""
        snapshots: Dict[str, Dict[str, Optional[str]]] = {}
        for object_id in ids:
            try:
                payload = await self._client.get_object(self.object_type, object_id, self.properties)
            except ApiError as exc:
                self._failures.record(
                    "snapshot_failed",
                    {"objectType": self.object_type, "id": object_id, "status": exc.status, "message": exc.message},
                )
                continue
            snapshots[object_id] = dict(payload.get("properties") or {})
        return snapshots

    @staticmethod
    def build_undo(
        primary_id: str,
        merge_ids: Sequence[str],
        snapshots: Mapping[str, Mapping[str, Optional[str]]],
    ) -> RecreateUndo:
        """Restore the primary's fields and recreate each absorbed record."""
        patch = []
        if primary_id in snapshots:
            patch.append(PatchInput(id=primary_id, fields=dict(snapshots[primary_id])))
        create = [CreateInput(fields=dict(snapshots[member])) for member in merge_ids if member in snapshots]
        return RecreateUndo(payload=RecreatePayload(patch=patch, create=create))

    async def execute_merge(
        self,
        primary_id: str,
        merge_ids: Sequence[str],
        *,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> MergeResult:
        merge_ids = [member for member in merge_ids if member != primary_id]
        snapshots = await self.snapshot([primary_id, *merge_ids])
        undo = self.build_undo(primary_id, merge_ids, snapshots)
        result = MergeResult(primary_id=primary_id)
        metrics = self._client.metrics
        fatal: Optional[httpx.TransportError] = None
        for index, member in enumerate(merge_ids):
            try:
                await self._client.merge(self.object_type, primary_id, member)
            except ApiError as exc:
                metrics.incr("merges_failed")
                self._record_failure(primary_id, member, status=exc.status, message=exc.message)
                result.failed.append(member)
                continue
            except httpx.TransportError as exc:
                # Upstream unreachable: stop, but keep the undo for what already merged.
                metrics.incr("merges_failed")
                self._record_failure(primary_id, member, status=None, message=f"{type(exc).__name__}: {exc}")
                result.failed.extend(merge_ids[index:])
                fatal = exc
                break
            metrics.incr("merges_ok")
            result.merged.append(member)
        action = self._actions.record(
            ActionType.MERGED,
            primary_id,
            payload={
                **dict(payload or {}),
                "objectType": self.object_type,
                "primaryId": primary_id,
                "mergeIds": list(merge_ids),
                "merged": list(result.merged),
                "failed": list(result.failed),
            },
            undo_payload=undo,
        )
        result.action_id = action.id
        if fatal is not None:
            LOGGER.error("merge_aborted", primary_id=primary_id, action_id=action.id, summary=result.summary())
            raise fatal
        LOGGER.info("merge_complete", primary_id=primary_id, summary=result.summary())
        return result

    def _record_failure(self, primary_id: str, member: str, *, status: Optional[int], message: str) -> None:
        self._failures.record(
            "merge_failed",
            {
                "objectType": self.object_type,
                "primaryId": primary_id,
                "mergeId": member,
                "status": status,
                "message": message,
            },
        )

    async def suggest_merge(self, cluster: Cluster, *, source: str) -> Action:
        """Queue a cluster for review as a ``merge_suggestion`` action."""
        primary, rest = choose_primary(cluster)
        merge_ids = [record.id for record in rest]
        snapshots = await self.snapshot([primary.id, *merge_ids])
        return self._actions.record(
            ActionType.MERGE_SUGGESTION,
            primary.id,
            payload={
                "objectType": self.object_type,
                "primaryId": primary.id,
                "mergeIds": merge_ids,
                "topScore": round(cluster.top_score, 4),
                "source": source,
            },
            undo_payload=self.build_undo(primary.id, merge_ids, snapshots),
        )
