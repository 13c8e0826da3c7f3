"""Record snapshots and the persisted action / failure / scan models."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


@dataclass(frozen=True, slots=True)
class Record:
    """Snapshot of one remote entity's properties at fetch time."""

    id: str
    fields: Mapping[str, Optional[str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))

    @classmethod
    def from_api(cls, payload: Mapping[str, Any]) -> "Record":
        """Build a record from an object-store result (``{id, properties}``)."""
        return cls(id=str(payload["id"]), fields=dict(payload.get("properties") or {}))

    def get(self, name: str) -> Optional[str]:
        return self.fields.get(name)


class PersistedModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_blob(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class PatchInput(PersistedModel):
    """Restore ``fields`` on an existing object."""

    id: str
    fields: Dict[str, Optional[str]] = Field(default_factory=dict)

    def to_api(self) -> Dict[str, Any]:
        return {"id": self.id, "properties": dict(self.fields)}


class CreateInput(PersistedModel):
    """Recreate an object from its captured ``fields`` (it receives a new id)."""

    fields: Dict[str, Optional[str]] = Field(default_factory=dict)

    def to_api(self) -> Dict[str, Any]:
        return {"properties": {key: value for key, value in self.fields.items() if value is not None}}


class PatchUndo(PersistedModel):
    action: Literal["patch"] = "patch"
    payload: List[PatchInput] = Field(default_factory=list)


class RecreatePayload(PersistedModel):
    patch: List[PatchInput] = Field(default_factory=list)
    create: List[CreateInput] = Field(default_factory=list)


class RecreateUndo(PersistedModel):
    """Best-effort reversal of a merge: absorbed records come back with new ids."""

    action: Literal["recreate"] = "recreate"
    payload: RecreatePayload = Field(default_factory=RecreatePayload)


UndoPayload = Annotated[Union[PatchUndo, RecreateUndo], Field(discriminator="action")]
UNDO_PAYLOAD = TypeAdapter(UndoPayload)


class ActionType(StrEnum):
    MERGE_SUGGESTION = "merge_suggestion"
    MERGED = "merged"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    UNDONE = "undone"
    UPDATED = "updated"


class Action(PersistedModel):
    """One entry of the append-only action log."""

    id: str
    ts: int
    type: ActionType
    target_id: str = Field(alias="targetId")
    payload: Dict[str, Any] = Field(default_factory=dict)
    undo_payload: Optional[UndoPayload] = Field(default=None, alias="undoPayload")
    undone_ts: Optional[int] = Field(default=None, alias="undoneTs")

    @property
    def undone(self) -> bool:
        return self.undone_ts is not None


class Failure(PersistedModel):
    """A per-item failure kept for manual follow-up."""

    id: str
    ts: int
    reason: str
    details: Dict[str, Any] = Field(default_factory=dict)


class ScanRecord(PersistedModel):
    """Summary of one scan run."""

    id: str
    ts: int
    tool: str
    object_type: str = Field(alias="objectType")
    metrics: Dict[str, Any] = Field(default_factory=dict)


@dataclass(slots=True)
class BulkResult:
    """Outcome counts of a bulk mutation."""

    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    action_id: Optional[str] = None

    def summary(self) -> str:
        return f"{len(self.succeeded)} succeeded, {len(self.failed)} failed"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": list(self.succeeded),
            "failed": list(self.failed),
            "action_id": self.action_id,
            "summary": self.summary(),
        }
