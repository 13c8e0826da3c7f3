from typing import Dict, List, Optional

import httpx
import orjson
import pytest
import structlog

from crmdq.config import SchedulerSettings, Settings
from crmdq.storage.history import ActionLog, FailureLog, ScanHistory
from crmdq.storage.kv import MemoryStore


class FakeCrm:
    """In-memory stand-in for the ``/crm/v3`` object store."""

    def __init__(self, objects: Optional[Dict[str, Dict[str, Dict[str, Optional[str]]]]] = None) -> None:
        self.objects: Dict[str, Dict[str, Dict[str, Optional[str]]]] = {
            object_type: {key: dict(props) for key, props in items.items()}
            for object_type, items in (objects or {}).items()
        }
        self.properties: Dict[str, List[Dict[str, str]]] = {}
        self.schemas: List[Dict[str, object]] = []
        self.calls: List[tuple] = []
        self.reject_ids: set = set()
        self.reject_properties: set = set()
        self.fail_paths: Dict[str, int] = {}
        self.unreachable_ids: set = set()
        self._next_id = 9000

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls_to(self, suffix: str) -> List[tuple]:
        return [call for call in self.calls if call[1].endswith(suffix)]

    def _new_id(self) -> str:
        self._next_id += 1
        return str(self._next_id)

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        body = orjson.loads(request.content) if request.content else None
        self.calls.append((request.method, path, body))
        if path in self.fail_paths:
            return httpx.Response(self.fail_paths[path], json={"message": "forced failure"})
        if body and body.get("objectIdToMerge") in self.unreachable_ids:
            raise httpx.ConnectTimeout("upstream unreachable", request=request)
        if body and any(item.get("id") in self.unreachable_ids for item in body.get("inputs", [])):
            raise httpx.ConnectTimeout("upstream unreachable", request=request)
        parts = path.strip("/").split("/")

        if parts == ["crm", "v3", "schemas"]:
            return httpx.Response(200, json={"results": self.schemas})
        if parts[:3] == ["crm", "v3", "properties"]:
            return httpx.Response(200, json={"results": self.properties.get(parts[3], [])})
        if parts[:3] != ["crm", "v3", "objects"]:
            return httpx.Response(404, json={"message": "unknown route"})

        object_type = parts[3]
        store = self.objects.setdefault(object_type, {})
        rest = parts[4:]

        if request.method == "GET" and not rest:
            limit = int(request.url.params.get("limit", "100"))
            start = int(request.url.params.get("after", "0"))
            ids = list(store)
            page = [{"id": key, "properties": store[key]} for key in ids[start : start + limit]]
            payload: Dict[str, object] = {"results": page}
            if start + limit < len(ids):
                payload["paging"] = {"next": {"after": str(start + limit)}}
            return httpx.Response(200, json=payload)

        if request.method == "GET" and len(rest) == 1:
            if rest[0] not in store:
                return httpx.Response(404, json={"message": "Object not found"})
            return httpx.Response(200, json={"id": rest[0], "properties": store[rest[0]]})

        if rest == ["search"]:
            filters = [item for group in body.get("filterGroups", []) for item in group.get("filters", [])]
            names = [item["propertyName"] for item in filters]
            if any(name in self.reject_properties for name in names):
                return httpx.Response(400, json={"message": "bad property"})
            total = sum(1 for props in store.values() if all(props.get(name) for name in names))
            return httpx.Response(200, json={"total": total, "results": []})

        if rest == ["batch", "update"]:
            inputs = body["inputs"]
            if any(item["id"] in self.reject_ids for item in inputs):
                return httpx.Response(400, json={"message": "rejected batch"})
            for item in inputs:
                store.setdefault(item["id"], {}).update(item["properties"])
            return httpx.Response(200, json={"status": "COMPLETE"})

        if rest == ["batch", "create"]:
            created = []
            for item in body["inputs"]:
                new_id = self._new_id()
                store[new_id] = dict(item["properties"])
                created.append({"id": new_id})
            return httpx.Response(201, json={"results": created})

        if request.method == "POST" and not rest:
            new_id = self._new_id()
            store[new_id] = dict(body["properties"])
            return httpx.Response(201, json={"id": new_id, "properties": store[new_id]})

        if len(rest) == 2 and rest[1] == "merge":
            merge_id = body["objectIdToMerge"]
            if merge_id in self.reject_ids or merge_id not in store:
                return httpx.Response(400, json={"message": f"cannot merge {merge_id}"})
            store.pop(merge_id)
            return httpx.Response(200, json={"id": rest[0]})

        return httpx.Response(404, json={"message": "unknown route"})


@pytest.fixture(autouse=True)
def stdlib_logging():
    """Send structlog output through stdlib logging so stdout only carries CLI output."""
    structlog.configure(
        processors=[structlog.processors.add_log_level, structlog.processors.JSONRenderer()],
        logger_factory=structlog.stdlib.LoggerFactory(),
    )
    yield
    structlog.reset_defaults()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        scheduler=SchedulerSettings(base_delay_ms=0, min_delay_ms=0, max_retries=0),
        storage={"root": tmp_path / "store"},
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def actions(store):
    return ActionLog(store)


@pytest.fixture
def failures(store):
    return FailureLog(store)


@pytest.fixture
def scans(store):
    return ScanHistory(store)


@pytest.fixture
def make_crm():
    return FakeCrm
