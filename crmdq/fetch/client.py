"""Endpoint wrappers for the CRM object store, all routed through the scheduler."""
from __future__ import annotations

import contextlib
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence

import httpx
import orjson
import structlog

from crmdq.config import Settings
from crmdq.fetch.retry import ApiError, RetryPolicy
from crmdq.fetch.scheduler import RequestScheduler
from crmdq.observability.metrics import MetricsRegistry

LOGGER = structlog.get_logger(__name__)

BATCH_LIMIT = 100


def chunked(items: Sequence[Any], size: int = BATCH_LIMIT) -> List[Sequence[Any]]:
    return [items[start : start + size] for start in range(0, len(items), size)]


class CrmClient:
    """Thin async wrapper over the ``/crm/v3`` REST surface."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        scheduler: RequestScheduler,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._http = http
        self.scheduler = scheduler
        self.metrics = metrics or MetricsRegistry()

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Mapping[str, Any]] = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        """Send one request through the scheduler and decode its JSON body."""
        content = orjson.dumps(json) if json is not None else None
        headers = {"Content-Type": "application/json"} if content is not None else None
        label = f"{method} {path}"

        async def task() -> httpx.Response:
            return await self._http.request(method, path, content=content, params=params, headers=headers)

        response = await self.scheduler.submit(task, label=label)
        if response.status_code == 204 or not response.content:
            return None
        try:
            return orjson.loads(response.content)
        except orjson.JSONDecodeError as exc:
            raise ApiError(response.status_code, f"malformed response body: {exc}", label=label) from exc

    async def list_page(
        self,
        object_type: str,
        properties: Sequence[str] = (),
        *,
        limit: int = 100,
        after: Optional[str] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"limit": limit}
        if after:
            params["after"] = after
        if properties:
            params["properties"] = ",".join(properties)
        return await self.request("GET", f"/crm/v3/objects/{object_type}", params=params) or {}

    async def get_object(self, object_type: str, object_id: str, properties: Sequence[str] = ()) -> Dict[str, Any]:
        params = {"properties": ",".join(properties)} if properties else None
        return await self.request("GET", f"/crm/v3/objects/{object_type}/{object_id}", params=params) or {}

    async def batch_update(self, object_type: str, inputs: Sequence[Mapping[str, Any]]) -> int:
        """Update in chunks of 100; raises on the first failing chunk."""
        updated = 0
        for chunk in chunked(list(inputs)):
            await self.request("POST", f"/crm/v3/objects/{object_type}/batch/update", json={"inputs": list(chunk)})
            updated += len(chunk)
        return updated

    async def batch_create(self, object_type: str, inputs: Sequence[Mapping[str, Any]]) -> int:
        created = 0
        for chunk in chunked(list(inputs)):
            await self.request("POST", f"/crm/v3/objects/{object_type}/batch/create", json={"inputs": list(chunk)})
            created += len(chunk)
        return created

    async def create_object(self, object_type: str, properties: Mapping[str, Any]) -> Dict[str, Any]:
        return await self.request("POST", f"/crm/v3/objects/{object_type}", json={"properties": dict(properties)}) or {}

    async def merge(self, object_type: str, primary_id: str, merge_id: str) -> Any:
        return await self.request(
            "POST",
            f"/crm/v3/objects/{object_type}/{primary_id}/merge",
            json={"objectIdToMerge": merge_id},
        )

    async def search_total(self, object_type: str, filter_groups: Sequence[Mapping[str, Any]] = ()) -> int:
        body = {"limit": 1, "filterGroups": list(filter_groups)}
        result = await self.request("POST", f"/crm/v3/objects/{object_type}/search", json=body) or {}
        return int(result.get("total") or 0)

    async def count_with_property(self, object_type: str, property_name: str) -> int:
        groups = [{"filters": [{"propertyName": property_name, "operator": "HAS_PROPERTY"}]}]
        return await self.search_total(object_type, groups)

    async def list_properties(self, object_type: str) -> List[Dict[str, Any]]:
        result = await self.request("GET", f"/crm/v3/properties/{object_type}")
        if isinstance(result, dict):
            return list(result.get("results") or [])
        return list(result or [])

    async def list_schemas(self) -> List[Dict[str, Any]]:
        result = await self.request("GET", "/crm/v3/schemas") or {}
        return list(result.get("results") or [])


def build_scheduler(settings: Settings, metrics: Optional[MetricsRegistry] = None) -> RequestScheduler:
    cfg = settings.scheduler
    policy = RetryPolicy(
        max_retries=cfg.max_retries,
        base_delay=cfg.backoff_base_ms / 1000,
        max_backoff=cfg.backoff_cap_ms / 1000,
        max_retry_after=cfg.max_retry_after_ms / 1000,
    )
    return RequestScheduler(
        base_delay=cfg.base_delay_ms / 1000,
        min_delay=cfg.min_delay_ms / 1000,
        max_delay=cfg.max_delay_ms / 1000,
        low_quota_threshold=cfg.low_quota_threshold,
        retry_policy=policy,
        remaining_header=cfg.remaining_header,
        interval_header=cfg.interval_header,
        metrics=metrics,
    )


@contextlib.asynccontextmanager
async def create_client_session(
    settings: Settings,
    *,
    token: Optional[str] = None,
    metrics: Optional[MetricsRegistry] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    scheduler: Optional[RequestScheduler] = None,
) -> AsyncIterator[CrmClient]:
    """Yield a configured :class:`CrmClient` for the duration of the context."""
    metrics = metrics or MetricsRegistry()
    token = token or settings.api.token()
    headers = {"User-Agent": settings.api.user_agent, "Accept": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    else:
        LOGGER.warning("api_token_missing", env=settings.api.token_env)
    scheduler = scheduler or build_scheduler(settings, metrics)
    async with httpx.AsyncClient(
        base_url=settings.api.base_url,
        headers=headers,
        timeout=settings.api.timeout_seconds,
        transport=transport,
    ) as http:
        async with scheduler:
            yield CrmClient(http, scheduler, metrics)
