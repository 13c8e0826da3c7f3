"""Property fill rates, enrichment gaps and object-type discovery."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import structlog

from crmdq.fetch.client import CrmClient
from crmdq.fetch.paginator import fetch_all
from crmdq.fetch.retry import ApiError
from crmdq.storage.history import FailureLog
from crmdq.storage.models import Record

LOGGER = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class FillRate:
    name: str
    label: str
    group: Optional[str]
    filled: int
    total: int

    @property
    def rate(self) -> float:
        return round(self.filled / self.total * 100, 2) if self.total else 0.0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "label": self.label,
            "group": self.group,
            "filled": self.filled,
            "total": self.total,
            "rate": self.rate,
        }


async def property_fill_rates(
    client: CrmClient,
    object_type: str,
    *,
    failures: FailureLog,
) -> List[FillRate]:
    """Count records holding each property; failed counts are logged and skipped."""
    total = await client.search_total(object_type)
    if total == 0:
        return []
    rates: List[FillRate] = []
    for prop in await client.list_properties(object_type):
        name = prop.get("name")
        if not name:
            continue
        try:
            filled = await client.count_with_property(object_type, name)
        except ApiError as exc:
            failures.record(
                "fill_rate_failed",
                {"objectType": object_type, "property": name, "status": exc.status, "message": exc.message},
            )
            continue
        rates.append(
            FillRate(name=name, label=prop.get("label") or name, group=prop.get("groupName"), filled=filled, total=total)
        )
    LOGGER.info("fill_rates_computed", object_type=object_type, properties=len(rates), total=total)
    return rates


CORE_FIELDS: Dict[str, List[str]] = {
    "contacts": ["firstname", "lastname", "email", "phone", "city", "state", "country"],
    "companies": ["name", "domain", "website", "industry", "numberofemployees", "city", "state", "country"],
}

STANDARD_OBJECTS = ["contacts", "companies", "deals", "tickets"]


@dataclass(slots=True)
class EnrichmentReport:
    object_type: str
    core: List[str] = field(default_factory=list)
    coverage: List[FillRate] = field(default_factory=list)
    missing: List[Record] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "object_type": self.object_type,
            "coverage": [rate.as_dict() for rate in self.coverage],
            "missing": [
                {"id": record.id, "missing": [name for name in self.core if not record.get(name)]}
                for record in self.missing
            ],
        }


async def enrichment_gaps(
    client: CrmClient,
    object_type: str,
    *,
    failures: FailureLog,
    properties: Optional[Sequence[str]] = None,
    sample_size: int = 200,
    limit: int = 50,
) -> EnrichmentReport:
    """Fill rate of the core fields plus a sample of records missing any of them."""
    core = list(properties or CORE_FIELDS.get(object_type, []))
    report = EnrichmentReport(object_type=object_type, core=core)
    total = await client.search_total(object_type)
    if total == 0 or not core:
        return report
    for name in core:
        try:
            filled = await client.count_with_property(object_type, name)
        except ApiError as exc:
            failures.record(
                "fill_rate_failed",
                {"objectType": object_type, "property": name, "status": exc.status, "message": exc.message},
            )
            continue
        report.coverage.append(FillRate(name=name, label=name, group=None, filled=filled, total=total))
    sample = await fetch_all(client, object_type, core, max_records=sample_size)
    report.missing = [record for record in sample if any(not record.get(name) for name in core)][:limit]
    LOGGER.info("enrichment_scanned", object_type=object_type, sampled=len(sample), missing=len(report.missing))
    return report


async def discover_object_types(client: CrmClient) -> List[Dict[str, Any]]:
    """Standard object types first, then every schema the account defines, by name."""
    schemas = await client.list_schemas()
    found: Dict[str, Dict[str, Any]] = {}
    for schema in schemas:
        name = schema.get("name")
        if not name:
            continue
        found[name] = {
            "name": name,
            "objectTypeId": schema.get("objectTypeId"),
            "label": (schema.get("labels") or {}).get("plural") or name,
            "primaryDisplayProperty": schema.get("primaryDisplayProperty"),
            "custom": True,
        }
    standard = [
        found.pop(name, {"name": name, "objectTypeId": None, "label": name, "primaryDisplayProperty": None, "custom": False})
        for name in STANDARD_OBJECTS
    ]
    return standard + [found[name] for name in sorted(found)]
