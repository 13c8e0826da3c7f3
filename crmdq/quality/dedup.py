"""Exact and fuzzy duplicate clustering over fetched records.

Both strategies are greedy and order dependent: records are visited in fetch
order, and once a record joins a cluster it is never considered again. The
fuzzy pass is a plain O(n^2) pairwise comparison, which is fine for a few
thousand records; a record that would score higher against a later cluster
still stays in the first cluster that claimed it.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from dateutil import parser as dateparser

from crmdq.quality.keys import full_name, normalize_domain, normalize_key
from crmdq.quality.similarity import jaro_winkler
from crmdq.storage.models import Record

DEFAULT_THRESHOLD = 0.85


@dataclass(slots=True)
class Cluster:
    """Records believed to describe the same real-world entity."""

    records: List[Record]
    top_score: float = 1.0
    key: Optional[str] = None
    scores: Dict[str, float] = field(default_factory=dict)

    @property
    def ids(self) -> List[str]:
        return [record.id for record in self.records]

    def __len__(self) -> int:
        return len(self.records)

    def summary(self) -> Dict[str, object]:
        return {
            "key": self.key,
            "size": len(self.records),
            "top_score": round(self.top_score, 3),
            "records": [
                {"id": record.id, "score": round(self.scores.get(record.id, 1.0), 3), "fields": dict(record.fields)}
                for record in self.records
            ],
        }


def cluster_exact(
    records: Sequence[Record],
    field_name: str,
    *,
    key: Callable[[Optional[str]], str] = normalize_key,
) -> List[Cluster]:
    """Group records sharing the normalised value of one governing field."""
    groups: Dict[str, List[Record]] = {}
    for record in records:
        value = key(record.get(field_name))
        if not value:
            continue
        groups.setdefault(value, []).append(record)
    return [Cluster(records=members, key=value) for value, members in groups.items() if len(members) > 1]


def cluster_companies(records: Sequence[Record]) -> List[Cluster]:
    """Cluster companies by domain, then by name among records without a domain."""

    def domain_of(record: Record) -> str:
        return normalize_domain(record.get("domain") or record.get("website"))

    with_domain = [record for record in records if domain_of(record)]
    without_domain = [record for record in records if not domain_of(record)]
    by_domain: Dict[str, List[Record]] = {}
    for record in with_domain:
        by_domain.setdefault(domain_of(record), []).append(record)
    clusters = [Cluster(records=members, key=value) for value, members in by_domain.items() if len(members) > 1]
    clusters.extend(
        cluster_exact(without_domain, "name", key=lambda value: str(value or "").strip().lower())
    )
    return clusters


@dataclass(frozen=True)
class FuzzyFields:
    """Which properties feed the composite score, and how much each weighs."""

    name: Tuple[str, ...] = ("firstname", "lastname")
    identifier: str = "email"
    affiliation: str = "company"
    name_weight: float = 0.5
    identifier_weight: float = 0.3
    affiliation_weight: float = 0.2

    def keys_for(self, record: Record) -> Tuple[str, str, str]:
        if len(self.name) == 2:
            name = full_name(record.fields, *self.name)
        else:
            name = " ".join(str(record.get(part) or "").strip() for part in self.name)
        return (
            normalize_key(name),
            normalize_key(record.get(self.identifier)),
            normalize_key(record.get(self.affiliation)),
        )


def _part(a: str, b: str) -> float:
    if not a or not b:
        return 0.0
    return jaro_winkler(a, b)


def composite_score(left: Tuple[str, str, str], right: Tuple[str, str, str], fields: FuzzyFields) -> float:
    return (
        _part(left[0], right[0]) * fields.name_weight
        + _part(left[1], right[1]) * fields.identifier_weight
        + _part(left[2], right[2]) * fields.affiliation_weight
    )


def cluster_fuzzy(
    records: Sequence[Record],
    *,
    fields: FuzzyFields = FuzzyFields(),
    threshold: float = DEFAULT_THRESHOLD,
) -> List[Cluster]:
    """Greedy pairwise clustering on a weighted Jaro-Winkler composite."""
    keys = [fields.keys_for(record) for record in records]
    consumed = [False] * len(records)
    clusters: List[Cluster] = []
    for i, anchor in enumerate(records):
        if consumed[i]:
            continue
        members = [anchor]
        scores: Dict[str, float] = {}
        for j in range(i + 1, len(records)):
            if consumed[j]:
                continue
            score = composite_score(keys[i], keys[j], fields)
            if score >= threshold:
                members.append(records[j])
                scores[records[j].id] = score
                consumed[j] = True
        if len(members) > 1:
            consumed[i] = True
            top = max(scores.values())
            scores[anchor.id] = top
            clusters.append(Cluster(records=members, top_score=top, key=keys[i][0] or None, scores=scores))
    return clusters


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _created_at(record: Record, date_field: str) -> datetime:
    raw = record.get(date_field)
    if not raw:
        return _EPOCH
    try:
        parsed = dateparser.isoparse(str(raw))
    except (ValueError, OverflowError):
        return _EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def choose_primary(cluster: Cluster, *, date_field: str = "createdate") -> Tuple[Record, List[Record]]:
    """Return the most recently created record and the ones to merge into it."""
    ordered = sorted(cluster.records, key=lambda record: _created_at(record, date_field), reverse=True)
    return ordered[0], ordered[1:]
