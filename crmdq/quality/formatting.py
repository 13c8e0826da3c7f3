"""Built-in formatting presets: per-property suggestions for common CRM fields."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Collection, Dict, List, Mapping, Optional, Sequence

from crmdq.normalize import fields as fmt
from crmdq.normalize.rules import RecordUpdate
from crmdq.storage.models import Record

Suggest = Callable[[str, Mapping[str, Optional[str]]], str]


@dataclass(frozen=True, slots=True)
class Preset:
    property: str
    suggest: Suggest
    reason: str


PRESETS: Dict[str, List[Preset]] = {
    "contacts": [
        Preset("firstname", lambda value, props: fmt.title_case(value), "Title-case first name"),
        Preset("lastname", lambda value, props: fmt.title_case(value), "Title-case last name"),
        Preset("email", lambda value, props: fmt.normalize_email(value), "Lowercase email"),
        Preset("phone", lambda value, props: fmt.normalize_phone(value, props.get("country")), "Normalize phone"),
        Preset("country", lambda value, props: fmt.normalize_country(value), "Normalize country code"),
        Preset("state", lambda value, props: fmt.normalize_state(value, props.get("country")), "Normalize state code"),
    ],
    "companies": [
        Preset("name", lambda value, props: fmt.title_case(value), "Title-case company name"),
        Preset("city", lambda value, props: fmt.title_case(value), "Title-case city"),
        Preset("country", lambda value, props: fmt.normalize_country(value), "Normalize country code"),
        Preset("state", lambda value, props: fmt.normalize_state(value, props.get("country")), "Normalize state code"),
    ],
}


@dataclass(frozen=True, slots=True)
class FormatSuggestion:
    id: str
    property: str
    current: str
    suggested: str
    reason: str

    def as_dict(self) -> Dict[str, str]:
        return {
            "id": self.id,
            "property": self.property,
            "current": self.current,
            "suggested": self.suggested,
            "reason": self.reason,
        }


def preset_properties(object_type: str) -> List[str]:
    """Properties the preset reads, including the country used for phone and state."""
    names = [preset.property for preset in PRESETS.get(object_type, [])]
    if names and "country" not in names:
        names.append("country")
    return names


def scan_formatting(object_type: str, records: Sequence[Record]) -> List[FormatSuggestion]:
    """Suggest a value wherever a preset would change a non-empty property.

    Every suggestion is computed from the fetched values, so suggestions for
    the same record do not see each other.
    """
    suggestions: List[FormatSuggestion] = []
    for record in records:
        for preset in PRESETS.get(object_type, []):
            current = record.get(preset.property)
            if not isinstance(current, str) or not current:
                continue
            suggested = preset.suggest(current, record.fields)
            if suggested != current:
                suggestions.append(FormatSuggestion(record.id, preset.property, current, suggested, preset.reason))
    return suggestions


def to_updates(
    suggestions: Sequence[FormatSuggestion],
    selected: Optional[Collection[str]] = None,
) -> List[RecordUpdate]:
    """Group suggestions into one update per record, optionally only for ``selected`` ids."""
    grouped: Dict[str, Dict[str, Optional[str]]] = {}
    for item in suggestions:
        if selected is not None and item.id not in selected:
            continue
        grouped.setdefault(item.id, {})[item.property] = item.suggested
    return [RecordUpdate(id=record_id, fields=changes) for record_id, changes in grouped.items()]
