"""Record-level anomaly detection (findings, never errors)."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence
from urllib.parse import urlsplit

from crmdq.normalize.fields import is_valid_email
from crmdq.storage.models import Record


@dataclass(frozen=True, slots=True)
class Anomaly:
    id: str
    property: str
    value: Optional[str]
    reason: str

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {"id": self.id, "property": self.property, "value": self.value, "reason": self.reason}


def is_valid_url(value: str) -> bool:
    """True when the value parses with both a scheme and a host."""
    try:
        parts = urlsplit(value.strip())
    except ValueError:
        return False
    return bool(parts.scheme) and bool(parts.netloc)


def scan_anomalies(
    records: Sequence[Record],
    *,
    email_field: str = "email",
    url_field: str = "website",
) -> List[Anomaly]:
    """Flag malformed emails and websites; empty values are not anomalies."""
    findings: List[Anomaly] = []
    for record in records:
        email = record.get(email_field)
        if isinstance(email, str) and email.strip() and not is_valid_email(email.strip()):
            findings.append(Anomaly(record.id, email_field, email, "invalid_email"))
        website = record.get(url_field)
        if isinstance(website, str) and website.strip() and not is_valid_url(website):
            findings.append(Anomaly(record.id, url_field, website, "invalid_url"))
    return findings
