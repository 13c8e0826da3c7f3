"""Deterministic comparison keys for duplicate detection."""
from __future__ import annotations

import re
from typing import Mapping, Optional

_KEY_STRIP_RE = re.compile(r"[^a-z0-9@. ]")
_SCHEME_RE = re.compile(r"^https?://")


def normalize_key(value: Optional[str]) -> str:
    """Trim, lowercase and drop everything outside ``[a-z0-9@. ]``."""
    if value is None:
        return ""
    return _KEY_STRIP_RE.sub("", str(value).strip().lower())


def normalize_domain(value: Optional[str]) -> str:
    if not value:
        return ""
    text = str(value).strip().lower()
    text = _SCHEME_RE.sub("", text)
    if text.startswith("www."):
        text = text[4:]
    return text.rstrip("/")


def full_name(fields: Mapping[str, Optional[str]], first: str = "firstname", last: str = "lastname") -> str:
    parts = [str(fields.get(first) or "").strip(), str(fields.get(last) or "").strip()]
    return " ".join(part for part in parts if part)
