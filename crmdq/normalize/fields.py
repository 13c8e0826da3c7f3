"""Field level normalisation helpers.

Every transform is conservative and deterministic: values it does not
understand come back unchanged rather than raising.
"""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Optional

from dateutil import parser as dateparser

_NON_DIGITS_RE = re.compile(r"\D+")
_WHITESPACE_RE = re.compile(r"\s+")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_TWO_LETTERS_RE = re.compile(r"^[A-Za-z]{2}$")

COUNTRY_ALIASES = {
    "united states": "US",
    "united states of america": "US",
    "usa": "US",
    "us": "US",
    "u.s.": "US",
    "u.s.a.": "US",
    "america": "US",
    "canada": "CA",
    "ca": "CA",
    "united kingdom": "GB",
    "great britain": "GB",
    "england": "GB",
    "uk": "GB",
    "u.k.": "GB",
    "gb": "GB",
    "ireland": "IE",
    "australia": "AU",
    "new zealand": "NZ",
    "germany": "DE",
    "deutschland": "DE",
    "france": "FR",
    "spain": "ES",
    "españa": "ES",
    "italy": "IT",
    "netherlands": "NL",
    "the netherlands": "NL",
    "mexico": "MX",
    "méxico": "MX",
    "india": "IN",
}

CALLING_CODES = {
    "US": "1",
    "CA": "1",
    "GB": "44",
    "IE": "353",
    "AU": "61",
    "NZ": "64",
    "DE": "49",
    "FR": "33",
    "ES": "34",
    "IT": "39",
    "NL": "31",
    "MX": "52",
    "IN": "91",
}

US_STATES = {
    "alabama": "AL", "alaska": "AK", "arizona": "AZ", "arkansas": "AR", "california": "CA",
    "colorado": "CO", "connecticut": "CT", "delaware": "DE", "district of columbia": "DC",
    "florida": "FL", "georgia": "GA", "hawaii": "HI", "idaho": "ID", "illinois": "IL",
    "indiana": "IN", "iowa": "IA", "kansas": "KS", "kentucky": "KY", "louisiana": "LA",
    "maine": "ME", "maryland": "MD", "massachusetts": "MA", "michigan": "MI", "minnesota": "MN",
    "mississippi": "MS", "missouri": "MO", "montana": "MT", "nebraska": "NE", "nevada": "NV",
    "new hampshire": "NH", "new jersey": "NJ", "new mexico": "NM", "new york": "NY",
    "north carolina": "NC", "north dakota": "ND", "ohio": "OH", "oklahoma": "OK", "oregon": "OR",
    "pennsylvania": "PA", "rhode island": "RI", "south carolina": "SC", "south dakota": "SD",
    "tennessee": "TN", "texas": "TX", "utah": "UT", "vermont": "VT", "virginia": "VA",
    "washington": "WA", "west virginia": "WV", "wisconsin": "WI", "wyoming": "WY",
}


def lowercase(value: str) -> str:
    return value.lower()


def trim(value: str) -> str:
    return value.strip()


def _cap(part: str) -> str:
    return part[:1].upper() + part[1:]


def title_case(value: str) -> str:
    """Title-case a name, handling O'Brien and McDonald style parts."""
    words = []
    for part in _WHITESPACE_RE.split(value.strip().lower()):
        if not part:
            continue
        if "'" in part:
            words.append("'".join(_cap(piece) for piece in part.split("'")))
        elif part.startswith("mc") and len(part) > 2:
            words.append("Mc" + _cap(part[2:]))
        else:
            words.append(_cap(part))
    return " ".join(words)


def normalize_email(value: str) -> str:
    return value.strip().lower()


def is_valid_email(value: Optional[str]) -> bool:
    return bool(value) and bool(_EMAIL_RE.match(value))


def normalize_phone(value: str, default_country: Optional[str] = None) -> str:
    """Strip formatting; prefix a calling code only when none is present.

    North American numbers are only prefixed when they have ten digits. For
    other countries a single leading trunk ``0`` is dropped first.
    """
    digits = _NON_DIGITS_RE.sub("", value)
    if not digits:
        return ""
    if value.strip().startswith("+"):
        return "+" + digits
    country = normalize_country(default_country).upper() if default_country else None
    code = CALLING_CODES.get(country or "")
    if code is None:
        return digits
    if code == "1":
        return "+1" + digits if len(digits) == 10 else digits
    national = digits[1:] if digits.startswith("0") else digits
    return f"+{code}{national}" if national else digits


def normalize_country(value: str) -> str:
    key = value.strip().lower()
    return COUNTRY_ALIASES.get(key, value)


def normalize_state(value: str, country: Optional[str] = None) -> str:
    """Map US state names to postal codes when the country is US or unknown."""
    if country and normalize_country(str(country)).strip().upper() != "US":
        return value
    key = value.strip().lower()
    if key in US_STATES:
        return US_STATES[key]
    if _TWO_LETTERS_RE.match(value.strip()):
        return value.strip().upper()
    return value


_DEFAULT_A = datetime(2000, 1, 1)
_DEFAULT_B = datetime(2001, 2, 2)


def normalize_date(value: str) -> str:
    """Reformat a parseable date as ``YYYY-MM-DD``; leave anything else alone."""
    text = value.strip()
    if not text:
        return value
    if text.isdigit():
        if len(text) == 13:
            return datetime.fromtimestamp(int(text) / 1000, tz=timezone.utc).date().isoformat()
        if len(text) != 8:
            return value
    try:
        first = dateparser.parse(text, default=_DEFAULT_A)
        second = dateparser.parse(text, default=_DEFAULT_B)
    except (ValueError, OverflowError):
        return value
    # Components dateutil had to fill in differ between the two defaults.
    if first.date() != second.date():
        return value
    return first.date().isoformat()
