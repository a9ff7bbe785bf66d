"""
Field normalization helpers shared by the CRM stores and the duplicate resolver.
"""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, List, Optional, Set

from pydantic import TypeAdapter, ValidationError

_NON_DIGIT = re.compile(r"\D")
_WORD = re.compile(r"[a-z0-9]+")
_DATETIME = TypeAdapter(datetime)

# Words that carry no identity in deal names
STOPWORDS: Set[str] = {
    "the", "and", "for", "with", "from", "into", "deal", "deals",
    "inc", "llc", "ltd", "corp", "co", "new", "renewal", "opportunity",
}


def normalize_email(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    normalized = value.strip().lower()
    return normalized or None


def normalize_phone(value: Optional[str]) -> Optional[str]:
    """Strip every non-digit character; ``None`` when no digits remain."""
    if not value:
        return None
    digits = _NON_DIGIT.sub("", value)
    return digits or None


def normalize_name(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def significant_words(value: Optional[str]) -> Set[str]:
    words = _WORD.findall(normalize_name(value))
    return {w for w in words if len(w) >= 3 and w not in STOPWORDS}


def is_open_deal(record: dict) -> bool:
    """Open means status "open"; without a status, any stage not starting with "closed"."""
    status = record.get("status")
    if status:
        return str(status).strip().lower() == "open"
    return not normalize_name(record.get("stage")).startswith("closed")


def phone_pattern(digits: str) -> str:
    """ILIKE pattern matching any formatting of ``digits`` (e.g. ``%5%5%5%``)."""
    return "%" + "%".join(digits) + "%"


def parse_timestamp(value: Any) -> Optional[float]:
    """Epoch seconds for an ISO timestamp / datetime, ``None`` if unusable."""
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        try:
            # PostgREST fractions may have fewer than 6 digits
            dt = _DATETIME.validate_python(value.strip())
        except ValidationError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def merge_tags(primary: Optional[List[str]], secondary: Optional[List[str]]) -> List[str]:
    merged: List[str] = []
    for tag in list(primary or []) + list(secondary or []):
        if tag not in merged:
            merged.append(tag)
    return merged
