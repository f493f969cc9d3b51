"""Normalization functions for catalog dump and API values.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import re
from datetime import datetime

_SENTINEL_TS = "0000-00-00 00:00:00"
_TS_FORMAT = "%Y-%m-%d %H:%M:%S"
_INT_RE = re.compile(r"^[+-]?\d+$")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: normalize_md5
# ---------------------------------------------------------------------------

def normalize_md5(value: str | None) -> str | None:
    """Lowercase a 32-hex content hash; anything else → None."""
    v = trim(value)
    if v is None:
        return None
    v = v.lower()
    return v if re.fullmatch(r"[0-9a-f]{32}", v) else None


# ---------------------------------------------------------------------------
# Rule 4: normalize_format
# ---------------------------------------------------------------------------

def normalize_format(value: str | None) -> str | None:
    """Lowercase a file extension and drop a leading dot."""
    v = trim(value)
    if v is None:
        return None
    v = v.lower().lstrip(".")
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 5: parse_ts
# ---------------------------------------------------------------------------

def parse_ts(value: str | None) -> datetime | None:
    """Parse '%Y-%m-%d %H:%M:%S'.  Sentinel '0000-00-00 00:00:00' → None."""
    v = trim(value)
    if v is None or v == _SENTINEL_TS:
        return None
    try:
        return datetime.strptime(v, _TS_FORMAT)
    except ValueError:
        return None


def format_ts(value: datetime | None) -> str:
    """Inverse of parse_ts; None formats as the sentinel."""
    if value is None:
        return _SENTINEL_TS
    return value.strftime(_TS_FORMAT)


# ---------------------------------------------------------------------------
# Rule 6: parse_int
# ---------------------------------------------------------------------------

def parse_int(value: str | int | None) -> int | None:
    """Parse a base-10 integer, returning None on failure."""
    if isinstance(value, int):
        return value
    v = trim(value)
    if v is None or not _INT_RE.match(v):
        return None
    return int(v)


# ---------------------------------------------------------------------------
# Rule 7: parse_year
# ---------------------------------------------------------------------------

def parse_year(value: str | None) -> int | None:
    """Extract a plausible 4-digit year from free text ('c1999', '1999-2001')."""
    v = trim(value)
    if v is None:
        return None
    m = re.search(r"(1[0-9]{3}|20[0-9]{2})", v)
    return int(m.group(1)) if m else None
