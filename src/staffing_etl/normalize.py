"""Normalization and coercion functions for staffing spreadsheet ingestion.

Every coercer is total: it accepts any cell value (None, str, int, float,
date, datetime, NaN) and returns a value of its declared type without
raising, so one malformed cell cannot abort a batch.
"""

from __future__ import annotations

import math
import re
import unicodedata
from datetime import date, datetime, timedelta
from typing import Any

SPREADSHEET_EPOCH = datetime(1899, 12, 30)

_DATE_FORMATS = (
    "%m/%d/%Y",
    "%m/%d/%y",
    "%m-%d-%Y",
    "%Y/%m/%d",
    "%b %d, %Y",
    "%B %d, %Y",
    "%d-%b-%Y",
)

_TRUE_TOKENS = frozenset({"yes", "y", "true", "1", "x"})


def _is_nan(value: Any) -> bool:
    return isinstance(value, float) and math.isnan(value)


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
# Rule 3: normalize_header_key
# ---------------------------------------------------------------------------

def normalize_header_key(header: Any) -> str:
    """Reduce a raw spreadsheet header to lowercase alphanumerics.

    'Background Status\\n(Valid, Pending or Flagged)' →
    'backgroundstatusvalidpendingorflagged'
    """
    v = to_trimmed_string(header)
    v = v.replace("\r", " ").replace("\n", " ")
    v = re.sub(r"\s+", " ", v).strip().lower()
    return re.sub(r"[^a-z0-9]", "", v)


# ---------------------------------------------------------------------------
# Rule 4: normalize_name  (for denylist lookup/matching)
# ---------------------------------------------------------------------------

def normalize_name(value: str | None) -> str | None:
    """Lowercase, remove punctuation except spaces, collapse spaces.

    'Last, First' is reordered to 'first last' so both spellings of the
    same person compare equal.
    """
    v = trim(value)
    if v is None:
        return None
    if "," in v:
        last, first = v.split(",", 1)
        v = f"{first} {last}"
    v = unicodedata.normalize("NFKD", v)
    v = "".join(c for c in v if not unicodedata.combining(c))
    v = v.lower()
    v = re.sub(r"[^\w\s]", "", v)
    v = re.sub(r"\s+", " ", v).strip()
    return v if v else None


def parse_name_parts(full_name: str | None) -> tuple[str | None, str | None]:
    """Split a full name into (first_name, last_name).

    Supports:
    - "Last, First Middle" → ("First Middle", "Last")
    - "First Last"         → ("First", "Last")
    - Single token         → (token, None)
    """
    v = normalize_space(full_name)
    if not v:
        return (None, None)
    if "," in v:
        parts = v.split(",", 1)
        last = trim(parts[0])
        first = trim(parts[1])
        return (first, last)
    tokens = v.split()
    if len(tokens) == 1:
        return (tokens[0], None)
    return (" ".join(tokens[:-1]), tokens[-1])


# ---------------------------------------------------------------------------
# Coercers
# ---------------------------------------------------------------------------

def to_trimmed_string(value: Any) -> str:
    """None/NaN → ''; integral floats lose their '.0'; everything else str().strip()."""
    if value is None or _is_nan(value):
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    try:
        return str(value).strip()
    except Exception:
        return ""


def to_date(value: Any) -> datetime | None:
    """Coerce a cell to a datetime, or None when it cannot be interpreted.

    Numbers are spreadsheet serial dates: day counts from 1899-12-30.
    Strings are tried as ISO-8601 first, then a fixed list of common
    US formats.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, (int, float)):
        if _is_nan(value) or math.isinf(value):
            return None
        try:
            return SPREADSHEET_EPOCH + timedelta(days=float(value))
        except (OverflowError, ValueError):
            return None
    v = to_trimmed_string(value)
    if not v:
        return None
    try:
        return datetime.fromisoformat(v)
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(v, fmt)
        except ValueError:
            continue
    return None


def to_digits_only_phone(value: Any) -> str:
    """Keep digits only: '(757) 435-1543' → '7574351543'."""
    return re.sub(r"\D", "", to_trimmed_string(value))


def to_bool_yes_no(value: Any) -> str:
    """Exact case-insensitive 'yes' → 'Yes'; anything else → ''."""
    return "Yes" if to_trimmed_string(value).lower() == "yes" else ""


def to_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return to_trimmed_string(value).lower() in _TRUE_TOKENS


def to_number(value: Any) -> float:
    """Parse '$1,234.50' → 1234.5; blanks and garbage → 0.0."""
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        if _is_nan(value) or math.isinf(value):
            return 0.0
        return float(value)
    cleaned = re.sub(r"[^0-9.\-]", "", to_trimmed_string(value))
    try:
        return float(cleaned)
    except ValueError:
        return 0.0


COERCERS = {
    "string": to_trimmed_string,
    "date": to_date,
    "phone": to_digits_only_phone,
    "yes_no": to_bool_yes_no,
    "number": to_number,
    "boolean": to_boolean,
}


# ---------------------------------------------------------------------------
# Row normalization
# ---------------------------------------------------------------------------

def normalize_row(raw_row: dict[Any, Any], config: Any) -> dict[str, Any]:
    """Rewrite raw headers to the canonical field names of ``config``.

    Headers absent from the alias table keep their normalized key so
    unanticipated columns flow through unused.  When several headers land
    on the same field, a non-blank value beats a blank one, then the
    header listed earliest in the alias table wins (canonical names come
    first).  Column order in the file never changes the result.
    """
    rank = {key: i for i, key in enumerate(config.aliases)}
    chosen: dict[str, tuple[tuple[int, int, str], Any]] = {}
    for header, value in raw_row.items():
        key = normalize_header_key(header)
        if not key:
            continue
        field_name = config.aliases.get(key, key)
        order = (
            0 if to_trimmed_string(value) else 1,
            rank.get(key, len(rank)),
            str(header),
        )
        if field_name not in chosen or order < chosen[field_name][0]:
            chosen[field_name] = (order, value)
    return {field_name: value for field_name, (_, value) in chosen.items()}
