"""staffing_etl.records

Typed records: normalized rows with every configured field coerced to its
declared type.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from staffing_etl.normalize import COERCERS, normalize_row, to_trimmed_string
from staffing_etl.record_types import RecordTypeConfig

# Spreadsheet row 1 is the header, so data index 0 is row 2.
FIRST_DATA_ROW = 2


@dataclass
class TypedRecord:
    row_number: int
    values: dict[str, Any]
    raw: dict[str, Any] = field(default_factory=dict, repr=False)
    identity: str = ""

    def get(self, name: str, default: Any = None) -> Any:
        return self.values.get(name, default)

    def is_blank(self, name: str) -> bool:
        v = self.values.get(name)
        if v is None:
            return True
        if isinstance(v, str):
            return not v.strip()
        return False


def coerce_record(
    normalized: dict[str, Any],
    config: RecordTypeConfig,
    row_number: int,
) -> TypedRecord:
    """Coerce a NormalizedRow into a TypedRecord.

    Every field in config.fields receives a value of its declared type; a
    blank full-name field is composed from the first/last-name fields, and
    config.defaults fill fields that are still blank afterwards.
    """
    values: dict[str, Any] = {}
    for spec in config.fields:
        values[spec.name] = COERCERS[spec.type](normalized.get(spec.name))

    if config.name_field and not values.get(config.name_field):
        parts = [
            values.get(f, "")
            for f in (config.first_name_field, config.last_name_field)
            if f
        ]
        values[config.name_field] = " ".join(p for p in parts if p).strip()

    for name, default in config.defaults.items():
        if values.get(name) in (None, ""):
            values[name] = COERCERS[config.field_type(name)](default)

    return TypedRecord(row_number=row_number, values=values, raw=dict(normalized))


def prepare_records(
    raw_rows: list[dict[str, Any]],
    config: RecordTypeConfig,
) -> list[TypedRecord]:
    """Normalize and coerce a run's rows, preserving source order."""
    records = []
    for idx, raw_row in enumerate(raw_rows):
        normalized = normalize_row(raw_row, config)
        records.append(coerce_record(normalized, config, idx + FIRST_DATA_ROW))
    return records


def record_name(record: TypedRecord, config: RecordTypeConfig) -> str:
    if config.name_field:
        return to_trimmed_string(record.values.get(config.name_field))
    return ""
