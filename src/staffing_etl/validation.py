"""staffing_etl.validation

Per-record validation against a RecordTypeConfig.

All errors for a row are collected before deciding Valid/Invalid, so an
operator gets the complete error report for a file in one pass.

Error message formats:
    Row <n>: Missing required field '<field>'
    Row <n>: Invalid <field> '<value>'. Must be one of: <a, b, c>
    Row <n>: Missing identity; one of [eid, crmNumber] is required
    Row <n>: Invalid email '<value>'
    Row <n>: Invalid date '<raw>' for field '<field>'
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from staffing_etl.normalize import to_trimmed_string
from staffing_etl.record_types import RecordTypeConfig
from staffing_etl.records import TypedRecord

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

EMAIL_FIELDS = frozenset({"email"})


@dataclass
class ValidationResult:
    record: TypedRecord
    errors: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def _field_is_blank(record: TypedRecord, name: str, ftype: str) -> bool:
    if ftype == "date":
        return record.values.get(name) is None and not to_trimmed_string(record.raw.get(name))
    return record.is_blank(name)


def validate_record(record: TypedRecord, config: RecordTypeConfig) -> ValidationResult:
    """Validate one TypedRecord; enum values are rewritten to canonical casing."""
    n = record.row_number
    errors: list[str] = []

    for spec in config.fields:
        blank = _field_is_blank(record, spec.name, spec.type)
        if blank:
            if spec.required:
                errors.append(f"Row {n}: Missing required field '{spec.name}'")
            continue
        if spec.type == "date" and record.values.get(spec.name) is None:
            raw = to_trimmed_string(record.raw.get(spec.name))
            errors.append(f"Row {n}: Invalid date '{raw}' for field '{spec.name}'")

    for name, allowed in config.enums.items():
        value = to_trimmed_string(record.values.get(name))
        if not value:
            continue
        canonical = next((a for a in allowed if a.lower() == value.lower()), None)
        if canonical is None:
            errors.append(
                f"Row {n}: Invalid {name} '{value}'. Must be one of: {', '.join(allowed)}"
            )
        else:
            record.values[name] = canonical

    if config.no_identity_policy == "reject" and all(
        record.is_blank(f) for f in config.identity_fields
    ):
        errors.append(
            f"Row {n}: Missing identity; one of [{', '.join(config.identity_fields)}] is required"
        )

    for name in EMAIL_FIELDS.intersection(config.field_names):
        value = to_trimmed_string(record.values.get(name))
        if value and not _EMAIL_RE.match(value):
            errors.append(f"Row {n}: Invalid email '{value}'")

    return ValidationResult(record=record, errors=errors)


def validate_records(
    records: list[TypedRecord],
    config: RecordTypeConfig,
) -> list[ValidationResult]:
    return [validate_record(r, config) for r in records]
