"""staffing_etl.identity

Identity resolution for typed records.

Identity precedence is declared per record type (e.g. [eid, crmNumber]):
the first non-blank field wins.  An empty identity means "no identity";
the record type's no_identity_policy decides skip / reject / allow.

Collisions (one identity on several rows of the same run) and duplicates
(identities already present in the store) are reported, never silently
merged.  Both checks are advisory point-in-time reads.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Iterable

from staffing_etl.normalize import to_trimmed_string
from staffing_etl.record_types import RecordTypeConfig
from staffing_etl.records import TypedRecord
from staffing_etl.store import QUERY_IN_LIMIT, DocumentStore

log = logging.getLogger(__name__)

IDENTITY_FIELD = "eid"

_SUMMARY_FIELDS = ("name", "associateName", "status", "shift")


@dataclass(frozen=True)
class IdentityCollision:
    identity: str
    row_numbers: tuple[int, ...]

    def describe(self) -> str:
        rows = ", ".join(str(r) for r in self.row_numbers)
        return f"Identity '{self.identity}' appears on rows {rows}"


@dataclass(frozen=True)
class DuplicateHit:
    identity: str
    collection: str
    doc_id: str
    summary: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass
class DuplicateReport:
    hits: list[DuplicateHit] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.hits)

    def __bool__(self) -> bool:
        return bool(self.hits)

    @property
    def identities(self) -> set[str]:
        return {h.identity for h in self.hits}


def resolve_identity(record: TypedRecord, config: RecordTypeConfig) -> str:
    """Return the first non-blank identity field value, or ''."""
    for name in config.identity_fields:
        value = to_trimmed_string(record.values.get(name))
        if value:
            return value
    return ""


def assign_identities(records: Iterable[TypedRecord], config: RecordTypeConfig) -> None:
    for record in records:
        record.identity = resolve_identity(record, config)


def find_collisions(records: Iterable[TypedRecord]) -> list[IdentityCollision]:
    """Map identity → row numbers; every key with more than one row is a collision."""
    rows_by_identity: dict[str, list[int]] = defaultdict(list)
    for record in records:
        if record.identity:
            rows_by_identity[record.identity].append(record.row_number)
    return [
        IdentityCollision(identity, tuple(rows))
        for identity, rows in rows_by_identity.items()
        if len(rows) > 1
    ]


def _chunks(values: list[str], size: int) -> Iterable[list[str]]:
    for i in range(0, len(values), size):
        yield values[i:i + size]


def check_duplicates(
    store: DocumentStore,
    identities: Iterable[str],
    collections: Iterable[str],
    field_name: str = IDENTITY_FIELD,
) -> DuplicateReport:
    """Query each collection for identities already present.

    Keys are sent QUERY_IN_LIMIT at a time.  The result is advisory: the
    upsert mode, not this report, decides what happens to a duplicate.
    """
    keys = sorted({i for i in identities if i})
    report = DuplicateReport()
    if not keys:
        return report
    for collection in collections:
        for chunk in _chunks(keys, QUERY_IN_LIMIT):
            for doc in store.query_in(collection, field_name, chunk):
                identity = to_trimmed_string(doc.data.get(field_name))
                summary = {k: doc.data[k] for k in _SUMMARY_FIELDS if k in doc.data}
                report.hits.append(DuplicateHit(identity, collection, doc.doc_id, summary))
    log.debug("duplicate check: %d keys, %d hits", len(keys), len(report.hits))
    return report
