"""staffing_etl.batch_upsert

Partition typed records into store write batches and commit them.

  append   each record becomes one 'set'.  Record types keyed by identity
           (associates, badges) use the identity as document id and merge;
           the rest get store-generated ids so history is preserved.
  replace  every document already in the target collection and in its
           fan-out collections is deleted first (delete-only units), then
           the same inserts as append.

Units commit strictly in order.  A unit that fails to commit counts all
of its records as failed, keeps the store's raw error message, and does
not stop later units.  Records without an identity under the 'skip'
policy are counted as skipped; 'failed' is reserved for write errors.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence, TypeVar

from staffing_etl.errors import StoreError
from staffing_etl.record_types import RecordTypeConfig
from staffing_etl.records import TypedRecord
from staffing_etl.store import MAX_BATCH_OPS, SERVER_TIMESTAMP, DocumentRef, DocumentStore

log = logging.getLogger(__name__)

MODE_APPEND = "append"
MODE_REPLACE = "replace"
VALID_MODES = (MODE_APPEND, MODE_REPLACE)

T = TypeVar("T")

ProgressFn = Callable[[int, int, str], None]


@dataclass(frozen=True)
class AuditContext:
    """Who is writing, and whether the run marks documents as machine-migrated."""

    actor: str
    migrated_by: str | None = None

    def fields(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "createdBy": self.actor,
            "createdAt": SERVER_TIMESTAMP,
            "updatedAt": SERVER_TIMESTAMP,
        }
        if self.migrated_by:
            out["migratedAt"] = SERVER_TIMESTAMP
            out["migratedBy"] = self.migrated_by
        return out


@dataclass
class PlannedWrite:
    record: TypedRecord
    ops: list[tuple[DocumentRef, dict[str, Any], bool]]

    @property
    def doc_id(self) -> str:
        return self.ops[0][0].doc_id


@dataclass
class CommitResult:
    collection: str
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    deleted: int = 0
    units_committed: int = 0
    units_failed: int = 0
    unit_sizes: list[int] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    committed: list[tuple[TypedRecord, str]] = field(default_factory=list, repr=False)
    failed_rows: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "collection": self.collection,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "deleted": self.deleted,
            "units_committed": self.units_committed,
            "units_failed": self.units_failed,
            "unit_sizes": self.unit_sizes,
            "failed_rows": self.failed_rows,
            "errors": self.errors[:50],
        }


# ---------------------------------------------------------------------------
# Partitioning
# ---------------------------------------------------------------------------

def ops_per_record(config: RecordTypeConfig) -> int:
    """One primary set plus one set per fan-out collection."""
    return 1 + len(config.fan_out)


def written_collections(config: RecordTypeConfig) -> tuple[str, ...]:
    return (config.collection,) + tuple(f.collection for f in config.fan_out)


def check_max_ops(config: RecordTypeConfig, max_ops: int) -> None:
    needed = ops_per_record(config)
    if max_ops < needed:
        raise ValueError(
            f"{config.name} records need {needed} ops each; max_ops {max_ops} is too small"
        )


def partition(items: Sequence[T], max_ops: int = MAX_BATCH_OPS) -> list[list[T]]:
    """Split items into consecutive chunks of at most max_ops."""
    if max_ops < 1:
        raise ValueError("max_ops must be >= 1")
    return [list(items[i:i + max_ops]) for i in range(0, len(items), max_ops)]


def partition_writes(writes: Sequence[PlannedWrite], max_ops: int = MAX_BATCH_OPS) -> list[list[PlannedWrite]]:
    """Group planned writes so no unit exceeds max_ops operations.

    A record's fan-out ops always land in the same unit as its primary op.
    """
    units: list[list[PlannedWrite]] = []
    current: list[PlannedWrite] = []
    current_ops = 0
    for w in writes:
        n = len(w.ops)
        if n > max_ops:
            raise ValueError(f"a single record needs {n} ops; max_ops is {max_ops}")
        if current and current_ops + n > max_ops:
            units.append(current)
            current, current_ops = [], 0
        current.append(w)
        current_ops += n
    if current:
        units.append(current)
    return units


# ---------------------------------------------------------------------------
# Document building
# ---------------------------------------------------------------------------

def build_document(record: TypedRecord, config: RecordTypeConfig, audit: AuditContext) -> dict[str, Any]:
    data = dict(record.values)
    # Unify on eid: records identified by a fallback key carry it as eid too.
    if "eid" in data and not data["eid"] and record.identity:
        data["eid"] = record.identity
    data.update(audit.fields())
    return data


def plan_writes(
    store: DocumentStore,
    records: Sequence[TypedRecord],
    config: RecordTypeConfig,
    audit: AuditContext,
    document_hook: Callable[[dict[str, Any], TypedRecord], None] | None = None,
) -> tuple[list[PlannedWrite], list[TypedRecord]]:
    """Return (planned writes, records skipped for lacking an identity)."""
    planned: list[PlannedWrite] = []
    skipped: list[TypedRecord] = []
    for record in records:
        if not record.identity and config.no_identity_policy != "allow":
            skipped.append(record)
            continue
        data = build_document(record, config, audit)
        if document_hook is not None:
            document_hook(data, record)
        if config.document_key == "identity":
            ref = store.doc_ref(config.collection, record.identity)
        else:
            ref = store.doc_ref(config.collection)
        ops = [(ref, data, config.merge)]
        for fan in config.fan_out:
            extra = {target: record.values.get(source) for target, source in fan.fields.items()}
            extra.update(audit.fields())
            ops.append((store.doc_ref(fan.collection), extra, False))
        planned.append(PlannedWrite(record, ops))
    return planned, skipped


# ---------------------------------------------------------------------------
# Commit
# ---------------------------------------------------------------------------

def delete_collection(
    store: DocumentStore,
    collection: str,
    max_ops: int = MAX_BATCH_OPS,
    result: CommitResult | None = None,
) -> CommitResult:
    """Delete every document in collection using delete-only units."""
    result = result or CommitResult(collection=collection)
    refs = [store.doc_ref(collection, d.doc_id) for d in store.get_all(collection)]
    for idx, unit in enumerate(partition(refs, max_ops), start=1):
        batch = store.create_batch()
        for ref in unit:
            store.batch_delete(batch, ref)
        try:
            store.batch_commit(batch)
        except StoreError as exc:
            result.errors.append(f"delete unit {idx} ({collection}): {exc}")
            log.warning("delete unit %d on %s failed: %s", idx, collection, exc)
            continue
        result.deleted += len(unit)
    return result


def commit_planned(
    store: DocumentStore,
    planned: Sequence[PlannedWrite],
    collection: str,
    max_ops: int = MAX_BATCH_OPS,
    progress: ProgressFn | None = None,
    result: CommitResult | None = None,
) -> CommitResult:
    result = result or CommitResult(collection=collection)
    total = len(planned)
    done = 0
    for idx, unit in enumerate(partition_writes(planned, max_ops), start=1):
        batch = store.create_batch()
        for write in unit:
            for ref, data, merge in write.ops:
                store.batch_set(batch, ref, data, merge=merge)
        result.unit_sizes.append(len(batch))
        try:
            store.batch_commit(batch)
        except StoreError as exc:
            result.failed += len(unit)
            result.units_failed += 1
            result.failed_rows.extend(w.record.row_number for w in unit)
            result.errors.append(f"unit {idx} ({collection}): {exc}")
            log.warning("unit %d on %s failed: %s", idx, collection, exc)
        else:
            result.succeeded += len(unit)
            result.units_committed += 1
            result.committed.extend((w.record, w.doc_id) for w in unit)
        done += len(unit)
        log.info("Committed %d/%d records to %s", result.succeeded, total, collection)
        if progress is not None:
            progress(done, total, collection)
    return result


def commit_records(
    store: DocumentStore,
    records: Sequence[TypedRecord],
    config: RecordTypeConfig,
    mode: str,
    audit: AuditContext,
    max_ops: int = MAX_BATCH_OPS,
    progress: ProgressFn | None = None,
    document_hook: Callable[[dict[str, Any], TypedRecord], None] | None = None,
) -> CommitResult:
    """Write records to config.collection in sequential atomic units."""
    if mode not in VALID_MODES:
        raise ValueError(f"Invalid mode '{mode}'. Must be one of {list(VALID_MODES)}.")
    check_max_ops(config, max_ops)
    result = CommitResult(collection=config.collection)
    planned, skipped = plan_writes(store, records, config, audit, document_hook)
    result.skipped = len(skipped)
    if mode == MODE_REPLACE:
        for collection in written_collections(config):
            delete_collection(store, collection, max_ops, result)
    return commit_planned(store, planned, config.collection, max_ops, progress, result)
