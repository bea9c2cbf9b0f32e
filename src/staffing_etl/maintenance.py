"""staffing_etl.maintenance

Whole-collection operations run by an operator, outside the ingestion
state machine:

  backup_collections       store → backups/backup-YYYY-MM-DD-HHMMSS/<coll>.json
  restore_collections      backup folder → store, original document ids
  clear_collections        batched deletes; preserved collections refused
  migrate_eid_unification  applicants: copy crmNumber into a blank eid
  find_cross_collection_conflicts
                           one EID carrying different names across
                           applicants / associates / badges

Dates are written to JSON as ISO-8601 strings and parsed back to datetimes
on restore.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Iterable

from staffing_etl.batch_upsert import delete_collection, partition
from staffing_etl.errors import PreservedCollectionError, SourceReadError, StoreError
from staffing_etl.normalize import normalize_name, to_trimmed_string
from staffing_etl.store import MAX_BATCH_OPS, SERVER_TIMESTAMP, DocumentStore

log = logging.getLogger(__name__)

DATA_COLLECTIONS = (
    "applicants",
    "associates",
    "badges",
    "earlyLeaves",
    "dnrDatabase",
    "laborReports",
    "laborHours",
    "onPremiseData",
    "branchDaily",
    "branchWeekly",
    "hoursData",
    "shiftData",
    "recruiterData",
    "applicantDocuments",
)

PRESERVED_COLLECTIONS = frozenset({"users", "auditLog", "badgeTemplates"})

BACKUP_COLLECTIONS = DATA_COLLECTIONS + tuple(sorted(PRESERVED_COLLECTIONS))

MANIFEST_NAME = "_manifest.json"
BACKUP_VERSION = "1.0"
EID_MIGRATION_ACTOR = "eid-unification-script"

RESTORE_OVERWRITE = "overwrite"
RESTORE_MERGE = "merge"

_ISO_DATETIME_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d+)?([+-]\d{2}:\d{2}|Z)?$")


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def serialize_value(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: serialize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_value(v) for v in value]
    return value


def deserialize_value(value: Any) -> Any:
    if isinstance(value, str) and _ISO_DATETIME_RE.match(value):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
    if isinstance(value, dict):
        return {k: deserialize_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [deserialize_value(v) for v in value]
    return value


# ---------------------------------------------------------------------------
# Backup / restore
# ---------------------------------------------------------------------------

@dataclass
class BackupResult:
    backup_dir: Path
    counts: dict[str, int] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def total_documents(self) -> int:
        return sum(self.counts.values())


def backup_collections(
    store: DocumentStore,
    out_dir: Path,
    collections: Iterable[str] = BACKUP_COLLECTIONS,
    now: datetime | None = None,
) -> BackupResult:
    """Write every document of each collection to a timestamped folder.

    Empty collections are recorded with a count of 0 and no file.
    """
    stamp = (now or datetime.utcnow()).strftime("%Y-%m-%d-%H%M%S")
    backup_dir = Path(out_dir) / f"backup-{stamp}"
    backup_dir.mkdir(parents=True, exist_ok=True)
    result = BackupResult(backup_dir=backup_dir)

    for name in collections:
        try:
            docs = store.get_all(name)
        except StoreError as exc:
            result.failed[name] = str(exc)
            log.warning("backup of %s failed: %s", name, exc)
            continue
        result.counts[name] = len(docs)
        if not docs:
            continue
        payload = [{"id": d.doc_id, "data": serialize_value(d.data)} for d in docs]
        (backup_dir / f"{name}.json").write_text(json.dumps(payload, indent=2, default=str))

    manifest = {
        "backupDate": datetime.utcnow().isoformat(),
        "backupVersion": BACKUP_VERSION,
        "collections": [
            {"name": n, "documentCount": c, "file": f"{n}.json" if c else None}
            for n, c in result.counts.items()
        ],
        "totalDocuments": result.total_documents,
        "failedCollections": result.failed,
    }
    (backup_dir / MANIFEST_NAME).write_text(json.dumps(manifest, indent=2))
    return result


def _load_backup_file(path: Path) -> list[dict[str, Any]]:
    try:
        docs = json.loads(path.read_text())
    except (OSError, ValueError) as exc:
        raise SourceReadError(f"Cannot read backup file {path}: {exc}") from exc
    if not isinstance(docs, list):
        raise SourceReadError(f"{path} does not hold a list of documents")
    return docs


def restore_collections(
    store: DocumentStore,
    backup_dir: Path,
    collections: Iterable[str] | None = None,
    mode: str = RESTORE_OVERWRITE,
    max_ops: int = MAX_BATCH_OPS,
) -> dict[str, dict[str, int]]:
    """Write backed-up documents back under their original ids.

    Returns {collection: {"restored": n, "failed": n}}.
    """
    if mode not in (RESTORE_OVERWRITE, RESTORE_MERGE):
        raise ValueError(f"restore mode must be '{RESTORE_OVERWRITE}' or '{RESTORE_MERGE}'")
    backup_dir = Path(backup_dir)
    if not backup_dir.is_dir():
        raise SourceReadError(f"Backup folder not found: {backup_dir}")
    if collections is None:
        names = sorted(p.stem for p in backup_dir.glob("*.json") if p.name != MANIFEST_NAME)
    else:
        names = list(collections)

    results: dict[str, dict[str, int]] = {}
    for name in names:
        path = backup_dir / f"{name}.json"
        outcome = {"restored": 0, "failed": 0}
        results[name] = outcome
        if not path.is_file():
            log.info("no backup file for %s; skipped", name)
            continue
        docs = _load_backup_file(path)
        for unit in partition(docs, max_ops):
            batch = store.create_batch()
            for d in unit:
                store.batch_set(
                    batch,
                    store.doc_ref(name, str(d["id"])),
                    deserialize_value(d.get("data") or {}),
                    merge=(mode == RESTORE_MERGE),
                )
            try:
                store.batch_commit(batch)
            except StoreError as exc:
                outcome["failed"] += len(unit)
                log.warning("restore unit for %s failed: %s", name, exc)
                continue
            outcome["restored"] += len(unit)
    return results


# ---------------------------------------------------------------------------
# Clear
# ---------------------------------------------------------------------------

def clear_collections(
    store: DocumentStore,
    collections: Iterable[str] = DATA_COLLECTIONS,
    max_ops: int = MAX_BATCH_OPS,
) -> dict[str, int]:
    """Delete every document in each collection; returns deleted counts."""
    names = list(collections)
    refused = sorted(PRESERVED_COLLECTIONS.intersection(names))
    if refused:
        raise PreservedCollectionError(
            f"refusing to clear preserved collection(s): {', '.join(refused)}"
        )
    deleted: dict[str, int] = {}
    for name in names:
        result = delete_collection(store, name, max_ops)
        deleted[name] = result.deleted
        for e in result.errors:
            log.warning(e)
    return deleted


# ---------------------------------------------------------------------------
# EID unification
# ---------------------------------------------------------------------------

@dataclass
class MigrationResult:
    migrated: int = 0
    already_ok: int = 0
    errors: int = 0
    conflicts: list[dict[str, Any]] = field(default_factory=list)


def migrate_eid_unification(
    store: DocumentStore,
    collection: str = "applicants",
    actor: str = EID_MIGRATION_ACTOR,
    max_ops: int = MAX_BATCH_OPS,
    dry_run: bool = False,
) -> MigrationResult:
    """Copy crmNumber into a blank eid; documents with neither count as errors."""
    result = MigrationResult()
    updates: list[tuple[str, str]] = []
    for doc in store.get_all(collection):
        eid = to_trimmed_string(doc.data.get("eid"))
        crm = to_trimmed_string(doc.data.get("crmNumber"))
        if eid:
            result.already_ok += 1
        elif crm:
            updates.append((doc.doc_id, crm))
        else:
            result.errors += 1

    if dry_run:
        result.migrated = len(updates)
    else:
        for unit in partition(updates, max_ops):
            batch = store.create_batch()
            for doc_id, crm in unit:
                store.batch_set(batch, store.doc_ref(collection, doc_id), {
                    "eid": crm,
                    "migratedAt": SERVER_TIMESTAMP,
                    "migratedBy": actor,
                }, merge=True)
            try:
                store.batch_commit(batch)
            except StoreError as exc:
                result.errors += len(unit)
                log.warning("eid migration unit failed: %s", exc)
                continue
            result.migrated += len(unit)

    result.conflicts = find_cross_collection_conflicts(store)
    return result


def find_cross_collection_conflicts(
    store: DocumentStore,
    collections: Iterable[str] = ("applicants", "associates", "badges"),
) -> list[dict[str, Any]]:
    """EIDs whose normalized names differ between collections."""
    seen: dict[str, dict[str, str]] = {}
    for name in collections:
        for doc in store.get_all(name):
            eid = to_trimmed_string(doc.data.get("eid") or doc.data.get("crmNumber"))
            person = to_trimmed_string(doc.data.get("name") or doc.data.get("associateName"))
            if eid and person:
                seen.setdefault(eid, {}).setdefault(name, person)

    conflicts = []
    for eid, names in sorted(seen.items()):
        distinct = {normalize_name(n) for n in names.values()}
        if len(distinct) > 1:
            conflicts.append({"eid": eid, "names": dict(names)})
    return conflicts
