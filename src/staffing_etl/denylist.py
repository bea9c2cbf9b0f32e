"""staffing_etl.denylist

"Do Not Return" (DNR) registry screening and maintenance.

Screening tiers, highest first:
  exact-id    identity equals a DNR entry's eid                  → 100
  exact-name  normalized full names equal                        →  95
  fuzzy-name  first/last token overlap: both tokens → 80, one → 50

Fuzzy matches scoring below the threshold (default 50) are discarded.  An
entry already matched on a higher tier is not reported again on a lower
one.  Any surviving match is an admission-control gate for the calling
run, not a validation error.

The index is built once per run from Active registry entries.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Iterable

from staffing_etl.normalize import normalize_name, to_trimmed_string
from staffing_etl.store import SERVER_TIMESTAMP, Document, DocumentStore

log = logging.getLogger(__name__)

DNR_COLLECTION = "dnrDatabase"
DEFAULT_FUZZY_THRESHOLD = 50

SCORE_EXACT_ID = 100
SCORE_EXACT_NAME = 95
SCORE_FUZZY_BOTH = 80
SCORE_FUZZY_ONE = 50

MATCH_EXACT_ID = "exact-id"
MATCH_EXACT_NAME = "exact-name"
MATCH_FUZZY_NAME = "fuzzy-name"


@dataclass
class DenylistEntry:
    doc_id: str
    eid: str
    name: str
    name_norm: str
    reason: str
    first_token: str | None
    last_token: str | None

    def summary(self) -> dict[str, Any]:
        return {"id": self.doc_id, "eid": self.eid, "name": self.name, "reason": self.reason}


@dataclass
class DenylistMatch:
    queried_identity: str
    queried_name: str
    matched_entry: dict[str, Any]
    match_type: str
    match_score: int
    reason: str
    row_number: int | None = None
    overridden: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "row_number": self.row_number,
            "queried_identity": self.queried_identity,
            "queried_name": self.queried_name,
            "matched_entry": self.matched_entry,
            "match_type": self.match_type,
            "match_score": self.match_score,
            "reason": self.reason,
            "overridden": self.overridden,
        }


@dataclass
class DenylistIndex:
    by_identity: dict[str, list[DenylistEntry]] = field(default_factory=dict)
    by_name: dict[str, list[DenylistEntry]] = field(default_factory=dict)
    entries: list[DenylistEntry] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.entries)


def _tokens(name_norm: str | None) -> tuple[str | None, str | None]:
    if not name_norm:
        return None, None
    parts = name_norm.split()
    if len(parts) == 1:
        return parts[0], None
    return parts[0], parts[-1]


def _entry_name(data: dict[str, Any]) -> str:
    name = to_trimmed_string(data.get("associateName") or data.get("name"))
    if name:
        return name
    first = to_trimmed_string(data.get("firstName"))
    last = to_trimmed_string(data.get("lastName"))
    return f"{first} {last}".strip()


def _is_active(data: dict[str, Any]) -> bool:
    status = to_trimmed_string(data.get("status")).lower()
    return status in ("", "active")


def build_denylist_index(docs: Iterable[Document]) -> DenylistIndex:
    by_identity: dict[str, list[DenylistEntry]] = defaultdict(list)
    by_name: dict[str, list[DenylistEntry]] = defaultdict(list)
    entries: list[DenylistEntry] = []
    for doc in docs:
        if not _is_active(doc.data):
            continue
        name = _entry_name(doc.data)
        name_norm = normalize_name(name) or ""
        first, last = _tokens(name_norm)
        entry = DenylistEntry(
            doc_id=doc.doc_id,
            eid=to_trimmed_string(doc.data.get("eid")),
            name=name,
            name_norm=name_norm,
            reason=to_trimmed_string(doc.data.get("reason")),
            first_token=first,
            last_token=last,
        )
        entries.append(entry)
        if entry.eid:
            by_identity[entry.eid].append(entry)
        if name_norm:
            by_name[name_norm].append(entry)
    return DenylistIndex(dict(by_identity), dict(by_name), entries)


def load_denylist(store: DocumentStore, collection: str = DNR_COLLECTION) -> DenylistIndex:
    index = build_denylist_index(store.get_all(collection))
    log.debug("denylist index built: %d active entries", len(index))
    return index


def _fuzzy_score(
    first: str | None,
    last: str | None,
    entry: DenylistEntry,
) -> int:
    overlap = 0
    if first and first == entry.first_token:
        overlap += 1
    if last and last == entry.last_token:
        overlap += 1
    if overlap == 2:
        return SCORE_FUZZY_BOTH
    if overlap == 1:
        return SCORE_FUZZY_ONE
    return 0


def screen(
    identity: str,
    name: str,
    index: DenylistIndex,
    threshold: int = DEFAULT_FUZZY_THRESHOLD,
    row_number: int | None = None,
) -> list[DenylistMatch]:
    """Return every denylist match for one candidate, best score first."""
    matches: list[DenylistMatch] = []
    seen: set[str] = set()

    def _add(entry: DenylistEntry, match_type: str, score: int, why: str) -> None:
        seen.add(entry.doc_id)
        reason = why if not entry.reason else f"{why} (DNR reason: {entry.reason})"
        matches.append(DenylistMatch(
            queried_identity=identity,
            queried_name=name,
            matched_entry=entry.summary(),
            match_type=match_type,
            match_score=score,
            reason=reason,
            row_number=row_number,
        ))

    if identity:
        for entry in index.by_identity.get(identity, []):
            _add(entry, MATCH_EXACT_ID, SCORE_EXACT_ID, f"EID {identity} is on the DNR list")

    name_norm = normalize_name(name)
    if name_norm:
        for entry in index.by_name.get(name_norm, []):
            if entry.doc_id not in seen:
                _add(entry, MATCH_EXACT_NAME, SCORE_EXACT_NAME, f"name '{name}' is on the DNR list")

        first, last = _tokens(name_norm)
        for entry in index.entries:
            if entry.doc_id in seen:
                continue
            score = _fuzzy_score(first, last, entry)
            if score and score >= threshold:
                _add(
                    entry, MATCH_FUZZY_NAME, score,
                    f"name '{name}' resembles DNR entry '{entry.name}'",
                )

    matches.sort(key=lambda m: -m.match_score)
    return matches


# ---------------------------------------------------------------------------
# Registry maintenance
# ---------------------------------------------------------------------------

def add_to_denylist(
    store: DocumentStore,
    entry: dict[str, Any],
    actor: str,
    collection: str = DNR_COLLECTION,
) -> tuple[str, bool]:
    """Create an Active DNR entry; returns (doc_id, created).

    When an Active entry with the same eid exists, nothing is written and
    its id is returned with created=False.
    """
    eid = to_trimmed_string(entry.get("eid"))
    if eid:
        for doc in store.query_equals(collection, "eid", eid):
            if _is_active(doc.data):
                return doc.doc_id, False

    ref = store.doc_ref(collection)
    batch = store.create_batch()
    store.batch_set(batch, ref, {
        **entry,
        "eid": eid,
        "status": "Active",
        "dateAdded": entry.get("dateAdded") or SERVER_TIMESTAMP,
        "addedBy": actor,
        "removedAt": None,
        "removedBy": None,
        "notes": to_trimmed_string(entry.get("notes")),
    })
    store.batch_commit(batch)
    return ref.doc_id, True


def _set_status(
    store: DocumentStore,
    doc_id: str,
    changes: dict[str, Any],
    collection: str,
) -> None:
    if store.get(collection, doc_id) is None:
        raise KeyError(f"DNR entry '{doc_id}' not found in {collection}")
    batch = store.create_batch()
    store.batch_set(batch, store.doc_ref(collection, doc_id), changes, merge=True)
    store.batch_commit(batch)


def remove_from_denylist(
    store: DocumentStore,
    doc_id: str,
    actor: str,
    notes: str = "",
    collection: str = DNR_COLLECTION,
) -> None:
    _set_status(store, doc_id, {
        "status": "Removed",
        "removedAt": SERVER_TIMESTAMP,
        "removedBy": actor,
        "notes": notes,
    }, collection)


def restore_to_denylist(
    store: DocumentStore,
    doc_id: str,
    actor: str,
    notes: str = "",
    collection: str = DNR_COLLECTION,
) -> None:
    _set_status(store, doc_id, {
        "status": "Active",
        "removedAt": None,
        "removedBy": None,
        "restoredAt": SERVER_TIMESTAMP,
        "restoredBy": actor,
        "notes": notes,
    }, collection)
