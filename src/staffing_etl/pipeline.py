"""staffing_etl.pipeline

One generic, config-driven ingestion run per record type.

State machine:

    Idle → Parsing → Normalizing → Validating ─┬→ ValidationFailed → Reporting → Done
                                               └→ Resolving → Screening ─┬→ Committing → Reporting → Done
                                                                         └→ AwaitingOverride
    AwaitingOverride ── decide("proceed") → Committing
                     └─ decide("cancel")  → Cancelled → Reporting → Done   (zero writes)

    Any unrecoverable store or source error ends the run in Failed.

Policy:
  - Any invalid row halts the whole run before writes (halt_on_invalid).
  - Identity collisions inside the file halt the run too, unless the mode
    is 'replace' or block_on_collision is off.  Collisions are always
    reported, even when validation already halted the run.
  - Any denylist match suspends the run in AwaitingOverride until the
    caller decides.  No decision means no writes.
  - Once Committing has begun the run cannot be cancelled.
  - Nothing is retried.

Every collection the run writes, fan-out and hook targets included, is
locked (CollectionLocks) from the moment prepare() starts until the
run reaches Done or Failed.  An error no stage handles still ends the
run in Failed and frees its locks.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Sequence

from staffing_etl.batch_upsert import (
    MODE_APPEND,
    MODE_REPLACE,
    VALID_MODES,
    AuditContext,
    CommitResult,
    ProgressFn,
    check_max_ops,
    commit_records,
    plan_writes,
    written_collections,
)
from staffing_etl.denylist import (
    DEFAULT_FUZZY_THRESHOLD,
    DNR_COLLECTION,
    DenylistMatch,
    add_to_denylist,
    load_denylist,
    screen,
)
from staffing_etl.errors import (
    CollectionBusyError,
    InvalidTransitionError,
    SourceReadError,
    StagingError,
    StoreError,
)
from staffing_etl.identity import assign_identities, check_duplicates, find_collisions
from staffing_etl.normalize import parse_name_parts, to_trimmed_string
from staffing_etl.record_types import RecordTypeConfig
from staffing_etl.records import TypedRecord, prepare_records, record_name
from staffing_etl.shared import RejectWriter, RunReport
from staffing_etl.store import MAX_BATCH_OPS, DocumentStore
from staffing_etl.validation import validate_records

log = logging.getLogger(__name__)

IDLE = "Idle"
PARSING = "Parsing"
NORMALIZING = "Normalizing"
VALIDATING = "Validating"
VALIDATION_FAILED = "ValidationFailed"
RESOLVING = "Resolving"
SCREENING = "Screening"
AWAITING_OVERRIDE = "AwaitingOverride"
COMMITTING = "Committing"
CANCELLED = "Cancelled"
REPORTING = "Reporting"
DONE = "Done"
FAILED = "Failed"

TRANSITIONS: dict[str, frozenset[str]] = {
    IDLE: frozenset({PARSING}),
    PARSING: frozenset({NORMALIZING, FAILED}),
    NORMALIZING: frozenset({VALIDATING}),
    VALIDATING: frozenset({VALIDATION_FAILED, RESOLVING}),
    VALIDATION_FAILED: frozenset({REPORTING}),
    RESOLVING: frozenset({SCREENING, FAILED}),
    SCREENING: frozenset({AWAITING_OVERRIDE, COMMITTING, FAILED}),
    AWAITING_OVERRIDE: frozenset({COMMITTING, CANCELLED}),
    CANCELLED: frozenset({REPORTING}),
    COMMITTING: frozenset({REPORTING, FAILED}),
    REPORTING: frozenset({DONE}),
    DONE: frozenset(),
    FAILED: frozenset(),
}

DECISION_PROCEED = "proceed"
DECISION_CANCEL = "cancel"

BADGE_ID_PREFIX = "PLX"


# ---------------------------------------------------------------------------
# Collection locks
# ---------------------------------------------------------------------------

class CollectionLocks:
    """Per-collection, non-blocking ownership table shared by runs."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._holders: dict[str, str] = {}

    def acquire(self, collection: str, run_id: str) -> None:
        self.acquire_all((collection,), run_id)

    def acquire_all(self, collections: Iterable[str], run_id: str) -> None:
        """Take every collection or none of them."""
        collections = tuple(collections)
        with self._guard:
            for collection in collections:
                holder = self._holders.get(collection)
                if holder is not None and holder != run_id:
                    raise CollectionBusyError(
                        f"collection '{collection}' is held by run {holder}"
                    )
            for collection in collections:
                self._holders[collection] = run_id

    def release_all(self, collections: Iterable[str], run_id: str) -> None:
        with self._guard:
            for collection in collections:
                if self._holders.get(collection) == run_id:
                    del self._holders[collection]

    def holder(self, collection: str) -> str | None:
        with self._guard:
            return self._holders.get(collection)


DEFAULT_LOCKS = CollectionLocks()


# ---------------------------------------------------------------------------
# Record-type hooks
# ---------------------------------------------------------------------------

def generate_badge_id(eid: str, last_name: str) -> str:
    """PLX-<eid zero-padded to 8>-<first 3 letters of last name, X-padded>."""
    prefix = (last_name or "").upper()[:3].ljust(3, "X")
    return f"{BADGE_ID_PREFIX}-{str(eid).zfill(8)}-{prefix}"


def assign_badge_id(data: dict[str, Any], record: TypedRecord) -> None:
    if data.get("badgeId") or not record.identity:
        return
    last = to_trimmed_string(data.get("lastName"))
    if not last:
        _, last = parse_name_parts(data.get("name"))
    data["badgeId"] = generate_badge_id(record.identity, last or "")


def add_early_leaves_to_denylist(
    store: DocumentStore,
    committed: list[tuple[TypedRecord, str]],
    actor: str,
) -> tuple[int, list[str]]:
    """DNR corrective actions are copied into the registry once committed."""
    added = 0
    errors: list[str] = []
    for record, doc_id in committed:
        if record.values.get("correctiveAction") != "DNR":
            continue
        try:
            _, created = add_to_denylist(store, {
                "associateName": record.values.get("associateName"),
                "eid": record.identity or record.values.get("eid"),
                "reason": record.values.get("reason") or "Early Leave - DNR Action",
                "source": "Early Leave",
                "earlyLeaveId": doc_id,
            }, actor)
        except StoreError as exc:
            errors.append(f"Row {record.row_number}: DNR auto-add failed: {exc}")
            continue
        if created:
            added += 1
    return added, errors


DOCUMENT_HOOKS: dict[str, Callable[[dict[str, Any], TypedRecord], None]] = {
    "badge": assign_badge_id,
}

POST_COMMIT_HOOKS: dict[
    str, Callable[[DocumentStore, list[tuple[TypedRecord, str]], str], tuple[int, list[str]]]
] = {
    "early_leave": add_early_leaves_to_denylist,
}

# Collections a post-commit hook writes besides the record type's own.
HOOK_COLLECTIONS: dict[str, tuple[str, ...]] = {
    "early_leave": (DNR_COLLECTION,),
}


def run_collections(config: RecordTypeConfig) -> tuple[str, ...]:
    """Every collection a run of this record type may write."""
    return written_collections(config) + HOOK_COLLECTIONS.get(config.name, ())


# ---------------------------------------------------------------------------
# IngestionRun
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RunOptions:
    halt_on_invalid: bool = True
    block_on_collision: bool = True
    denylist_threshold: int = DEFAULT_FUZZY_THRESHOLD
    max_batch_ops: int = MAX_BATCH_OPS
    dry_run: bool = False
    check_store_duplicates: bool = True
    enforce_size_limit: bool = False


class IngestionRun:
    """Drive one file of one record type through the state machine."""

    def __init__(
        self,
        store: DocumentStore,
        config: RecordTypeConfig,
        mode: str = MODE_APPEND,
        actor: str = "system",
        run_id: str | None = None,
        options: RunOptions | None = None,
        locks: CollectionLocks | None = None,
        rejects: RejectWriter | None = None,
        progress: ProgressFn | None = None,
        source: str | None = None,
    ) -> None:
        if mode not in VALID_MODES:
            raise ValueError(f"Invalid mode '{mode}'. Must be one of {list(VALID_MODES)}.")
        options = options or RunOptions()
        check_max_ops(config, options.max_batch_ops)
        self.store = store
        self.config = config
        self.mode = mode
        self.actor = actor
        self.run_id = run_id or str(uuid.uuid4())
        self.options = options
        self.collections = run_collections(config)
        self.locks = locks if locks is not None else DEFAULT_LOCKS
        self.rejects = rejects
        self.progress = progress
        self.records: list[TypedRecord] = []
        self.valid_records: list[TypedRecord] = []
        self.commit_result: CommitResult | None = None
        self.report = RunReport(
            run_id=self.run_id,
            record_type=config.name,
            collection=config.collection,
            mode=mode,
            actor=actor,
            dry_run=self.options.dry_run,
            source=source,
            config_version=config.version,
            config_hash=config.yaml_hash,
        )
        self._state = IDLE
        self._started = 0.0
        self._locked = False

    # -- state ------------------------------------------------------------

    @property
    def state(self) -> str:
        return self._state

    @property
    def matches(self) -> list[DenylistMatch]:
        return list(self.report.denylist_matches)

    def _enter(self, state: str) -> None:
        if state not in TRANSITIONS[self._state]:
            raise InvalidTransitionError(f"{self._state} → {state} is not allowed")
        log.debug("[%s] %s → %s", self.run_id, self._state, state)
        self._state = state
        self.report.enter(state)

    def _release(self) -> None:
        if self._locked:
            self.locks.release_all(self.collections, self.run_id)
            self._locked = False
        if self.rejects is not None:
            self.rejects.close()

    def _finish(self) -> RunReport:
        """Reporting → Done, or finalize in place when already Failed."""
        try:
            if self._state != FAILED:
                self._enter(REPORTING)
                self._enter(DONE)
        finally:
            self._release()
        self.report.finalize(time.monotonic() - self._started)
        log.info("[%s] %s run finished in state %s", self.run_id, self.config.name, self._state)
        return self.report

    def _fail(self, reason: str) -> RunReport:
        log.error("[%s] %s", self.run_id, reason)
        self.report.add_failure(reason)
        self._enter(FAILED)
        return self._finish()

    def abort(self, exc: Exception) -> None:
        """End in Failed after an error no stage handled; frees the locks."""
        try:
            if self.report.frozen:
                return
            if isinstance(exc, StagingError):
                reason = str(exc)
                log.error("[%s] %s", self.run_id, reason)
            else:
                reason = f"unexpected error: {exc!r}"
                log.exception("[%s] %s", self.run_id, reason)
            self.report.add_failure(reason)
            if self._state != FAILED:
                # Forced: Failed is reachable from any state on an unhandled error.
                self._state = FAILED
                self.report.enter(FAILED)
            self.report.finalize(time.monotonic() - self._started if self._started else 0.0)
        finally:
            self._release()

    # -- stages -----------------------------------------------------------

    def prepare(self, source: Sequence[dict[str, Any]] | Path | str) -> str:
        """Run Parsing through Screening; return the state reached.

        Returns Done (committed, halted on validation, or failed),
        or AwaitingOverride when denylist matches need a decision.
        Raises SourceReadError after recording Failed when the file
        cannot be read; any other error escaping a stage also leaves the
        run Failed with its locks released before it propagates.
        """
        if self._state != IDLE:
            raise InvalidTransitionError(f"prepare() called in state {self._state}")
        self.locks.acquire_all(self.collections, self.run_id)
        self._locked = True
        self._started = time.monotonic()
        try:
            return self._prepare(source)
        except Exception as exc:
            self.abort(exc)
            raise

    def _prepare(self, source: Sequence[dict[str, Any]] | Path | str) -> str:
        self._enter(PARSING)
        try:
            raw_rows = self._read(source)
        except SourceReadError as exc:
            self._fail(f"cannot read source: {exc}")
            raise
        self.report.rows_read = len(raw_rows)

        self._enter(NORMALIZING)
        self.records = prepare_records(raw_rows, self.config)

        self._enter(VALIDATING)
        if not self._validate():
            self._enter(VALIDATION_FAILED)
            self._finish()
            return self._state

        self._enter(RESOLVING)
        try:
            self._resolve()
        except StoreError as exc:
            self._fail(f"duplicate check failed: {exc}")
            return self._state

        self._enter(SCREENING)
        try:
            matches = self._screen()
        except StoreError as exc:
            self._fail(f"denylist screening failed: {exc}")
            return self._state
        if matches:
            self._enter(AWAITING_OVERRIDE)
            log.warning(
                "[%s] %d denylist match(es); awaiting operator decision",
                self.run_id, len(matches),
            )
            return self._state

        self._enter(COMMITTING)
        self._commit()
        return self._state

    def decide(self, decision: str) -> str:
        """Resolve AwaitingOverride with 'proceed' or 'cancel'."""
        if self._state != AWAITING_OVERRIDE:
            raise InvalidTransitionError(f"decide() called in state {self._state}")
        if decision not in (DECISION_PROCEED, DECISION_CANCEL):
            raise ValueError(f"decision must be 'proceed' or 'cancel', got {decision!r}")
        try:
            self.report.decision = decision
            if decision == DECISION_CANCEL:
                self._enter(CANCELLED)
                self.report.counts_for()
                self._finish()
                return self._state
            for match in self.report.denylist_matches:
                match.overridden = True
            self._enter(COMMITTING)
            self._commit()
            return self._state
        except Exception as exc:
            self.abort(exc)
            raise

    def run(
        self,
        source: Sequence[dict[str, Any]] | Path | str,
        decision: str | None = None,
    ) -> RunReport:
        """prepare(), then decide() when a decision is supplied and needed."""
        state = self.prepare(source)
        if state == AWAITING_OVERRIDE and decision is not None:
            self.decide(decision)
        return self.report

    # -- helpers ----------------------------------------------------------

    def _read(self, source: Sequence[dict[str, Any]] | Path | str) -> list[dict[str, Any]]:
        if isinstance(source, (str, Path)):
            from staffing_etl.sources import read_rows
            self.report.source = str(source)
            return read_rows(Path(source), self.options.enforce_size_limit)
        return list(source)

    def _reject(self, record: TypedRecord, reason: str) -> None:
        if self.rejects is not None:
            self.rejects.write(record.raw, reason)

    def _validate(self) -> bool:
        """Collect every row error and every collision; True to continue."""
        results = validate_records(self.records, self.config)
        invalid = [r for r in results if not r.is_valid]
        for result in invalid:
            self.report.validation_errors.extend(result.errors)
            self._reject(result.record, "; ".join(result.errors))

        assign_identities(self.records, self.config)
        collisions = find_collisions(self.records)
        for c in collisions:
            self.report.collisions.append({"identity": c.identity, "rows": list(c.row_numbers)})
            self.report.add_warning(c.describe())

        counts = self.report.counts_for()
        if invalid and self.options.halt_on_invalid:
            self.report.add_failure(
                f"{len(invalid)} invalid row(s); run halted before any writes"
            )
            return False
        if (
            collisions
            and self.options.block_on_collision
            and self.mode != MODE_REPLACE
        ):
            self.report.add_failure(
                f"{len(collisions)} identity collision(s); run halted before any writes"
            )
            return False

        invalid_rows = {r.record.row_number for r in invalid}
        self.valid_records = [r for r in self.records if r.row_number not in invalid_rows]
        counts.skipped += len(invalid)
        return True

    def _resolve(self) -> None:
        if not self.options.check_store_duplicates or not self.config.duplicate_collections:
            return
        report = check_duplicates(
            self.store,
            (r.identity for r in self.valid_records),
            self.config.duplicate_collections,
        )
        for hit in report.hits:
            self.report.duplicates.append({
                "identity": hit.identity,
                "collection": hit.collection,
                "doc_id": hit.doc_id,
                **hit.summary,
            })

    def _screen(self) -> list[DenylistMatch]:
        if not self.config.screen_denylist:
            return []
        index = load_denylist(self.store)
        if not len(index):
            return []
        matches: list[DenylistMatch] = []
        for record in self.valid_records:
            matches.extend(screen(
                record.identity,
                record_name(record, self.config),
                index,
                threshold=self.options.denylist_threshold,
                row_number=record.row_number,
            ))
        self.report.denylist_matches.extend(matches)
        return matches

    def _commit(self) -> None:
        counts = self.report.counts_for()
        counts.attempted = len(self.valid_records)
        audit = AuditContext(
            actor=self.actor,
            migrated_by=self.actor if self.mode == MODE_REPLACE else None,
        )
        hook = DOCUMENT_HOOKS.get(self.config.name)

        if self.options.dry_run:
            planned, skipped = plan_writes(self.store, self.valid_records, self.config, audit, hook)
            counts.skipped += len(skipped)
            for record in skipped:
                self._reject(record, "missing identity")
            self.report.add_warning(f"dry run: {len(planned)} record(s) not written")
            self._finish()
            return

        try:
            result = commit_records(
                self.store,
                self.valid_records,
                self.config,
                self.mode,
                audit,
                max_ops=self.options.max_batch_ops,
                progress=self.progress,
                document_hook=hook,
            )
        except StoreError as exc:
            self._fail(f"commit aborted: {exc}")
            return
        self.commit_result = result
        counts.succeeded += result.succeeded
        counts.skipped += result.skipped
        counts.failed += result.failed
        self.report.deleted = result.deleted
        for reason in result.errors:
            self.report.add_failure(reason)
        if result.skipped:
            for record in self.valid_records:
                if not record.identity and self.config.no_identity_policy == "skip":
                    self._reject(record, "missing identity")

        post = POST_COMMIT_HOOKS.get(self.config.name)
        if post is not None and result.committed:
            added, errors = post(self.store, result.committed, self.actor)
            if added:
                self.report.add_warning(f"{added} DNR entr{'y' if added == 1 else 'ies'} added")
            for e in errors:
                self.report.add_warning(e)
        self._finish()


# ---------------------------------------------------------------------------
# Multiple record types
# ---------------------------------------------------------------------------

def run_many(
    jobs: Sequence[tuple[IngestionRun, Sequence[dict[str, Any]] | Path | str]],
    decision: str | None = None,
    max_workers: int = 4,
) -> list[RunReport]:
    """Run independent record types concurrently; reports keep job order.

    No two jobs may write the same collection, counting fan-out and hook
    collections.  A job that fails still contributes its report.
    """
    seen: dict[str, str] = {}
    for run, _ in jobs:
        for collection in run.collections:
            if collection in seen:
                raise ValueError(
                    f"run_many jobs must write distinct collections; "
                    f"'{collection}' is written by {seen[collection]} and {run.config.name}"
                )
            seen[collection] = run.config.name
    if not jobs:
        return []
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        futures = [pool.submit(run.run, source, decision) for run, source in jobs]
        reports: list[RunReport] = []
        for (run, _), future in zip(jobs, futures):
            try:
                reports.append(future.result())
            except StagingError as exc:
                run.abort(exc)
                reports.append(run.report)
        return reports
