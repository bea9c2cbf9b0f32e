"""staffing_etl.cli

Operator CLI.  Every command is a thin adapter over the library:

  staffing-etl ingest RECORD_TYPE FILE...       one run per file
  staffing-etl ingest-many TYPE=FILE...         independent types, concurrently
  staffing-etl labor-reports FOLDER             weekly labor grids
  staffing-etl backup OUT_DIR
  staffing-etl restore BACKUP_DIR
  staffing-etl clear --yes
  staffing-etl migrate-eid
  staffing-etl dnr add|remove|restore

Exit status is 0 whenever a run reaches Done, including runs halted by
validation or cancelled at the denylist gate.  Setup errors such as an
unreachable store or a bad record-type config exit 1 before any run
starts.  A run ending in Failed (unreadable file, busy collection, store
error) exits 1 after the reports of every run so far are written.

With several FILES in replace mode only the first file replaces the
collection; the rest append to it.
"""

from __future__ import annotations

import logging
import sys
import uuid
from pathlib import Path

import click

from staffing_etl.batch_upsert import MODE_APPEND, MODE_REPLACE, check_max_ops
from staffing_etl.denylist import (
    DEFAULT_FUZZY_THRESHOLD,
    add_to_denylist,
    remove_from_denylist,
    restore_to_denylist,
)
from staffing_etl.errors import StagingError
from staffing_etl.labor_report import DIRECT_HOURS_SHARE, parse_labor_report
from staffing_etl.maintenance import (
    BACKUP_COLLECTIONS,
    DATA_COLLECTIONS,
    RESTORE_MERGE,
    RESTORE_OVERWRITE,
    backup_collections,
    clear_collections,
    migrate_eid_unification,
    restore_collections,
)
from staffing_etl.pipeline import (
    AWAITING_OVERRIDE,
    DECISION_CANCEL,
    DECISION_PROCEED,
    FAILED,
    IngestionRun,
    RunOptions,
    run_many,
)
from staffing_etl.record_types import load_registry
from staffing_etl.shared import RejectWriter, RunReport, build_run_report_text, write_run_report
from staffing_etl.sources import list_source_files
from staffing_etl.store import MAX_BATCH_OPS, SERVER_TIMESTAMP, MemoryStore, PostgresDocumentStore

LABOR_SUMMARY_COLLECTION = "laborReports"


# ---------------------------------------------------------------------------
# Context helpers
# ---------------------------------------------------------------------------

def _fatal(run_id: str, message: str) -> None:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(1)


def _store(ctx: click.Context, run_id: str):
    """The injected store, or one opened from --store / --db-dsn."""
    obj = ctx.ensure_object(dict)
    if obj.get("store") is not None:
        return obj["store"]
    if obj["store_kind"] == "memory":
        obj["store"] = MemoryStore()
        return obj["store"]
    if not obj.get("db_dsn"):
        _fatal(run_id, "--db-dsn (or STAFFING_DB_DSN) is required for the postgres store")
    try:
        store = PostgresDocumentStore.connect(obj["db_dsn"])
    except StagingError as exc:
        _fatal(run_id, str(exc))
    ctx.call_on_close(store.close)
    obj["store"] = store
    return store


def _registry(ctx: click.Context, run_id: str):
    obj = ctx.ensure_object(dict)
    if obj.get("registry") is None:
        try:
            obj["registry"] = load_registry(obj.get("config_dir"))
        except (StagingError, FileNotFoundError) as exc:
            _fatal(run_id, f"record-type config: {exc}")
    return obj["registry"]


def _progress(run_id: str):
    def echo(done: int, total: int, collection: str) -> None:
        click.echo(f"[{run_id}] Committed {done}/{total} records to {collection}")
    return echo


def _resolve_decision(run: IngestionRun, decision: str) -> None:
    """Apply --decision to a run suspended at the denylist gate."""
    if run.state != AWAITING_OVERRIDE:
        return
    for m in run.matches:
        click.echo(
            f"[{run.run_id}] DNR match row {m.row_number}: {m.match_type} "
            f"({m.match_score}) {m.reason}"
        )
    if decision == "prompt":
        proceed = click.confirm(
            f"Proceed despite {len(run.matches)} DNR match(es)?", default=False
        )
        decision = DECISION_PROCEED if proceed else DECISION_CANCEL
    run.decide(decision)


def _finish(run_id: str, reports: list[RunReport], reports_dir: str | None) -> None:
    for report in reports:
        click.echo(build_run_report_text(report))
    path = write_run_report(reports, run_id, Path(reports_dir) if reports_dir else None)
    click.echo(f"[{run_id}] Run report: {path}")
    failed = [r for r in reports if r.state == FAILED]
    if failed:
        click.echo(f"[{run_id}] {len(failed)} run(s) failed; exiting non-zero", err=True)
        sys.exit(1)


def _run_options(
    dry_run: bool,
    max_batch_ops: int,
    denylist_threshold: int,
    allow_invalid: bool,
    allow_collisions: bool,
    enforce_size_limit: bool = False,
) -> RunOptions:
    return RunOptions(
        enforce_size_limit=enforce_size_limit,
        halt_on_invalid=not allow_invalid,
        block_on_collision=not allow_collisions,
        denylist_threshold=denylist_threshold,
        max_batch_ops=max_batch_ops,
        dry_run=dry_run,
    )


# ---------------------------------------------------------------------------
# Group
# ---------------------------------------------------------------------------

@click.group()
@click.option("--db-dsn", envvar="STAFFING_DB_DSN", default=None, help="PostgreSQL DSN")
@click.option(
    "--store",
    "store_kind",
    type=click.Choice(["postgres", "memory"]),
    default="postgres",
    show_default=True,
    help="Document store backend; 'memory' writes nothing durable",
)
@click.option("--config-dir", default=None, type=click.Path(file_okay=False), help="Record-type YAML folder")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
)
@click.pass_context
def main(ctx: click.Context, db_dsn: str | None, store_kind: str, config_dir: str | None, log_level: str) -> None:
    """Staffing data bulk-ingestion CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    obj = ctx.ensure_object(dict)
    obj.setdefault("store", None)
    obj.setdefault("registry", None)
    obj["db_dsn"] = db_dsn
    obj["store_kind"] = store_kind
    obj["config_dir"] = Path(config_dir) if config_dir else None


def _shared_run_options(fn):
    options = [
        click.option("--mode", type=click.Choice([MODE_APPEND, MODE_REPLACE]), default=MODE_APPEND, show_default=True),
        click.option("--actor", default="cli", show_default=True, help="Recorded as createdBy on written documents"),
        click.option("--run-id", default=None, help="Override UUID for log correlation"),
        click.option("--dry-run", is_flag=True, default=False),
        click.option("--rejects-path", default=None, type=click.Path(), help="CSV of invalid / skipped rows"),
        click.option("--reports-dir", default=None, type=click.Path(file_okay=False)),
        click.option("--max-batch-ops", default=MAX_BATCH_OPS, type=click.IntRange(1, MAX_BATCH_OPS), show_default=True),
        click.option("--denylist-threshold", default=DEFAULT_FUZZY_THRESHOLD, type=click.IntRange(0, 100), show_default=True),
        click.option(
            "--decision",
            type=click.Choice(["prompt", DECISION_PROCEED, DECISION_CANCEL]),
            default="prompt",
            show_default=True,
            help="What to do when rows match the DNR list",
        ),
        click.option("--allow-invalid", is_flag=True, default=False, help="Commit valid rows even if some rows are invalid"),
        click.option("--allow-collisions", is_flag=True, default=False, help="Commit even if an identity repeats within a file"),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


# ---------------------------------------------------------------------------
# ingest
# ---------------------------------------------------------------------------

@main.command()
@click.argument("record_type")
@click.argument("files", nargs=-1, required=True, type=click.Path())
@click.option("--enforce-size-limit", is_flag=True, default=False, help="Reject files over 10 MB")
@_shared_run_options
@click.pass_context
def ingest(
    ctx: click.Context,
    record_type: str,
    files: tuple[str, ...],
    enforce_size_limit: bool,
    mode: str,
    actor: str,
    run_id: str | None,
    dry_run: bool,
    rejects_path: str | None,
    reports_dir: str | None,
    max_batch_ops: int,
    denylist_threshold: int,
    decision: str,
    allow_invalid: bool,
    allow_collisions: bool,
) -> None:
    """Ingest FILES as RECORD_TYPE, one run per file."""
    run_id = run_id or str(uuid.uuid4())
    registry = _registry(ctx, run_id)
    if record_type not in registry:
        _fatal(run_id, f"unknown record type '{record_type}'; known: {', '.join(sorted(registry))}")
    config = registry[record_type]
    try:
        check_max_ops(config, max_batch_ops)
    except ValueError as exc:
        _fatal(run_id, str(exc))
    store = _store(ctx, run_id)
    options = _run_options(dry_run, max_batch_ops, denylist_threshold, allow_invalid, allow_collisions, enforce_size_limit)

    click.echo(f"[{run_id}] Starting {record_type} {mode} run (dry_run={dry_run})")
    reports: list[RunReport] = []
    for idx, file in enumerate(files, start=1):
        sub_id = run_id if len(files) == 1 else f"{run_id}-{idx}"
        rejects = None
        if rejects_path:
            p = Path(rejects_path)
            if len(files) > 1:
                p = p.with_name(f"{p.stem}-{idx}{p.suffix}")
            rejects = RejectWriter(p)
        run = IngestionRun(
            store, config, mode=mode if idx == 1 else MODE_APPEND, actor=actor,
            run_id=sub_id, options=options, rejects=rejects,
            progress=_progress(sub_id), source=file,
        )
        try:
            run.prepare(Path(file))
        except StagingError as exc:
            click.echo(f"[{sub_id}] ERROR: {exc}", err=True)
            run.abort(exc)
            reports.append(run.report)
            break
        _resolve_decision(run, decision)
        reports.append(run.report)
    _finish(run_id, reports, reports_dir)


@main.command("ingest-many")
@click.argument("jobs", nargs=-1, required=True)
@click.option("--workers", default=4, type=click.IntRange(1, 16), show_default=True)
@_shared_run_options
@click.pass_context
def ingest_many(
    ctx: click.Context,
    jobs: tuple[str, ...],
    workers: int,
    mode: str,
    actor: str,
    run_id: str | None,
    dry_run: bool,
    rejects_path: str | None,
    reports_dir: str | None,
    max_batch_ops: int,
    denylist_threshold: int,
    decision: str,
    allow_invalid: bool,
    allow_collisions: bool,
) -> None:
    """Ingest independent record types concurrently; JOBS are TYPE=FILE pairs.

    Runs that hit the DNR gate are resolved by --decision afterwards;
    'prompt' is treated as cancel here.
    """
    run_id = run_id or str(uuid.uuid4())
    registry = _registry(ctx, run_id)
    store = _store(ctx, run_id)
    options = _run_options(dry_run, max_batch_ops, denylist_threshold, allow_invalid, allow_collisions)

    pairs: list[tuple[IngestionRun, Path]] = []
    for job in jobs:
        record_type, sep, file = job.partition("=")
        if not sep or record_type not in registry:
            _fatal(run_id, f"bad job '{job}'; expected RECORD_TYPE=FILE with a known record type")
        try:
            check_max_ops(registry[record_type], max_batch_ops)
        except ValueError as exc:
            _fatal(run_id, str(exc))
        sub_id = f"{run_id}-{record_type}"
        rejects = None
        if rejects_path:
            p = Path(rejects_path)
            rejects = RejectWriter(p.with_name(f"{p.stem}-{record_type}{p.suffix}"))
        pairs.append((
            IngestionRun(
                store, registry[record_type], mode=mode, actor=actor, run_id=sub_id,
                options=options, rejects=rejects, progress=_progress(sub_id), source=file,
            ),
            Path(file),
        ))

    gate = DECISION_CANCEL if decision == "prompt" else decision
    try:
        reports = run_many(pairs, decision=gate, max_workers=workers)
    except ValueError as exc:
        _fatal(run_id, str(exc))
    _finish(run_id, reports, reports_dir)


# ---------------------------------------------------------------------------
# labor-reports
# ---------------------------------------------------------------------------

@main.command("labor-reports")
@click.argument("folder", type=click.Path(file_okay=False))
@click.option("--direct-share", default=DIRECT_HOURS_SHARE, type=click.FloatRange(0.0, 1.0), show_default=True,
              help="Share of hours counted as direct for rows without a known dept code")
@click.option("--skip-rows", is_flag=True, default=False, help="Write weekly summaries only, not per-associate rows")
@_shared_run_options
@click.pass_context
def labor_reports(
    ctx: click.Context,
    folder: str,
    direct_share: float,
    skip_rows: bool,
    mode: str,
    actor: str,
    run_id: str | None,
    dry_run: bool,
    rejects_path: str | None,
    reports_dir: str | None,
    max_batch_ops: int,
    denylist_threshold: int,
    decision: str,
    allow_invalid: bool,
    allow_collisions: bool,
) -> None:
    """Import every weekly labor-report spreadsheet in FOLDER."""
    run_id = run_id or str(uuid.uuid4())
    registry = _registry(ctx, run_id)
    config = registry["labor_report_row"]
    store = _store(ctx, run_id)
    options = _run_options(dry_run, max_batch_ops, denylist_threshold, allow_invalid, True)

    try:
        files = list_source_files(Path(folder))
    except StagingError as exc:
        _fatal(run_id, str(exc))
    if not files:
        _fatal(run_id, f"no spreadsheets found in {folder}")
    click.echo(f"[{run_id}] Found {len(files)} labor report file(s)")

    reports: list[RunReport] = []
    summaries = 0
    for idx, path in enumerate(files, start=1):
        sub_id = f"{run_id}-{idx}"
        try:
            parsed = parse_labor_report(path, direct_share)
        except StagingError as exc:
            click.echo(f"[{sub_id}] Skipping {path.name}: {exc}", err=True)
            continue
        if parsed.week_ending is None:
            click.echo(f"[{sub_id}] Skipping {path.name}: no week ending found", err=True)
            continue

        if not skip_rows and parsed.employees:
            rejects = None
            if rejects_path:
                p = Path(rejects_path)
                rejects = RejectWriter(p.with_name(f"{p.stem}-{idx}{p.suffix}"))
            run = IngestionRun(
                store, config, mode=mode if idx == 1 else MODE_APPEND, actor=actor,
                run_id=sub_id, options=options, rejects=rejects,
                progress=_progress(sub_id), source=str(path),
            )
            try:
                run.prepare(parsed.to_rows())
            except StagingError as exc:
                click.echo(f"[{sub_id}] ERROR: {exc}", err=True)
                run.abort(exc)
                reports.append(run.report)
                break
            reports.append(run.report)

        if not dry_run:
            batch = store.create_batch()
            store.batch_set(batch, store.doc_ref(LABOR_SUMMARY_COLLECTION), parsed.to_summary_document(actor))
            try:
                store.batch_commit(batch)
            except StagingError as exc:
                click.echo(f"[{sub_id}] Summary for {path.name} not written: {exc}", err=True)
                continue
            summaries += 1
        click.echo(
            f"[{sub_id}] {path.name}: week ending {parsed.week_ending:%Y-%m-%d}, "
            f"{parsed.employee_count} associates, {parsed.total_hours:.2f} hours"
        )

    click.echo(f"[{run_id}] Imported {summaries} report(s) into {LABOR_SUMMARY_COLLECTION}")
    _finish(run_id, reports, reports_dir)


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------

@main.command()
@click.argument("out_dir", type=click.Path(file_okay=False), default="backups")
@click.option("--collection", "collections", multiple=True, help="Limit to these collections")
@click.pass_context
def backup(ctx: click.Context, out_dir: str, collections: tuple[str, ...]) -> None:
    """Export collections to a timestamped JSON backup folder."""
    run_id = str(uuid.uuid4())
    store = _store(ctx, run_id)
    result = backup_collections(store, Path(out_dir), collections or BACKUP_COLLECTIONS)
    for name, count in result.counts.items():
        click.echo(f"[{run_id}] {name}: {count} document(s)")
    for name, error in result.failed.items():
        click.echo(f"[{run_id}] {name}: FAILED {error}", err=True)
    click.echo(f"[{run_id}] Backup: {result.backup_dir} ({result.total_documents} documents)")
    if result.failed:
        sys.exit(1)


@main.command()
@click.argument("backup_dir", type=click.Path(file_okay=False))
@click.option("--collection", "collections", multiple=True, help="Limit to these collections")
@click.option("--merge", is_flag=True, default=False, help="Merge into existing documents instead of overwriting")
@click.pass_context
def restore(ctx: click.Context, backup_dir: str, collections: tuple[str, ...], merge: bool) -> None:
    """Write a backup folder back into the store."""
    run_id = str(uuid.uuid4())
    store = _store(ctx, run_id)
    try:
        results = restore_collections(
            store, Path(backup_dir), collections or None,
            mode=RESTORE_MERGE if merge else RESTORE_OVERWRITE,
        )
    except StagingError as exc:
        _fatal(run_id, str(exc))
    for name, outcome in results.items():
        click.echo(f"[{run_id}] {name}: restored {outcome['restored']}, failed {outcome['failed']}")
    if any(o["failed"] for o in results.values()):
        sys.exit(1)


@main.command()
@click.option("--collection", "collections", multiple=True, help="Limit to these collections")
@click.option("--yes", is_flag=True, default=False, help="Confirm deletion")
@click.pass_context
def clear(ctx: click.Context, collections: tuple[str, ...], yes: bool) -> None:
    """Delete every document in the data collections."""
    run_id = str(uuid.uuid4())
    names = collections or DATA_COLLECTIONS
    if not yes:
        _fatal(run_id, f"refusing to clear {', '.join(names)} without --yes")
    store = _store(ctx, run_id)
    try:
        deleted = clear_collections(store, names)
    except StagingError as exc:
        _fatal(run_id, str(exc))
    for name, count in deleted.items():
        click.echo(f"[{run_id}] {name}: deleted {count}")


@main.command("migrate-eid")
@click.option("--collection", default="applicants", show_default=True)
@click.option("--dry-run", is_flag=True, default=False)
@click.pass_context
def migrate_eid(ctx: click.Context, collection: str, dry_run: bool) -> None:
    """Copy crmNumber into blank eid fields and list cross-collection conflicts."""
    run_id = str(uuid.uuid4())
    store = _store(ctx, run_id)
    try:
        result = migrate_eid_unification(store, collection, dry_run=dry_run)
    except StagingError as exc:
        _fatal(run_id, str(exc))
    click.echo(
        f"[{run_id}] migrated={result.migrated} already_ok={result.already_ok} "
        f"errors={result.errors}{' (dry run)' if dry_run else ''}"
    )
    for c in result.conflicts:
        names = ", ".join(f"{coll}={name}" for coll, name in c["names"].items())
        click.echo(f"[{run_id}] EID conflict {c['eid']}: {names}")


# ---------------------------------------------------------------------------
# DNR registry
# ---------------------------------------------------------------------------

@main.group()
def dnr() -> None:
    """Maintain the Do Not Return list."""


@dnr.command("add")
@click.option("--name", "associate_name", required=True)
@click.option("--eid", default="")
@click.option("--reason", default="")
@click.option("--actor", default="cli", show_default=True)
@click.pass_context
def dnr_add(ctx: click.Context, associate_name: str, eid: str, reason: str, actor: str) -> None:
    run_id = str(uuid.uuid4())
    store = _store(ctx, run_id)
    try:
        doc_id, created = add_to_denylist(store, {
            "associateName": associate_name,
            "eid": eid,
            "reason": reason,
            "source": "Manual",
            "dateAdded": SERVER_TIMESTAMP,
        }, actor)
    except StagingError as exc:
        _fatal(run_id, str(exc))
    if created:
        click.echo(f"[{run_id}] Added DNR entry {doc_id}")
    else:
        click.echo(f"[{run_id}] EID {eid} already on the DNR list ({doc_id})")


@dnr.command("remove")
@click.argument("doc_id")
@click.option("--notes", default="")
@click.option("--actor", default="cli", show_default=True)
@click.pass_context
def dnr_remove(ctx: click.Context, doc_id: str, notes: str, actor: str) -> None:
    run_id = str(uuid.uuid4())
    store = _store(ctx, run_id)
    try:
        remove_from_denylist(store, doc_id, actor, notes)
    except KeyError as exc:
        _fatal(run_id, exc.args[0])
    except StagingError as exc:
        _fatal(run_id, str(exc))
    click.echo(f"[{run_id}] Removed DNR entry {doc_id}")


@dnr.command("restore")
@click.argument("doc_id")
@click.option("--notes", default="")
@click.option("--actor", default="cli", show_default=True)
@click.pass_context
def dnr_restore(ctx: click.Context, doc_id: str, notes: str, actor: str) -> None:
    run_id = str(uuid.uuid4())
    store = _store(ctx, run_id)
    try:
        restore_to_denylist(store, doc_id, actor, notes)
    except KeyError as exc:
        _fatal(run_id, exc.args[0])
    except StagingError as exc:
        _fatal(run_id, str(exc))
    click.echo(f"[{run_id}] Restored DNR entry {doc_id}")


if __name__ == "__main__":
    main()
