"""staffing_etl.shared

Shared utilities used by the ingestion pipeline and the maintenance
commands: RejectWriter, RunReport, and report-writing support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from staffing_etl.errors import ReportFrozenError

REPORTS_DIR = Path("./artifacts/reports")


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows.

    Columns are fixed by the first row written; later rows with extra keys
    have them dropped.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.count = 0

    @property
    def path(self) -> Path:
        return self._path

    def write(self, row: dict[str, Any], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = [str(k) for k in row.keys()] + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = {str(k): v for k, v in row.items()}
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()
        self.count += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()
            self._fh = None


# ---------------------------------------------------------------------------
# RunReport
# ---------------------------------------------------------------------------

@dataclass
class RecordCounts:
    attempted: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
        }


@dataclass
class RunReport:
    """Audit trail of one ingestion run.

    Mutated while the run progresses; finalize() freezes it, after which
    any attribute assignment or add_* call raises ReportFrozenError.
    """

    run_id: str
    record_type: str
    collection: str
    mode: str
    actor: str
    dry_run: bool = False
    source: str | None = None
    config_version: str | None = None
    config_hash: str = ""
    started_at: str = field(default_factory=lambda: datetime.utcnow().isoformat())
    finished_at: str | None = None
    state: str = "Idle"
    state_history: list[str] = field(default_factory=list)
    rows_read: int = 0
    deleted: int = 0
    counts: dict[str, RecordCounts] = field(default_factory=dict)
    validation_errors: list[str] = field(default_factory=list)
    collisions: list[dict[str, Any]] = field(default_factory=list)
    duplicates: list[dict[str, Any]] = field(default_factory=list)
    denylist_matches: list[Any] = field(default_factory=list)
    failure_reasons: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    decision: str | None = None
    elapsed_seconds: float = 0.0
    _frozen: bool = field(default=False, repr=False)

    def __setattr__(self, name: str, value: Any) -> None:
        if getattr(self, "_frozen", False):
            raise ReportFrozenError(f"run report {self.run_id} is final; cannot set {name}")
        super().__setattr__(name, value)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def _check_open(self) -> None:
        if self._frozen:
            raise ReportFrozenError(f"run report {self.run_id} is final")

    def counts_for(self, record_type: str | None = None) -> RecordCounts:
        self._check_open()
        key = record_type or self.record_type
        if key not in self.counts:
            self.counts[key] = RecordCounts()
        return self.counts[key]

    def add_failure(self, reason: str) -> None:
        self._check_open()
        self.failure_reasons.append(reason)

    def add_warning(self, message: str) -> None:
        self._check_open()
        self.warnings.append(message)

    def enter(self, state: str) -> None:
        self._check_open()
        self.state = state
        self.state_history.append(state)

    @property
    def overridden_matches(self) -> list[Any]:
        return [m for m in self.denylist_matches if getattr(m, "overridden", False)]

    @property
    def totals(self) -> RecordCounts:
        out = RecordCounts()
        for c in self.counts.values():
            out.attempted += c.attempted
            out.succeeded += c.succeeded
            out.skipped += c.skipped
            out.failed += c.failed
        return out

    def finalize(self, elapsed_seconds: float) -> "RunReport":
        self._check_open()
        self.elapsed_seconds = round(elapsed_seconds, 3)
        self.finished_at = datetime.utcnow().isoformat()
        self.validation_errors = tuple(self.validation_errors)
        self.collisions = tuple(self.collisions)
        self.duplicates = tuple(self.duplicates)
        self.denylist_matches = tuple(self.denylist_matches)
        self.failure_reasons = tuple(self.failure_reasons)
        self.warnings = tuple(self.warnings)
        self.state_history = tuple(self.state_history)
        self._frozen = True
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "record_type": self.record_type,
            "collection": self.collection,
            "mode": self.mode,
            "actor": self.actor,
            "dry_run": self.dry_run,
            "source": self.source,
            "config_version": self.config_version,
            "config_hash": self.config_hash,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "elapsed_seconds": self.elapsed_seconds,
            "state": self.state,
            "state_history": list(self.state_history),
            "decision": self.decision,
            "rows_read": self.rows_read,
            "deleted": self.deleted,
            "counts": {k: v.to_dict() for k, v in self.counts.items()},
            "validation_errors": list(self.validation_errors),
            "collisions": list(self.collisions),
            "duplicates": list(self.duplicates),
            "denylist_matches": [
                m.to_dict() if hasattr(m, "to_dict") else m for m in self.denylist_matches
            ],
            "failure_reasons": list(self.failure_reasons),
            "warnings": list(self.warnings),
        }


# ---------------------------------------------------------------------------
# Report rendering
# ---------------------------------------------------------------------------

def build_run_report_text(report: RunReport) -> str:
    """Human-readable summary, one fact per line."""
    totals = report.totals
    lines = [
        f"=== {report.record_type} → {report.collection} ({report.mode}"
        f"{', DRY RUN' if report.dry_run else ''}) ===",
        f"  state:               {report.state}",
        f"  rows read:           {report.rows_read}",
        f"  attempted:           {totals.attempted}",
        f"  succeeded:           {totals.succeeded}",
        f"  skipped:             {totals.skipped}",
        f"  failed:              {totals.failed}",
    ]
    if report.deleted:
        lines.append(f"  deleted (replace):   {report.deleted}")
    if report.validation_errors:
        lines.append(f"  validation errors:   {len(report.validation_errors)}")
        lines.extend(f"    {e}" for e in report.validation_errors[:20])
        if len(report.validation_errors) > 20:
            lines.append(f"    ... {len(report.validation_errors) - 20} more")
    if report.collisions:
        lines.append(f"  identity collisions: {len(report.collisions)}")
        lines.extend(f"    {c['identity']}: rows {c['rows']}" for c in report.collisions)
    if report.duplicates:
        lines.append(f"  already in store:    {len(report.duplicates)}")
    if report.denylist_matches:
        lines.append(f"  DNR matches:         {len(report.denylist_matches)}")
        for m in report.denylist_matches:
            flag = " [overridden]" if m.overridden else ""
            lines.append(
                f"    row {m.row_number}: {m.match_type} ({m.match_score}) {m.reason}{flag}"
            )
    if report.failure_reasons:
        lines.append("  failures:")
        lines.extend(f"    {r}" for r in report.failure_reasons)
    if report.warnings:
        lines.append("  warnings:")
        lines.extend(f"    {w}" for w in report.warnings)
    lines.append(f"  elapsed:             {report.elapsed_seconds:.2f}s")
    return "\n".join(lines)


def write_json_report(run_id: str, payload: dict[str, Any], reports_dir: Path | None = None) -> Path:
    report_path = (reports_dir or REPORTS_DIR) / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(payload, indent=2, default=str))
    return report_path


def write_run_report(
    reports: list[RunReport],
    run_id: str,
    reports_dir: Path | None = None,
) -> Path:
    return write_json_report(
        run_id,
        {
            "run_id": run_id,
            "written_at": datetime.utcnow().isoformat(),
            "runs": [r.to_dict() for r in reports],
        },
        reports_dir,
    )
