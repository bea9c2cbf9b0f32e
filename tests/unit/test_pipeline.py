"""Unit tests for staffing_etl.pipeline (state machine, gates, hooks)."""

import csv

import pytest

from staffing_etl.errors import (
    CollectionBusyError,
    InvalidTransitionError,
    ReportFrozenError,
    SourceReadError,
    StoreError,
)
from staffing_etl.pipeline import (
    AWAITING_OVERRIDE,
    CANCELLED,
    DONE,
    FAILED,
    VALIDATION_FAILED,
    CollectionLocks,
    IngestionRun,
    RunOptions,
    generate_badge_id,
    run_many,
)
from staffing_etl.record_types import load_registry
from staffing_etl.shared import RejectWriter
from staffing_etl.store import MemoryStore


@pytest.fixture(scope="module")
def registry():
    return load_registry()


@pytest.fixture
def locks():
    return CollectionLocks()


@pytest.fixture
def dnr_store():
    return MemoryStore({"dnrDatabase": {
        "d1": {"associateName": "John Smith", "eid": "E1", "status": "Active", "reason": "No call no show"},
    }})


def _run(store, config, locks, **kwargs):
    return IngestionRun(store, config, locks=locks, **kwargs)


def _applicant(name, eid, status="Started"):
    return {"Status": status, "Full Name": name, "Employee ID": eid}


class BrokenQueryStore(MemoryStore):
    def query_in(self, collection, field_name, values):
        raise StoreError("UNAVAILABLE: backend down")


class FailingStore(MemoryStore):
    """Raises on the listed commit numbers (1-based)."""

    def __init__(self, fail_on, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_on = set(fail_on)
        self.attempts = 0

    def batch_commit(self, batch):
        self.attempts += 1
        if self.attempts in self.fail_on:
            raise StoreError("DEADLINE_EXCEEDED: commit timed out")
        super().batch_commit(batch)


class ExplodingStore(MemoryStore):
    def batch_commit(self, batch):
        raise RuntimeError("driver bug")


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

class TestHappyPath:
    def test_commits_and_reports(self, registry, locks):
        store = MemoryStore()
        run = _run(store, registry["applicant"], locks, actor="ops")
        report = run.run([_applicant("Ann Lee", "E10"), _applicant("Bo Chan", "E11")])
        assert run.state == DONE
        assert report.state_history == (
            "Parsing", "Normalizing", "Validating", "Resolving",
            "Screening", "Committing", "Reporting", "Done",
        )
        counts = report.counts["applicant"]
        assert (counts.attempted, counts.succeeded, counts.skipped, counts.failed) == (2, 2, 0, 0)
        assert report.rows_read == 2
        assert report.config_version == "v1.0.0"
        assert store.count("applicants") == 2
        assert {d.data["createdBy"] for d in store.get_all("applicants")} == {"ops"}

    def test_lock_released_when_done(self, registry, locks):
        run = _run(MemoryStore(), registry["applicant"], locks)
        run.run([_applicant("Ann Lee", "E10")])
        assert locks.holder("applicants") is None

    def test_existing_identities_reported_not_blocking(self, registry, locks):
        store = MemoryStore({"applicants": {"a1": {"eid": "E10", "name": "Ann Lee"}}})
        report = _run(store, registry["applicant"], locks).run([_applicant("Ann Lee", "E10")])
        assert report.state == DONE
        assert report.duplicates[0]["doc_id"] == "a1"
        assert store.count("applicants") == 2

    def test_reads_csv_source(self, registry, locks, tmp_path):
        path = tmp_path / "applicants.csv"
        path.write_text("Status,Full Name,Employee ID\nStarted,Ann Lee,E10\n,,\n", encoding="utf-8")
        store = MemoryStore()
        report = _run(store, registry["applicant"], locks).run(path)
        assert report.source == str(path)
        assert report.rows_read == 1
        assert store.count("applicants") == 1


# ---------------------------------------------------------------------------
# Validation halt
# ---------------------------------------------------------------------------

class TestValidationHalt:
    ROWS = [
        _applicant("Ann Lee", "E1"),
        _applicant("Bo Chan", "E2", status="Hired"),
        _applicant("Cy Diaz", "E1"),
    ]

    def test_invalid_row_and_collision_both_reported(self, registry, locks):
        store = MemoryStore()
        run = _run(store, registry["applicant"], locks)
        state = run.prepare(self.ROWS)
        report = run.report
        assert state == DONE
        assert VALIDATION_FAILED in report.state_history
        assert report.validation_errors == (
            "Row 3: Invalid status 'Hired'. Must be one of: Started, CB Updated, Rejected, "
            "BG Pending, Adjudication Pending, I-9 Pending, Declined, No Contact",
        )
        assert report.collisions == ({"identity": "E1", "rows": [2, 4]},)
        assert store.commits == 0
        assert locks.holder("applicants") is None

    def test_collision_alone_halts(self, registry, locks):
        store = MemoryStore()
        report = _run(store, registry["applicant"], locks).run(
            [_applicant("Ann Lee", "E1"), _applicant("Cy Diaz", "E1")]
        )
        assert VALIDATION_FAILED in report.state_history
        assert store.count("applicants") == 0

    def test_collision_allowed_in_replace_mode(self, registry, locks):
        store = MemoryStore()
        report = _run(store, registry["applicant"], locks, mode="replace").run(
            [_applicant("Ann Lee", "E1"), _applicant("Cy Diaz", "E1")]
        )
        assert VALIDATION_FAILED not in report.state_history
        assert report.collisions
        assert store.count("applicants") == 2

    def test_allow_invalid_commits_valid_rows(self, registry, locks):
        store = MemoryStore()
        options = RunOptions(halt_on_invalid=False, block_on_collision=False)
        report = _run(store, registry["applicant"], locks, options=options).run(self.ROWS)
        counts = report.counts["applicant"]
        assert (counts.succeeded, counts.skipped) == (2, 1)
        assert store.count("applicants") == 2

    def test_rejects_written(self, registry, locks, tmp_path):
        path = tmp_path / "rejects.csv"
        _run(MemoryStore(), registry["applicant"], locks, rejects=RejectWriter(path)).run(self.ROWS)
        with open(path, newline="", encoding="utf-8") as fh:
            rows = list(csv.DictReader(fh))
        assert len(rows) == 1
        assert rows[0]["name"] == "Bo Chan"
        assert "Invalid status 'Hired'" in rows[0]["_reject_reason"]


# ---------------------------------------------------------------------------
# Denylist gate
# ---------------------------------------------------------------------------

class TestDenylistGate:
    def test_match_suspends_run(self, registry, locks, dnr_store):
        run = _run(dnr_store, registry["applicant"], locks)
        assert run.prepare([_applicant("John Smith", "E1")]) == AWAITING_OVERRIDE
        [match] = run.matches
        assert match.match_type == "exact-id"
        assert match.row_number == 2
        assert dnr_store.count("applicants") == 0
        assert locks.holder("applicants") == run.run_id

    def test_cancel_writes_nothing(self, registry, locks, dnr_store):
        run = _run(dnr_store, registry["applicant"], locks)
        run.prepare([_applicant("John Smith", "E1"), _applicant("Ann Lee", "E2")])
        assert run.decide("cancel") == DONE
        assert CANCELLED in run.report.state_history
        assert run.report.decision == "cancel"
        assert dnr_store.count("applicants") == 0
        assert locks.holder("applicants") is None

    def test_proceed_commits_and_marks_override(self, registry, locks, dnr_store):
        run = _run(dnr_store, registry["applicant"], locks)
        run.prepare([_applicant("John Smith", "E1"), _applicant("Ann Lee", "E2")])
        assert run.decide("proceed") == DONE
        assert dnr_store.count("applicants") == 2
        assert len(run.report.overridden_matches) == 1
        assert run.report.to_dict()["denylist_matches"][0]["overridden"] is True

    def test_run_with_decision(self, registry, locks, dnr_store):
        report = _run(dnr_store, registry["applicant"], locks).run(
            [_applicant("John Smith", "E1")], decision="cancel"
        )
        assert report.state == DONE
        assert report.decision == "cancel"

    def test_no_decision_leaves_run_suspended(self, registry, locks, dnr_store):
        run = _run(dnr_store, registry["applicant"], locks)
        run.run([_applicant("John Smith", "E1")])
        assert run.state == AWAITING_OVERRIDE

    def test_threshold_option(self, registry, locks, dnr_store):
        options = RunOptions(denylist_threshold=60)
        report = _run(dnr_store, registry["applicant"], locks, options=options).run(
            [_applicant("John Baker", "E7")]
        )
        assert report.state == DONE
        assert report.denylist_matches == ()

    def test_decide_outside_gate(self, registry, locks):
        run = _run(MemoryStore(), registry["applicant"], locks)
        with pytest.raises(InvalidTransitionError):
            run.decide("proceed")

    def test_bad_decision(self, registry, locks, dnr_store):
        run = _run(dnr_store, registry["applicant"], locks)
        run.prepare([_applicant("John Smith", "E1")])
        with pytest.raises(ValueError):
            run.decide("maybe")

    def test_cannot_cancel_after_commit(self, registry, locks):
        run = _run(MemoryStore(), registry["applicant"], locks)
        run.run([_applicant("Ann Lee", "E10")])
        with pytest.raises(InvalidTransitionError):
            run.decide("cancel")


# ---------------------------------------------------------------------------
# Locks
# ---------------------------------------------------------------------------

class TestLocks:
    def test_busy_collection(self, registry, locks, dnr_store):
        first = _run(dnr_store, registry["applicant"], locks)
        first.prepare([_applicant("John Smith", "E1")])
        second = _run(dnr_store, registry["applicant"], locks)
        with pytest.raises(CollectionBusyError):
            second.prepare([_applicant("Ann Lee", "E2")])
        first.decide("cancel")
        assert second.state == "Idle"
        assert _run(dnr_store, registry["applicant"], locks).run([_applicant("Ann Lee", "E2")]).state == DONE

    def test_other_collections_unaffected(self, registry, locks):
        locks.acquire("applicants", "someone-else")
        report = _run(MemoryStore(), registry["associate"], locks).run([{"name": "Ann Lee", "eid": "E1"}])
        assert report.state == DONE

    def test_fan_out_collection_locked_while_suspended(self, registry, locks, dnr_store):
        run = _run(dnr_store, registry["associate"], locks)
        assert run.prepare([{"name": "John Smith", "eid": "E1"}]) == AWAITING_OVERRIDE
        assert locks.holder("associates") == run.run_id
        assert locks.holder("onPremiseData") == run.run_id
        run.decide("cancel")
        assert locks.holder("onPremiseData") is None

    def test_hook_collection_locked(self, registry, locks):
        run = _run(MemoryStore(), registry["early_leave"], locks)
        assert run.collections == ("earlyLeaves", "dnrDatabase")
        locks.acquire("dnrDatabase", "someone-else")
        with pytest.raises(CollectionBusyError):
            run.prepare(TestEarlyLeaveHook.ROWS)
        assert locks.holder("earlyLeaves") is None

    def test_prepare_twice(self, registry, locks):
        run = _run(MemoryStore(), registry["applicant"], locks)
        run.run([_applicant("Ann Lee", "E10")])
        with pytest.raises(InvalidTransitionError):
            run.prepare([])


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

class TestFailures:
    def test_unreadable_source(self, registry, locks, tmp_path):
        run = _run(MemoryStore(), registry["applicant"], locks)
        with pytest.raises(SourceReadError):
            run.prepare(tmp_path / "missing.csv")
        assert run.state == FAILED
        assert run.report.frozen
        assert locks.holder("applicants") is None

    def test_store_error_during_resolve(self, registry, locks):
        run = _run(BrokenQueryStore(), registry["applicant"], locks)
        assert run.prepare([_applicant("Ann Lee", "E10")]) == FAILED
        assert "UNAVAILABLE" in run.report.failure_reasons[0]
        assert locks.holder("applicants") is None

    def test_report_frozen_after_finish(self, registry, locks):
        run = _run(MemoryStore(), registry["applicant"], locks)
        report = run.run([_applicant("Ann Lee", "E10")])
        with pytest.raises(ReportFrozenError):
            report.add_warning("late")
        with pytest.raises(ReportFrozenError):
            report.state = "Idle"

    def test_bad_mode(self, registry):
        with pytest.raises(ValueError):
            IngestionRun(MemoryStore(), registry["applicant"], mode="merge")

    def test_batch_too_small_for_fan_out(self, registry):
        with pytest.raises(ValueError, match="need 2 ops"):
            IngestionRun(MemoryStore(), registry["associate"], options=RunOptions(max_batch_ops=1))

    def test_unexpected_error_ends_failed_and_frees_locks(self, registry, locks):
        run = _run(ExplodingStore(), registry["associate"], locks)
        with pytest.raises(RuntimeError):
            run.prepare([{"name": "Ann Lee", "eid": "E1"}])
        assert run.state == FAILED
        assert run.report.frozen
        assert "driver bug" in run.report.failure_reasons[0]
        assert locks.holder("associates") is None
        assert locks.holder("onPremiseData") is None

    def test_unexpected_error_after_decision(self, registry, locks):
        store = ExplodingStore({"dnrDatabase": {"d1": {"associateName": "John Smith", "eid": "E1"}}})
        run = _run(store, registry["applicant"], locks)
        assert run.prepare([_applicant("John Smith", "E1")]) == AWAITING_OVERRIDE
        with pytest.raises(RuntimeError):
            run.decide("proceed")
        assert run.state == FAILED
        assert locks.holder("applicants") is None


# ---------------------------------------------------------------------------
# Partial commit failure
# ---------------------------------------------------------------------------

class TestPartialCommitFailure:
    def test_failed_unit_does_not_stop_later_units(self, registry, locks):
        store = FailingStore(fail_on={2})
        rows = [_applicant(f"Person {i}", f"E{i:03d}") for i in range(12)]
        run = _run(store, registry["applicant"], locks, options=RunOptions(max_batch_ops=5))
        report = run.run(rows)
        assert report.state == DONE
        counts = report.counts["applicant"]
        assert (counts.attempted, counts.succeeded, counts.failed) == (12, 7, 5)
        assert store.attempts == 3
        assert run.commit_result.unit_sizes == [5, 5, 2]
        assert any("DEADLINE_EXCEEDED: commit timed out" in r for r in report.failure_reasons)
        assert store.count("applicants") == 7


# ---------------------------------------------------------------------------
# Dry run
# ---------------------------------------------------------------------------

class TestDryRun:
    def test_nothing_written(self, registry, locks):
        store = MemoryStore()
        options = RunOptions(dry_run=True)
        report = _run(store, registry["applicant"], locks, options=options).run(
            [_applicant("Ann Lee", "E10")]
        )
        assert report.state == DONE
        assert report.dry_run
        assert store.commits == 0
        assert "dry run: 1 record(s) not written" in report.warnings


# ---------------------------------------------------------------------------
# Record-type hooks
# ---------------------------------------------------------------------------

class TestBadgeHook:
    def test_generate_badge_id(self):
        assert generate_badge_id("1234", "Lee") == "PLX-00001234-LEE"
        assert generate_badge_id("1234", "Li") == "PLX-00001234-LIX"
        assert generate_badge_id("1234", "") == "PLX-00001234-XXX"

    def test_badge_id_assigned_on_commit(self, registry, locks):
        store = MemoryStore()
        _run(store, registry["badge"], locks).run([{"Badge Name": "Ann Lee", "ID": "1234"}])
        data = store.get("badges", "1234").data
        assert data["badgeId"] == "PLX-00001234-LEE"
        assert data["status"] == "Pending"


class TestEarlyLeaveHook:
    ROWS = [
        {"Name": "Ann Lee", "ID": "E5", "date": "2024-03-01", "correctiveAction": "dnr"},
        {"Name": "Bo Chan", "ID": "E6", "date": "2024-03-01", "correctiveAction": "Warning"},
    ]

    def test_dnr_action_added_to_registry(self, registry, locks):
        store = MemoryStore()
        report = _run(store, registry["early_leave"], locks, actor="lead").run(self.ROWS)
        assert report.state == DONE
        [entry] = store.get_all("dnrDatabase")
        assert entry.data["eid"] == "E5"
        assert entry.data["source"] == "Early Leave"
        assert entry.data["reason"] == "Early Leave - DNR Action"
        assert entry.data["addedBy"] == "lead"
        assert store.get("earlyLeaves", entry.data["earlyLeaveId"]) is not None
        assert "1 DNR entry added" in report.warnings

    def test_existing_active_entry_not_duplicated(self, registry, locks):
        store = MemoryStore({"dnrDatabase": {"d1": {"associateName": "Ann Lee", "eid": "E5"}}})
        _run(store, registry["early_leave"], locks).run(self.ROWS)
        assert store.count("dnrDatabase") == 1


# ---------------------------------------------------------------------------
# run_many
# ---------------------------------------------------------------------------

class TestRunMany:
    def test_reports_in_job_order(self, registry, locks):
        store = MemoryStore()
        jobs = [
            (_run(store, registry["applicant"], locks), [_applicant("Ann Lee", "E10")]),
            (_run(store, registry["associate"], locks), [{"name": "Bo Chan", "eid": "E11"}]),
        ]
        reports = run_many(jobs)
        assert [r.record_type for r in reports] == ["applicant", "associate"]
        assert all(r.state == DONE for r in reports)
        assert store.count("applicants") == 1
        assert store.count("associates") == 1

    def test_same_collection_rejected(self, registry, locks):
        store = MemoryStore()
        jobs = [
            (_run(store, registry["applicant"], locks), []),
            (_run(store, registry["applicant"], locks), []),
        ]
        with pytest.raises(ValueError):
            run_many(jobs)

    def test_hook_collection_overlap_rejected(self, registry, locks):
        store = MemoryStore()
        jobs = [
            (_run(store, registry["early_leave"], locks), TestEarlyLeaveHook.ROWS),
            (_run(store, registry["dnr_entry"], locks, mode="replace"), [{"associateName": "Bo Chan"}]),
        ]
        with pytest.raises(ValueError, match="dnrDatabase"):
            run_many(jobs)
        assert store.commits == 0

    def test_failed_job_keeps_its_report(self, registry, locks, tmp_path):
        store = MemoryStore()
        jobs = [
            (_run(store, registry["applicant"], locks), [_applicant("Ann Lee", "E10")]),
            (_run(store, registry["associate"], locks), tmp_path / "missing.csv"),
        ]
        reports = run_many(jobs)
        assert [r.state for r in reports] == [DONE, FAILED]
        assert reports[1].frozen
        assert store.count("applicants") == 1

    def test_busy_job_reported_failed(self, registry, locks):
        locks.acquire("associates", "someone-else")
        jobs = [(_run(MemoryStore(), registry["associate"], locks), [{"name": "Bo Chan", "eid": "E11"}])]
        [report] = run_many(jobs)
        assert report.state == FAILED
        assert "held by run someone-else" in report.failure_reasons[0]
        assert locks.holder("associates") == "someone-else"

    def test_decision_applied_to_gated_runs(self, registry, locks, dnr_store):
        jobs = [(_run(dnr_store, registry["applicant"], locks), [_applicant("John Smith", "E1")])]
        [report] = run_many(jobs, decision="proceed")
        assert report.decision == "proceed"
        assert dnr_store.count("applicants") == 1
