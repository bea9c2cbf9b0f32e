"""Unit tests for staffing_etl.maintenance."""

import json
from datetime import datetime

import pytest

from staffing_etl.errors import PreservedCollectionError, SourceReadError
from staffing_etl.maintenance import (
    EID_MIGRATION_ACTOR,
    MANIFEST_NAME,
    RESTORE_MERGE,
    backup_collections,
    clear_collections,
    deserialize_value,
    find_cross_collection_conflicts,
    migrate_eid_unification,
    restore_collections,
    serialize_value,
)
from staffing_etl.store import MemoryStore

NOW = datetime(2024, 3, 10, 14, 5, 9)


@pytest.fixture
def store():
    return MemoryStore({
        "applicants": {
            "a1": {"eid": "E1", "name": "Ann Lee", "processDate": datetime(2024, 1, 15)},
            "a2": {"eid": "", "crmNumber": "C2", "name": "Bo Chan"},
        },
        "users": {"u1": {"email": "ops@example.com"}},
    })


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

class TestSerialization:
    def test_datetimes_round_trip(self):
        value = {"d": datetime(2024, 1, 15, 8, 30), "nested": [{"d": datetime(2024, 1, 16)}]}
        assert deserialize_value(json.loads(json.dumps(serialize_value(value)))) == value

    def test_plain_strings_untouched(self):
        assert deserialize_value("2024-01-15") == "2024-01-15"
        assert deserialize_value("Ann Lee") == "Ann Lee"


# ---------------------------------------------------------------------------
# Backup / restore
# ---------------------------------------------------------------------------

class TestBackup:
    def test_writes_timestamped_folder(self, store, tmp_path):
        result = backup_collections(store, tmp_path, ["applicants", "users", "badges"], now=NOW)
        assert result.backup_dir == tmp_path / "backup-2024-03-10-140509"
        assert result.counts == {"applicants": 2, "users": 1, "badges": 0}
        assert result.total_documents == 3
        assert not (result.backup_dir / "badges.json").exists()

        docs = json.loads((result.backup_dir / "applicants.json").read_text())
        assert docs[0] == {
            "id": "a1",
            "data": {"eid": "E1", "name": "Ann Lee", "processDate": "2024-01-15T00:00:00"},
        }

    def test_manifest(self, store, tmp_path):
        result = backup_collections(store, tmp_path, ["applicants", "badges"], now=NOW)
        manifest = json.loads((result.backup_dir / MANIFEST_NAME).read_text())
        assert manifest["totalDocuments"] == 2
        assert manifest["collections"] == [
            {"name": "applicants", "documentCount": 2, "file": "applicants.json"},
            {"name": "badges", "documentCount": 0, "file": None},
        ]


class TestRestore:
    def test_round_trip_keeps_ids_and_dates(self, store, tmp_path):
        backup = backup_collections(store, tmp_path, ["applicants", "users"], now=NOW)
        target = MemoryStore()
        results = restore_collections(target, backup.backup_dir)
        assert results == {
            "applicants": {"restored": 2, "failed": 0},
            "users": {"restored": 1, "failed": 0},
        }
        assert target.get("applicants", "a1").data == store.get("applicants", "a1").data

    def test_selected_collections_only(self, store, tmp_path):
        backup = backup_collections(store, tmp_path, ["applicants", "users"], now=NOW)
        target = MemoryStore()
        restore_collections(target, backup.backup_dir, ["users", "badges"])
        assert target.count("users") == 1
        assert target.count("applicants") == 0

    def test_overwrite_vs_merge(self, store, tmp_path):
        backup = backup_collections(store, tmp_path, ["users"], now=NOW)
        target = MemoryStore({"users": {"u1": {"role": "admin"}}})
        restore_collections(target, backup.backup_dir, mode=RESTORE_MERGE)
        assert target.get("users", "u1").data == {"role": "admin", "email": "ops@example.com"}
        restore_collections(target, backup.backup_dir)
        assert target.get("users", "u1").data == {"email": "ops@example.com"}

    def test_small_units(self, store, tmp_path):
        backup = backup_collections(store, tmp_path, ["applicants"], now=NOW)
        target = MemoryStore()
        restore_collections(target, backup.backup_dir, max_ops=1)
        assert target.commits == 2

    def test_missing_folder(self, tmp_path):
        with pytest.raises(SourceReadError):
            restore_collections(MemoryStore(), tmp_path / "nope")

    def test_corrupt_file(self, tmp_path):
        (tmp_path / "badges.json").write_text("{not json")
        with pytest.raises(SourceReadError):
            restore_collections(MemoryStore(), tmp_path)

    def test_bad_mode(self, tmp_path):
        with pytest.raises(ValueError):
            restore_collections(MemoryStore(), tmp_path, mode="append")


# ---------------------------------------------------------------------------
# Clear
# ---------------------------------------------------------------------------

class TestClear:
    def test_deletes_documents(self, store):
        assert clear_collections(store, ["applicants", "badges"]) == {"applicants": 2, "badges": 0}
        assert store.count("applicants") == 0

    def test_preserved_collections_refused(self, store):
        with pytest.raises(PreservedCollectionError, match="users"):
            clear_collections(store, ["applicants", "users"])
        # nothing deleted when any target is refused
        assert store.count("applicants") == 2


# ---------------------------------------------------------------------------
# EID unification
# ---------------------------------------------------------------------------

class TestMigrateEid:
    def test_copies_crm_into_blank_eid(self, store):
        result = migrate_eid_unification(store)
        assert (result.migrated, result.already_ok, result.errors) == (1, 1, 0)
        data = store.get("applicants", "a2").data
        assert data["eid"] == "C2"
        assert data["crmNumber"] == "C2"
        assert data["migratedBy"] == EID_MIGRATION_ACTOR
        assert isinstance(data["migratedAt"], datetime)

    def test_dry_run_writes_nothing(self, store):
        result = migrate_eid_unification(store, dry_run=True)
        assert result.migrated == 1
        assert store.get("applicants", "a2").data["eid"] == ""
        assert store.commits == 0

    def test_neither_id_is_an_error(self):
        store = MemoryStore({"applicants": {"a1": {"name": "Nobody"}}})
        assert migrate_eid_unification(store).errors == 1

    def test_rerun_is_noop(self, store):
        migrate_eid_unification(store)
        result = migrate_eid_unification(store)
        assert (result.migrated, result.already_ok) == (0, 2)


class TestConflicts:
    def test_same_eid_different_names(self):
        store = MemoryStore({
            "applicants": {"a1": {"eid": "E1", "name": "Ann Lee"}},
            "associates": {"E1": {"eid": "E1", "name": "Lee, Ann"}},
            "badges": {"E2": {"eid": "E2", "name": "Bo Chan"}},
        })
        assert find_cross_collection_conflicts(store) == []

        store = MemoryStore({
            "applicants": {"a1": {"eid": "E1", "name": "Ann Lee"}},
            "badges": {"E1": {"eid": "E1", "name": "Ann Smith"}},
        })
        assert find_cross_collection_conflicts(store) == [
            {"eid": "E1", "names": {"applicants": "Ann Lee", "badges": "Ann Smith"}}
        ]
