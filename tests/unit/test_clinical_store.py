"""Unit tests for ClinicalDataStore."""

import logging
import threading

import pytest
from pydantic import ValidationError

from clinical_toolkit.schemas import AuditAction, StorageConfig
from clinical_toolkit.services.clinical_store import ClinicalDataStore, Collection
from clinical_toolkit.services.compliance.config import DEFAULT_STORAGE_KEY
from clinical_toolkit.services.compliance.crypto import EnvelopeEncryptor
from clinical_toolkit.services.errors import PatientReferenceError, PersistenceError
from clinical_toolkit.storage import EncryptedStorageAdapter, InMemoryStorageMedium
from tests.record_factories import (
    make_assessment,
    make_bp,
    make_education,
    make_goal,
    make_heart_rate,
    make_patient,
)


class CountingMedium(InMemoryStorageMedium):
    """Medium that counts writes per key."""

    def __init__(self):
        super().__init__()
        self.writes = {}

    def set_item(self, key, value):
        self.writes[key] = self.writes.get(key, 0) + 1
        super().set_item(key, value)


class ReadOnlyMedium(InMemoryStorageMedium):
    """Medium that rejects writes."""

    def set_item(self, key, value):
        raise OSError(30, "Read-only file system")


def _populate(store, patient_id="patient-1"):
    store.save_patient(make_patient(patient_id))
    store.save_assessment(make_assessment(f"{patient_id}-a", patient_id))
    store.save_vital_signs(make_bp(f"{patient_id}-bp", patient_id))
    store.save_vital_signs(make_heart_rate(f"{patient_id}-hr", patient_id))
    store.save_goal(make_goal(f"{patient_id}-g", patient_id))
    store.save_education_progress(make_education(f"{patient_id}-e", patient_id))


class TestPatients:
    """Tests for patient CRUD."""

    def test_save_sets_timestamps(self, store):
        """First save sets created_at and updated_at."""
        saved = store.save_patient(make_patient())

        assert saved.created_at
        assert saved.created_at == saved.updated_at

    def test_update_keeps_created_at(self, store):
        """Updating a patient keeps created_at and refreshes updated_at."""
        first = store.save_patient(make_patient())

        changed = make_patient(conditions=["hypertension"])
        changed.created_at = "2000-01-01T00:00:00.000000Z"
        second = store.save_patient(changed)

        assert second.created_at == first.created_at
        assert second.updated_at >= first.updated_at
        assert store.get_patient("patient-1").conditions == ["hypertension"]

    def test_returned_records_are_copies(self, store):
        """Mutating a returned record does not change the store."""
        saved = store.save_patient(make_patient())
        saved.first_name = "Changed"

        fetched = store.get_patient("patient-1")
        fetched.conditions.append("asthma")

        assert store.get_patient("patient-1").first_name == "Jane"
        assert store.get_patient("patient-1").conditions == []

    def test_get_missing_patient(self, store):
        """Unknown ids return None."""
        assert store.get_patient("nope") is None

    def test_get_all_in_insertion_order(self, store):
        """Patients are listed in insertion order; updates keep position."""
        store.save_patient(make_patient("p1"))
        store.save_patient(make_patient("p2"))
        store.save_patient(make_patient("p1", first_name="Janet"))

        assert [p.id for p in store.get_all_patients()] == ["p1", "p2"]

    def test_save_mapping(self, store):
        """A camelCase mapping is validated into a record."""
        saved = store.save(
            "patients",
            {"id": "p9", "firstName": "Ann", "lastName": "Lee", "dateOfBirth": "1980-02-02"},
        )
        assert saved.first_name == "Ann"

    def test_save_invalid_mapping(self, store):
        """An invalid mapping raises ValidationError and stores nothing."""
        with pytest.raises(ValidationError):
            store.save("patients", {"id": "p9"})
        assert store.get_all_patients() == []

    def test_wrong_record_type(self, store):
        """A record of another collection's type is rejected."""
        with pytest.raises(TypeError):
            store.save(Collection.VITALS, make_patient())


class TestPatientReferences:
    """Tests for referential integrity on save."""

    @pytest.mark.parametrize(
        "save_name,record",
        [
            ("save_assessment", make_assessment(patient_id="ghost")),
            ("save_vital_signs", make_bp(patient_id="ghost")),
            ("save_goal", make_goal(patient_id="ghost")),
            ("save_education_progress", make_education(patient_id="ghost")),
        ],
    )
    def test_unknown_patient_rejected(self, store, save_name, record):
        """Records referencing an unknown patient are not stored."""
        with pytest.raises(PatientReferenceError) as exc_info:
            getattr(store, save_name)(record)

        assert exc_info.value.patient_id == "ghost"
        assert store.list(Collection.ASSESSMENTS) == []
        assert store.list(Collection.VITALS) == []
        assert store.list(Collection.GOALS) == []
        assert store.list(Collection.EDUCATION) == []

    def test_reference_error_is_lookup_error(self):
        """PatientReferenceError can be caught as LookupError."""
        assert issubclass(PatientReferenceError, LookupError)


class TestPatientRecords:
    """Tests for assessments, vitals, goals and education."""

    def test_records_filtered_by_patient(self, store):
        """Getters return only the requested patient's records."""
        _populate(store, "p1")
        _populate(store, "p2")

        assert [a.id for a in store.get_patient_assessments("p1")] == ["p1-a"]
        assert [g.id for g in store.get_patient_goals("p2")] == ["p2-g"]
        assert [e.id for e in store.get_patient_education_progress("p1")] == ["p1-e"]
        assert len(store.get_patient_vitals("p2")) == 2

    def test_vitals_filtered_by_type(self, store):
        """get_patient_vitals accepts a vital type filter."""
        _populate(store)

        pressure = store.get_patient_vitals("patient-1", type="blood_pressure")

        assert [v.id for v in pressure] == ["patient-1-bp"]
        assert pressure[0].value.systolic == 130
        assert store.get_patient_vitals("patient-1", type="weight") == []

    def test_unknown_vital_type_filter(self, store):
        """An unknown type filter raises ValueError."""
        with pytest.raises(ValueError):
            store.get_patient_vitals("patient-1", type="oxygen")

    def test_save_replaces_by_id(self, store):
        """Saving an existing id replaces the record."""
        store.save_patient(make_patient())
        store.save_education_progress(make_education(progress=40))
        store.save_education_progress(make_education(progress=90))

        progress = store.get_patient_education_progress("patient-1")
        assert [p.progress for p in progress] == [90]

    def test_delete_vital_signs(self, store):
        """Deleting a vital reports whether it existed."""
        _populate(store)

        assert store.delete_vital_signs("patient-1-bp") is True
        assert store.delete_vital_signs("patient-1-bp") is False
        assert [v.id for v in store.get_patient_vitals("patient-1")] == ["patient-1-hr"]


class TestDeletePatient:
    """Tests for cascading patient deletion."""

    def test_cascade(self, store):
        """Deleting a patient removes every record that references it."""
        _populate(store, "p1")
        _populate(store, "p2")

        assert store.delete_patient("p1") is True

        assert store.get_patient("p1") is None
        for collection in (Collection.ASSESSMENTS, Collection.VITALS, Collection.GOALS, Collection.EDUCATION):
            assert all(r.patient_id == "p2" for r in store.list(collection))
        assert len(store.get_patient_vitals("p2")) == 2

    def test_cascade_is_persisted(self, store, reopen):
        """The cascade is visible after a restart."""
        _populate(store)
        store.delete_patient("patient-1")

        reopened = reopen()

        assert reopened.get_all_patients() == []
        assert reopened.list(Collection.VITALS) == []

    def test_unknown_patient(self, store):
        """Deleting an unknown patient returns False and records no audit."""
        assert store.delete_patient("nope") is False
        assert store.audit_trail == []

    def test_audit_entry(self, store):
        """Deletion records a masked DELETE_PATIENT entry with removed counts."""
        _populate(store)

        store.delete_patient("patient-1")

        entry = store.audit_trail[-1]
        assert entry.action == AuditAction.DELETE_PATIENT.value
        assert entry.subject_display.startswith("J.D. (")
        assert entry.metadata["removedRecords"] == {
            "assessments": 1,
            "vitals": 2,
            "goals": 1,
            "education": 1,
        }
        assert "Jane" not in str(entry.to_dict())


class TestPersistence:
    """Tests for the encrypted state envelope."""

    def test_state_survives_restart(self, store, reopen):
        """A new store over the same medium and key sees the data."""
        _populate(store)

        reopened = reopen()

        assert reopened.get_patient("patient-1").first_name == "Jane"
        assert len(reopened.get_patient_vitals("patient-1")) == 2
        assert reopened.get_patient("patient-1").created_at == store.get_patient("patient-1").created_at

    def test_envelope_shape(self, store, adapter):
        """The persisted envelope holds the state and the version."""
        store.save_patient(make_patient())

        envelope = adapter.get(DEFAULT_STORAGE_KEY)

        assert envelope["version"] == 1
        assert set(envelope["state"]) == {
            "patients",
            "assessments",
            "vitals",
            "goals",
            "education",
            "config",
            "welcomed",
            "tourCompleted",
        }
        assert envelope["state"]["patients"][0]["firstName"] == "Jane"

    def test_medium_holds_no_plaintext(self, store, medium):
        """No medium value contains patient identifiers."""
        _populate(store)

        for key in medium.keys():
            value = medium.get_item(key)
            assert "Jane" not in value
            assert "12345" not in value

    def test_corrupted_state_starts_empty(self, store, medium, reopen):
        """An undecryptable state blob gives an empty store, not an error."""
        _populate(store)
        medium.set_item(DEFAULT_STORAGE_KEY, "bm90IGEgdmFsaWQgYmxvYg==")

        assert reopen().get_all_patients() == []

    def test_non_envelope_starts_empty(self, adapter, reopen, caplog):
        """A decrypted value without a state object is ignored."""
        adapter.set(DEFAULT_STORAGE_KEY, ["not", "an", "envelope"])

        with caplog.at_level(logging.WARNING):
            assert reopen().get_all_patients() == []
        assert "not a state envelope" in caplog.text

    def test_version_mismatch_loads_as_is(self, store, reopen, caplog):
        """A different stored version is logged and loaded."""
        store.save_patient(make_patient())

        with caplog.at_level(logging.WARNING):
            reopened = reopen(schema_version=2)

        assert reopened.get_patient("patient-1") is not None
        assert "differs from schema version 2" in caplog.text

    def test_invalid_and_orphaned_records_skipped(self, adapter, reopen, caplog):
        """Bad persisted records are skipped and logged without their values."""
        adapter.set(
            DEFAULT_STORAGE_KEY,
            {
                "state": {
                    "patients": [make_patient().to_dict(), {"id": "broken", "firstName": "Janet"}],
                    "vitals": [
                        make_heart_rate().to_dict(),
                        make_heart_rate("orphan", patient_id="ghost").to_dict(),
                    ],
                    "goals": "not-a-list",
                    "config": {"backupFrequency": "hourly"},
                },
                "version": 1,
            },
        )

        with caplog.at_level(logging.WARNING):
            reopened = reopen()

        assert [p.id for p in reopened.get_all_patients()] == ["patient-1"]
        assert [v.id for v in reopened.list(Collection.VITALS)] == ["vital-hr-1"]
        assert reopened.config == StorageConfig()
        assert "patients[1]" in caplog.text
        assert "orphaned" in caplog.text
        assert "Janet" not in caplog.text

    def test_write_failure_keeps_memory_state(self, kek):
        """A failed commit raises PersistenceError and the mutation stays in memory."""
        store = ClinicalDataStore(
            EncryptedStorageAdapter(ReadOnlyMedium(), EnvelopeEncryptor(kek)),
            run_migrations=False,
        )

        with pytest.raises(PersistenceError):
            store.save_patient(make_patient())

        assert store.get_patient("patient-1") is not None

    def test_custom_storage_key(self, adapter, medium):
        """The envelope is written under the configured key."""
        store = ClinicalDataStore(adapter, storage_key="clinical-toolkit-alt", run_migrations=False)
        store.save_patient(make_patient())

        assert medium.get_item("clinical-toolkit-alt") is not None
        assert medium.get_item(DEFAULT_STORAGE_KEY) is None


class TestBatch:
    """Tests for grouped commits."""

    @pytest.fixture
    def counting(self, kek):
        medium = CountingMedium()
        store = ClinicalDataStore(
            EncryptedStorageAdapter(medium, EnvelopeEncryptor(kek)), run_migrations=False
        )
        return store, medium

    def test_each_mutation_commits(self, counting):
        """Outside a batch every mutation writes the envelope."""
        store, medium = counting
        _populate(store)
        assert medium.writes[DEFAULT_STORAGE_KEY] == 6

    def test_batch_commits_once(self, counting):
        """A batch writes the envelope once at the end."""
        store, medium = counting
        with store.batch():
            _populate(store)
            assert DEFAULT_STORAGE_KEY not in medium.writes

        assert medium.writes[DEFAULT_STORAGE_KEY] == 1

    def test_nested_batch_commits_at_outermost_exit(self, counting):
        """Nested batches commit once."""
        store, medium = counting
        with store.batch():
            with store.batch():
                store.save_patient(make_patient())
            store.save_goal(make_goal())

        assert medium.writes[DEFAULT_STORAGE_KEY] == 1

    def test_empty_batch_writes_nothing(self, counting):
        """A batch without mutations does not commit."""
        store, medium = counting
        with store.batch():
            store.get_all_patients()
        assert DEFAULT_STORAGE_KEY not in medium.writes

    def test_exception_still_commits_applied_mutations(self, counting):
        """Mutations before an exception are committed and the exception propagates."""
        store, medium = counting
        with pytest.raises(PatientReferenceError):
            with store.batch():
                store.save_patient(make_patient())
                store.save_goal(make_goal(patient_id="ghost"))

        assert medium.writes[DEFAULT_STORAGE_KEY] == 1
        assert store.get_patient("patient-1") is not None

    def test_commit_failure_does_not_replace_block_error(self, kek, caplog):
        """If the block raises and the commit fails, the block's error propagates."""
        store = ClinicalDataStore(
            EncryptedStorageAdapter(ReadOnlyMedium(), EnvelopeEncryptor(kek)),
            run_migrations=False,
        )

        with caplog.at_level(logging.ERROR):
            with pytest.raises(KeyError, match="missing field"):
                with store.batch():
                    store.save_patient(make_patient())
                    raise KeyError("missing field")

        assert "Failed to commit batch" in caplog.text
        assert store.get_patient("patient-1") is not None

    def test_commit_failure_at_clean_exit_raises(self, kek):
        """A failed commit after a clean block raises PersistenceError."""
        store = ClinicalDataStore(
            EncryptedStorageAdapter(ReadOnlyMedium(), EnvelopeEncryptor(kek)),
            run_migrations=False,
        )

        with pytest.raises(PersistenceError, match="Read-only"):
            with store.batch():
                store.save_patient(make_patient())


class TestConfigAndOnboarding:
    """Tests for storage config and onboarding flags."""

    def test_default_config(self, store):
        """A fresh store has the default config."""
        assert store.config == StorageConfig()

    def test_update_config_fields(self, store, reopen):
        """Field changes merge into the config and persist."""
        store.update_config(auto_backup=False, backup_frequency="daily")

        config = reopen().config
        assert config.auto_backup is False
        assert config.backup_frequency == "daily"
        assert config.retention_period == 365

    def test_replace_config(self, store):
        """A full config object replaces the current one."""
        store.update_config(StorageConfig(max_file_size=2))
        assert store.config.max_file_size == 2

    def test_invalid_config_change(self, store):
        """An invalid change raises and leaves the config unchanged."""
        with pytest.raises(ValidationError):
            store.update_config(backup_frequency="hourly")
        assert store.config.backup_frequency == "weekly"

    def test_onboarding_flow(self, store, reopen):
        """Welcome then tour, persisted across restarts."""
        assert store.is_first_visit()
        assert not store.should_show_tour()

        store.mark_welcomed()
        assert not store.is_first_visit()
        assert store.should_show_tour()

        store.mark_tour_completed()
        reopened = reopen()
        assert not reopened.is_first_visit()
        assert not reopened.should_show_tour()


class TestExport:
    """Tests for exports and their audit entries."""

    def test_export_patient(self, store):
        """A patient export carries the records, a masked view and one audit entry."""
        _populate(store)

        export = store.export_patient("patient-1")

        assert export.patient_profile.first_name == "Jane"
        assert export.masked_patient_profile.display_initials == "J.D."
        assert export.masked_patient_profile.masked_mrn == "****2345"
        assert len(export.vitals) == 2
        assert export.audit_entry.metadata["recordCounts"] == {
            "assessments": 1,
            "vitals": 2,
            "goals": 1,
            "education": 1,
        }
        assert export.audit_entry.metadata["dataTypes"] == [
            "assessments",
            "vitals",
            "goals",
            "education",
        ]
        assert [e.action for e in store.audit_trail] == ["EXPORT_PATIENT_DATA"]

    def test_export_unknown_patient(self, store):
        """Exporting an unknown patient returns None without auditing."""
        assert store.export_patient("nope") is None
        assert store.audit_trail == []

    def test_masked_view_has_no_pii(self, store):
        """The masked view of an export contains no identifiers."""
        _populate(store)

        view = str(store.export_patient("patient-1").masked_view())

        for secret in ("Jane", "Doe", "1990-06-15", "12345"):
            assert secret not in view

    def test_export_all(self, store):
        """A full export lists every collection and masked patients."""
        _populate(store, "p1")
        store.save_patient(make_patient("p2", "Bob", "Kim"))

        export = store.export_all()

        assert [p.id for p in export.patients] == ["p1", "p2"]
        assert [m.display_initials for m in export.masked_patients] == ["J.D.", "B.K."]
        assert len(export.vitals) == 2
        assert export.config == StorageConfig()
        assert export.audit_entry.action == "EXPORT_ALL_DATA"
        assert export.audit_entry.subject_display == "J.D., B.K."
        assert export.audit_entry.metadata["patientCount"] == 2
        assert "config" in export.audit_entry.metadata["dataTypes"]

    def test_audit_trail_is_a_copy(self, store):
        """Mutating the returned trail does not change the store's trail."""
        store.save_patient(make_patient())
        store.export_patient("patient-1")

        store.audit_trail.clear()

        assert len(store.audit_trail) == 1

    def test_describe_patient(self, store):
        """describe_patient gives a masked label."""
        store.save_patient(make_patient())

        assert store.describe_patient("patient-1").startswith("J.D. (")
        assert store.describe_patient("nope") is None


class TestImportBackup:
    """Tests for importing a backup payload."""

    def test_round_trip_into_new_store(self, store, kek):
        """export_all output imports into another store."""
        _populate(store)
        store.update_config(max_file_size=3)
        backup = store.export_all().to_dict()

        other = ClinicalDataStore(
            EncryptedStorageAdapter(InMemoryStorageMedium(), EnvelopeEncryptor(kek))
        )
        assert other.import_backup(backup) is True

        assert other.get_patient("patient-1").first_name == "Jane"
        assert len(other.get_patient_vitals("patient-1")) == 2
        assert other.config.max_file_size == 3

    def test_import_replaces_existing_data(self, store):
        """Collections are replaced, missing ones become empty."""
        _populate(store, "old")

        store.import_backup({"patients": [make_patient("new").to_dict()]})

        assert [p.id for p in store.get_all_patients()] == ["new"]
        assert store.list(Collection.VITALS) == []
        assert store.config == StorageConfig()

    def test_orphans_and_invalid_records_skipped(self, store):
        """Orphaned and invalid backup records are dropped."""
        store.import_backup(
            {
                "patients": [make_patient().to_dict()],
                "vitals": [
                    make_bp().to_dict(),
                    make_bp("orphan", patient_id="ghost").to_dict(),
                    {"id": "bad", "patientId": "patient-1", "type": "blood_pressure", "value": 1},
                ],
            }
        )

        assert [v.id for v in store.list(Collection.VITALS)] == ["vital-bp-1"]

    def test_non_dict_rejected(self, store):
        """A non-object backup is rejected without changes."""
        store.save_patient(make_patient())

        assert store.import_backup(["patients"]) is False
        assert store.get_patient("patient-1") is not None

    def test_onboarding_flags_kept(self, store):
        """Importing does not reset the welcome and tour flags."""
        store.mark_welcomed()
        store.import_backup({"welcomed": False})
        assert not store.is_first_visit()

    def test_import_is_persisted_and_audited(self, store, reopen):
        """An import commits and records an IMPORT_BACKUP entry."""
        store.import_backup({"patients": [make_patient().to_dict()]})

        assert reopen().get_patient("patient-1") is not None
        entry = store.audit_trail[-1]
        assert entry.action == "IMPORT_BACKUP"
        assert entry.metadata["patientCount"] == 1
        assert entry.metadata["recordCounts"]["patients"] == 1


class TestUtilities:
    """Tests for clear_all_data, generate_id and storage stats."""

    def test_clear_all_data(self, store, reopen):
        """Clearing resets collections, config and flags, and persists."""
        _populate(store)
        store.update_config(auto_backup=False)
        store.mark_welcomed()

        store.clear_all_data()
        reopened = reopen()

        assert reopened.get_all_patients() == []
        assert reopened.config == StorageConfig()
        assert reopened.is_first_visit()

    def test_generate_id_unique(self, store):
        """Generated ids are unique lowercase alphanumerics."""
        ids = {store.generate_id() for _ in range(200)}

        assert len(ids) == 200
        assert all(i.isalnum() and i == i.lower() for i in ids)

    def test_storage_stats(self, store, medium):
        """Stats count bytes under clinical keys against the quota."""
        medium.set_item("unrelated-key", "x" * 1000)
        _populate(store)

        stats = store.get_storage_stats()

        expected = sum(
            len(medium.get_item(k).encode("utf-8"))
            for k in medium.keys()
            if k.startswith(("clinical-toolkit", "bp-readings"))
        )
        assert stats["used"] == expected
        assert stats["total"] == 5 * 1024 * 1024
        assert stats["percentage"] == pytest.approx(expected / stats["total"] * 100)

    @pytest.mark.parametrize("quota", [0, -1])
    def test_non_positive_quota_rejected(self, adapter, quota):
        """A store cannot be built with a quota that stats would divide by."""
        with pytest.raises(ValueError, match="quota_bytes"):
            ClinicalDataStore(adapter, quota_bytes=quota)


class TestConcurrency:
    """Tests for concurrent mutations."""

    def test_concurrent_saves_all_persist(self, store, reopen):
        """Vitals saved from several threads are all committed."""
        store.save_patient(make_patient())

        def worker(n):
            for i in range(10):
                store.save_vital_signs(make_heart_rate(f"hr-{n}-{i}", bpm=60 + i))

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(store.get_patient_vitals("patient-1")) == 40
        assert len(reopen().get_patient_vitals("patient-1")) == 40
