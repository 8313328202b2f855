"""Clinical data store.

The store is the single owner of all clinical collections (patients,
assessments, vitals, goals, education progress), the storage config and the
onboarding flags. It keeps the state in memory and persists the whole state
through an EncryptedStorageAdapter after every mutation:

    {"state": {"patients": [...], ..., "config": {...}}, "version": 1}

A store is constructed once and passed by reference. Construction rehydrates
the persisted state and then runs the legacy migration importer once.

Concurrency: all reads and mutations hold a re-entrant lock, and a mutation
holds it through its commit, so commits reach the medium in call order. Only
one store instance (one process) may write to a given medium and key; with
several writers the last commit wins.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from contextlib import contextmanager
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Union,
)

from pydantic import ValidationError

from clinical_toolkit.schemas.audit_log import AuditAction, AuditLogEntry
from clinical_toolkit.schemas.backup import PatientExport, StoreExport
from clinical_toolkit.schemas.clinical_records import (
    AssessmentResult,
    BloodGlucoseReading,
    BloodPressureReading,
    ClinicalModel,
    EducationProgress,
    GoalTracking,
    HeartRateReading,
    PatientProfile,
    StorageConfig,
    TemperatureReading,
    VitalSigns,
    VitalType,
    WeightReading,
    parse_vital_signs,
    utc_now_iso,
)
from clinical_toolkit.services.compliance.config import (
    DEFAULT_LEGACY_PATIENT_ID,
    DEFAULT_QUOTA_BYTES,
    DEFAULT_STORAGE_KEY,
)
from clinical_toolkit.services.compliance.masking import (
    create_audit_log_entry,
    create_batch_audit_log_entry,
    create_safe_display_name,
    mask_patient,
    mask_patient_batch,
)
from clinical_toolkit.services.compliance.masking_policy import MaskingPolicy
from clinical_toolkit.services.errors import PatientReferenceError, PersistenceError
from clinical_toolkit.services.migration import LegacyMigrationImporter, MigrationResult

if TYPE_CHECKING:
    from clinical_toolkit.storage.encrypted import EncryptedStorageAdapter

logger = logging.getLogger(__name__)

# Medium key prefixes counted by get_storage_stats
STORAGE_KEY_PREFIXES = ("clinical-toolkit", "bp-readings")

_BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


class Collection(str, Enum):
    """Clinical collections owned by the store."""

    PATIENTS = "patients"
    ASSESSMENTS = "assessments"
    VITALS = "vitals"
    GOALS = "goals"
    EDUCATION = "education"


# Collections whose records reference a patient through patient_id
PATIENT_RECORD_COLLECTIONS = (
    Collection.ASSESSMENTS,
    Collection.VITALS,
    Collection.GOALS,
    Collection.EDUCATION,
)

_RECORD_KINDS = {
    Collection.PATIENTS: "patient",
    Collection.ASSESSMENTS: "assessment",
    Collection.VITALS: "vital signs",
    Collection.GOALS: "goal",
    Collection.EDUCATION: "education progress",
}

_RECORD_TYPES = {
    Collection.PATIENTS: (PatientProfile,),
    Collection.ASSESSMENTS: (AssessmentResult,),
    Collection.VITALS: (
        BloodPressureReading,
        BloodGlucoseReading,
        WeightReading,
        TemperatureReading,
        HeartRateReading,
    ),
    Collection.GOALS: (GoalTracking,),
    Collection.EDUCATION: (EducationProgress,),
}


def _parse_record(collection: Collection, data: Mapping[str, Any]) -> ClinicalModel:
    if collection == Collection.PATIENTS:
        return PatientProfile.model_validate(data)
    if collection == Collection.ASSESSMENTS:
        return AssessmentResult.model_validate(data)
    if collection == Collection.VITALS:
        return parse_vital_signs(dict(data))
    if collection == Collection.GOALS:
        return GoalTracking.model_validate(data)
    return EducationProgress.model_validate(data)


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36_DIGITS[remainder])
    return "".join(reversed(digits))


class _StoreState:
    """Mutable in-memory state. Collections are id -> record dicts in insertion order."""

    def __init__(self) -> None:
        self.collections: Dict[Collection, Dict[str, ClinicalModel]] = {
            c: {} for c in Collection
        }
        self.config = StorageConfig()
        self.welcomed = False
        self.tour_completed = False

    def to_dict(self) -> Dict[str, Any]:
        state: Dict[str, Any] = {
            c.value: [r.to_dict() for r in self.collections[c].values()]
            for c in Collection
        }
        state["config"] = self.config.to_dict()
        state["welcomed"] = self.welcomed
        state["tourCompleted"] = self.tour_completed
        return state

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], source: str) -> "_StoreState":
        """Build state from a persisted or backup dict, skipping bad records.

        Records are validated individually; invalid records and records whose
        patient_id does not reference a loaded patient are skipped with a
        warning. Log lines name the collection and index only, never values.
        """
        state = cls()

        for collection in [Collection.PATIENTS, *PATIENT_RECORD_COLLECTIONS]:
            raw_items = data.get(collection.value)
            if raw_items is None:
                continue
            if not isinstance(raw_items, list):
                logger.warning(
                    f"Ignoring {source} '{collection.value}': expected a list, "
                    f"got {type(raw_items).__name__}"
                )
                continue

            target = state.collections[collection]
            for index, item in enumerate(raw_items):
                if not isinstance(item, Mapping):
                    logger.warning(
                        f"Skipping {source} {collection.value}[{index}]: not an object"
                    )
                    continue
                try:
                    record = _parse_record(collection, item)
                except ValidationError as e:
                    logger.warning(
                        f"Skipping invalid {source} {collection.value}[{index}] "
                        f"({e.error_count()} validation errors)"
                    )
                    continue

                if (
                    collection != Collection.PATIENTS
                    and record.patient_id not in state.collections[Collection.PATIENTS]
                ):
                    logger.warning(
                        f"Skipping orphaned {source} {collection.value}[{index}]: "
                        f"unknown patient reference"
                    )
                    continue

                target[record.id] = record

        raw_config = data.get("config")
        if raw_config is not None:
            try:
                state.config = StorageConfig.model_validate(raw_config)
            except ValidationError as e:
                logger.warning(
                    f"Invalid {source} config ({e.error_count()} validation errors), "
                    f"using defaults"
                )

        state.welcomed = bool(data.get("welcomed", False))
        state.tour_completed = bool(data.get("tourCompleted", False))
        return state


class ClinicalDataStore:
    """Encrypted, persistent container for all clinical collections.

    Usage:
        adapter = EncryptedStorageAdapter(FileStorageMedium(root), EnvelopeEncryptor(key))
        store = ClinicalDataStore(adapter)

        patient = store.save_patient(PatientProfile(id=store.generate_id(), ...))
        store.save_vital_signs(HeartRateReading(id=store.generate_id(),
                                                patient_id=patient.id, value=72))
        export = store.export_patient(patient.id)
    """

    def __init__(
        self,
        adapter: "EncryptedStorageAdapter",
        storage_key: str = DEFAULT_STORAGE_KEY,
        schema_version: int = 1,
        run_migrations: bool = True,
        legacy_patient_id: str = DEFAULT_LEGACY_PATIENT_ID,
        quota_bytes: int = DEFAULT_QUOTA_BYTES,
        masking_policy: Optional[MaskingPolicy] = None,
    ):
        """Rehydrate the store and run the legacy migration.

        Args:
            adapter: Encrypted adapter over the underlying medium
            storage_key: Medium key holding the encrypted state envelope
            schema_version: Version written into the envelope
            run_migrations: Run the legacy migration importer after rehydration
            legacy_patient_id: Patient that legacy readings are attached to
            quota_bytes: Medium capacity reported by get_storage_stats
            masking_policy: Policy for exports and audit entries (packaged default if None)
        """
        if quota_bytes <= 0:
            raise ValueError(f"quota_bytes must be positive, got {quota_bytes}")

        self._adapter = adapter
        self.storage_key = storage_key
        self.schema_version = schema_version
        self.quota_bytes = quota_bytes
        self.legacy_patient_id = legacy_patient_id
        self._masking_policy = masking_policy

        self._lock = threading.RLock()
        self._batch_depth = 0
        self._dirty = False
        self._audit_trail: List[AuditLogEntry] = []

        self._state = self._rehydrate()

        self.last_migration: Optional[MigrationResult] = None
        if run_migrations:
            importer = LegacyMigrationImporter(
                self, adapter.medium, target_patient_id=legacy_patient_id
            )
            self.last_migration = importer.run()

    # =========================================================================
    # Persistence
    # =========================================================================

    @property
    def medium(self):
        """The underlying storage medium (legacy keys and usage stats)."""
        return self._adapter.medium

    def _rehydrate(self) -> _StoreState:
        envelope = self._adapter.get(self.storage_key)
        if envelope is None:
            logger.debug(f"No persisted state under '{self.storage_key}', starting empty")
            return _StoreState()

        if not isinstance(envelope, dict) or not isinstance(envelope.get("state"), dict):
            logger.warning(
                f"Persisted value under '{self.storage_key}' is not a state envelope, "
                f"starting empty"
            )
            return _StoreState()

        version = envelope.get("version")
        if version != self.schema_version:
            logger.warning(
                f"Persisted state version {version!r} differs from "
                f"schema version {self.schema_version}, loading as-is"
            )

        state = _StoreState.from_dict(envelope["state"], source="persisted")
        logger.info(
            f"Rehydrated clinical store: "
            f"{len(state.collections[Collection.PATIENTS])} patients"
        )
        return state

    def _envelope(self) -> Dict[str, Any]:
        return {"state": self._state.to_dict(), "version": self.schema_version}

    def _commit(self) -> None:
        """Persist the full state, or defer it while a batch is open.

        Raises:
            PersistenceError: If the adapter cannot write. The in-memory state
                keeps the mutation.
        """
        if self._batch_depth > 0:
            self._dirty = True
            return
        self._adapter.set(self.storage_key, self._envelope())

    @contextmanager
    def batch(self) -> Iterator["ClinicalDataStore"]:
        """Group mutations into a single commit at the end of the block.

        Nested batches commit once at the outermost exit. If the block
        raises, mutations already applied are still committed and the
        block's exception propagates; a commit failure at that point is
        logged instead of replacing it.
        """
        with self._lock:
            self._batch_depth += 1
            try:
                yield self
            except BaseException:
                self._batch_depth -= 1
                if self._batch_depth == 0 and self._dirty:
                    self._dirty = False
                    try:
                        self._commit()
                    except PersistenceError as e:
                        logger.error(f"Failed to commit batch after error in block: {e}")
                raise
            else:
                self._batch_depth -= 1
                if self._batch_depth == 0 and self._dirty:
                    self._dirty = False
                    self._commit()

    # =========================================================================
    # Generic collection operations
    # =========================================================================

    def save(
        self,
        collection: Union[Collection, str],
        record: Union[ClinicalModel, Mapping[str, Any]],
        touch: bool = True,
    ) -> ClinicalModel:
        """Insert or replace a record by id and commit.

        Patient timestamps: ``created_at`` is set on insert and kept on
        update; ``updated_at`` is set on every save. With ``touch=False``
        incoming timestamps are kept and only missing ones are filled.

        Returns:
            A copy of the stored record.

        Raises:
            PatientReferenceError: If a non-patient record references an
                unknown patient. Nothing is stored.
            pydantic.ValidationError: If a mapping does not validate.
            PersistenceError: If the commit fails.
        """
        collection = Collection(collection)
        if isinstance(record, ClinicalModel):
            if not isinstance(record, _RECORD_TYPES[collection]):
                raise TypeError(
                    f"Cannot save {type(record).__name__} in {collection.value}"
                )
            record = record.model_copy(deep=True)
        else:
            record = _parse_record(collection, record)

        with self._lock:
            if collection == Collection.PATIENTS:
                self._stamp_patient(record, touch)
            elif record.patient_id not in self._state.collections[Collection.PATIENTS]:
                raise PatientReferenceError(record.patient_id, _RECORD_KINDS[collection])

            self._state.collections[collection][record.id] = record
            self._commit()
            return record.model_copy(deep=True)

    def _stamp_patient(self, patient: PatientProfile, touch: bool) -> None:
        now = utc_now_iso()
        existing = self._state.collections[Collection.PATIENTS].get(patient.id)

        if existing is not None and existing.created_at:
            patient.created_at = existing.created_at
        elif touch or not patient.created_at:
            patient.created_at = now

        if touch or not patient.updated_at:
            patient.updated_at = now

    def get(self, collection: Union[Collection, str], record_id: str) -> Optional[ClinicalModel]:
        """Return a copy of the record with this id, or None."""
        with self._lock:
            record = self._state.collections[Collection(collection)].get(record_id)
            return record.model_copy(deep=True) if record is not None else None

    def list(
        self,
        collection: Union[Collection, str],
        predicate: Optional[Callable[[Any], bool]] = None,
    ) -> List[Any]:
        """Return copies of the collection's records in insertion order."""
        with self._lock:
            records = self._state.collections[Collection(collection)].values()
            return [
                r.model_copy(deep=True)
                for r in records
                if predicate is None or predicate(r)
            ]

    def _remove(self, collection: Collection, record_id: str) -> bool:
        with self._lock:
            if self._state.collections[collection].pop(record_id, None) is None:
                return False
            self._commit()
            return True

    # =========================================================================
    # Patients
    # =========================================================================

    def save_patient(self, patient: PatientProfile) -> PatientProfile:
        return self.save(Collection.PATIENTS, patient)

    def get_patient(self, patient_id: str) -> Optional[PatientProfile]:
        return self.get(Collection.PATIENTS, patient_id)

    def get_all_patients(self) -> List[PatientProfile]:
        return self.list(Collection.PATIENTS)

    def delete_patient(self, patient_id: str) -> bool:
        """Delete a patient and every record referencing it in one state swap.

        Returns:
            True if the patient existed.
        """
        with self._lock:
            collections = self._state.collections
            patient = collections[Collection.PATIENTS].get(patient_id)
            if patient is None:
                return False

            swapped = {
                Collection.PATIENTS: {
                    k: v for k, v in collections[Collection.PATIENTS].items() if k != patient_id
                }
            }
            removed = {}
            for collection in PATIENT_RECORD_COLLECTIONS:
                kept = {
                    k: v for k, v in collections[collection].items()
                    if v.patient_id != patient_id
                }
                removed[collection.value] = len(collections[collection]) - len(kept)
                swapped[collection] = kept

            self._state.collections = swapped

            masked = mask_patient(patient, policy=self._masking_policy)
            self._record_audit(
                create_audit_log_entry(
                    AuditAction.DELETE_PATIENT,
                    masked,
                    {"removedRecords": removed},
                    policy=self._masking_policy,
                )
            )
            self._commit()
            return True

    # =========================================================================
    # Patient records
    # =========================================================================

    def save_assessment(self, assessment: AssessmentResult) -> AssessmentResult:
        return self.save(Collection.ASSESSMENTS, assessment)

    def get_patient_assessments(self, patient_id: str) -> List[AssessmentResult]:
        return self.list(Collection.ASSESSMENTS, lambda r: r.patient_id == patient_id)

    def save_vital_signs(self, vital: VitalSigns) -> VitalSigns:
        return self.save(Collection.VITALS, vital)

    def get_patient_vitals(
        self,
        patient_id: str,
        type: Optional[Union[VitalType, str]] = None,
    ) -> List[VitalSigns]:
        """Return the patient's vitals, optionally only those of one type."""
        vital_type = VitalType(type).value if type else None
        return self.list(
            Collection.VITALS,
            lambda r: r.patient_id == patient_id
            and (vital_type is None or r.type == vital_type),
        )

    def delete_vital_signs(self, vital_id: str) -> bool:
        return self._remove(Collection.VITALS, vital_id)

    def save_goal(self, goal: GoalTracking) -> GoalTracking:
        return self.save(Collection.GOALS, goal)

    def get_patient_goals(self, patient_id: str) -> List[GoalTracking]:
        return self.list(Collection.GOALS, lambda r: r.patient_id == patient_id)

    def save_education_progress(self, progress: EducationProgress) -> EducationProgress:
        return self.save(Collection.EDUCATION, progress)

    def get_patient_education_progress(self, patient_id: str) -> List[EducationProgress]:
        return self.list(Collection.EDUCATION, lambda r: r.patient_id == patient_id)

    # =========================================================================
    # Config and onboarding flags
    # =========================================================================

    @property
    def config(self) -> StorageConfig:
        with self._lock:
            return self._state.config.model_copy()

    def update_config(self, config: Optional[StorageConfig] = None, **changes: Any) -> StorageConfig:
        """Replace the config, or merge field changes into it, and commit.

        Raises:
            pydantic.ValidationError: If the merged config is invalid. Nothing is stored.
        """
        with self._lock:
            if config is None:
                merged = {**self._state.config.model_dump(), **changes}
                config = StorageConfig.model_validate(merged)
            self._state.config = config.model_copy()
            self._commit()
            return config.model_copy()

    def is_first_visit(self) -> bool:
        with self._lock:
            return not self._state.welcomed

    def mark_welcomed(self) -> None:
        with self._lock:
            self._state.welcomed = True
            self._commit()

    def should_show_tour(self) -> bool:
        """The tour is shown after the welcome and until it is completed."""
        with self._lock:
            return self._state.welcomed and not self._state.tour_completed

    def mark_tour_completed(self) -> None:
        with self._lock:
            self._state.tour_completed = True
            self._commit()

    # =========================================================================
    # Export, import and audit
    # =========================================================================

    @property
    def audit_trail(self) -> List[AuditLogEntry]:
        """Audit entries emitted by this store instance (not persisted)."""
        with self._lock:
            return list(self._audit_trail)

    def _record_audit(self, entry: AuditLogEntry) -> None:
        self._audit_trail.append(entry)
        logger.info(
            f"Audit {entry.action}: {entry.subject_display} "
            f"metadata={entry.metadata}"
        )

    def export_patient(self, patient_id: str) -> Optional[PatientExport]:
        """Export one patient with its records and a masked profile.

        Emits one EXPORT_PATIENT_DATA audit entry.

        Returns:
            PatientExport, or None if the patient does not exist (no audit entry).
        """
        with self._lock:
            patient = self.get_patient(patient_id)
            if patient is None:
                return None

            assessments = self.get_patient_assessments(patient_id)
            vitals = self.list(Collection.VITALS, lambda r: r.patient_id == patient_id)
            goals = self.get_patient_goals(patient_id)
            education = self.get_patient_education_progress(patient_id)

            masked = mask_patient(patient, policy=self._masking_policy)
            entry = create_audit_log_entry(
                AuditAction.EXPORT_PATIENT_DATA,
                masked,
                {
                    "dataTypes": [c.value for c in PATIENT_RECORD_COLLECTIONS],
                    "recordCounts": {
                        "assessments": len(assessments),
                        "vitals": len(vitals),
                        "goals": len(goals),
                        "education": len(education),
                    },
                },
                policy=self._masking_policy,
            )
            self._record_audit(entry)

            return PatientExport(
                patient_profile=patient,
                masked_patient_profile=masked,
                assessments=assessments,
                vitals=vitals,
                goals=goals,
                education=education,
                audit_entry=entry,
            )

    def export_all(self) -> StoreExport:
        """Export the whole store with masked patient views.

        Emits one EXPORT_ALL_DATA audit entry listing masked initials.
        """
        with self._lock:
            patients = self.get_all_patients()
            masked = mask_patient_batch(patients, policy=self._masking_policy)

            entry = create_batch_audit_log_entry(
                AuditAction.EXPORT_ALL_DATA,
                masked,
                {"dataTypes": [c.value for c in Collection] + ["config"]},
                policy=self._masking_policy,
            )
            self._record_audit(entry)

            return StoreExport(
                patients=patients,
                masked_patients=masked,
                assessments=self.list(Collection.ASSESSMENTS),
                vitals=self.list(Collection.VITALS),
                goals=self.list(Collection.GOALS),
                education=self.list(Collection.EDUCATION),
                config=self.config,
                audit_entry=entry,
            )

    def import_backup(self, data: Any) -> bool:
        """Replace collections and config from a backup payload and commit once.

        Missing collections become empty and a missing or invalid config
        falls back to defaults. Invalid and orphaned records are skipped.
        Onboarding flags are kept.

        Returns:
            False (and no change) if data is not a dict, True otherwise.
        """
        if not isinstance(data, dict):
            logger.warning(
                f"Ignoring backup import: expected an object, got {type(data).__name__}"
            )
            return False

        imported = _StoreState.from_dict(data, source="backup")

        with self._lock:
            imported.welcomed = self._state.welcomed
            imported.tour_completed = self._state.tour_completed
            self._state = imported

            masked = mask_patient_batch(
                imported.collections[Collection.PATIENTS].values(),
                policy=self._masking_policy,
            )
            self._record_audit(
                create_batch_audit_log_entry(
                    AuditAction.IMPORT_BACKUP,
                    masked,
                    {
                        "recordCounts": {
                            c.value: len(imported.collections[c]) for c in Collection
                        }
                    },
                    policy=self._masking_policy,
                )
            )
            self._commit()
        return True

    def clear_all_data(self) -> None:
        """Reset every collection, the config and the onboarding flags, then commit."""
        with self._lock:
            self._state = _StoreState()
            self._commit()
        logger.info("Cleared all clinical data")

    # =========================================================================
    # Utilities
    # =========================================================================

    def generate_id(self) -> str:
        """Return a new id: base-36 millisecond time plus a random suffix."""
        return _to_base36(time.time_ns() // 1_000_000) + secrets.token_hex(8)

    def get_storage_stats(self) -> Dict[str, float]:
        """Report bytes used by clinical keys on the medium against the quota."""
        medium = self._adapter.medium
        used = 0
        for key in medium.keys():
            if key.startswith(STORAGE_KEY_PREFIXES):
                value = medium.get_item(key)
                if value:
                    used += len(value.encode("utf-8"))
        return {
            "used": used,
            "total": self.quota_bytes,
            "percentage": used / self.quota_bytes * 100,
        }

    def describe_patient(self, patient_id: str) -> Optional[str]:
        """Masked display label for a patient, safe for logs and UI."""
        patient = self.get_patient(patient_id)
        if patient is None:
            return None
        return create_safe_display_name(mask_patient(patient, policy=self._masking_policy))
