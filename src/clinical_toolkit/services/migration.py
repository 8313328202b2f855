"""Legacy data migration into the encrypted clinical store.

Two unencrypted legacy formats may be present on the storage medium:

1. StorageManager collections: ``clinical-toolkit-patients``,
   ``clinical-toolkit-assessments``, ``clinical-toolkit-vitals``,
   ``clinical-toolkit-goals``, ``clinical-toolkit-education`` (JSON arrays in
   the current record shape, optionally base64-encoded) and
   ``clinical-toolkit-config``.
2. Blood pressure log: ``bp-readings``, a JSON array of
   ``{id, date, time, systolic, diastolic, pulse?, notes?}``.

Each source is migrated once. Records are saved in one store batch; only
after that commit succeeds are the legacy keys removed and the source's
marker written. Migrated ids are deterministic, so a run interrupted between
commit and marker upserts the same records on retry instead of duplicating.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from pydantic import ValidationError

from clinical_toolkit.schemas.clinical_records import (
    BloodPressureReading,
    BloodPressureValue,
    HeartRateReading,
    PatientProfile,
    StorageConfig,
    format_utc_iso,
    utc_now_iso,
)
from clinical_toolkit.services.compliance.config import DEFAULT_LEGACY_PATIENT_ID
from clinical_toolkit.services.errors import PatientReferenceError, PersistenceError

if TYPE_CHECKING:
    from clinical_toolkit.services.clinical_store import ClinicalDataStore
    from clinical_toolkit.storage.protocol import StorageMedium

logger = logging.getLogger(__name__)

# StorageManager (base64 JSON) collections, patients first
LEGACY_COLLECTION_KEYS = {
    "patients": "clinical-toolkit-patients",
    "assessments": "clinical-toolkit-assessments",
    "vitals": "clinical-toolkit-vitals",
    "goals": "clinical-toolkit-goals",
    "education": "clinical-toolkit-education",
}
LEGACY_CONFIG_KEY = "clinical-toolkit-config"
# Removed with the collections, never migrated
LEGACY_OBSOLETE_KEYS = ("clinical-toolkit-backups", "clinical-toolkit-last-backup")
STORAGE_MANAGER_MARKER = "clinical-toolkit-migrated"
STORAGE_MANAGER_DATE_KEY = "clinical-toolkit-migration-date"

BP_READINGS_KEY = "bp-readings"
BP_MARKER = "bp-readings-migrated"
BP_DATE_KEY = "bp-readings-migration-date"
BP_ID_PREFIX = "legacy-bp-"
PULSE_ID_SUFFIX = "-pulse"


@dataclass
class MigrationResult:
    """Outcome of a migration run.

    ``migrated_count`` is the number of records written to the store.
    ``errors`` describe skipped records and failures without patient data.
    """

    success: bool = True
    migrated_count: int = 0
    errors: List[str] = field(default_factory=list)

    def merge(self, other: "MigrationResult") -> "MigrationResult":
        return MigrationResult(
            success=self.success and other.success,
            migrated_count=self.migrated_count + other.migrated_count,
            errors=self.errors + other.errors,
        )


@dataclass
class MigrationStatus:
    """Migration state of one legacy source on the medium."""

    migrated: bool
    migration_date: Optional[str]
    has_legacy_data: bool


class _MalformedPayload(ValueError):
    pass


def _decode_legacy_payload(raw: str) -> Any:
    """Parse a legacy value that is either base64-encoded JSON or plain JSON."""
    try:
        return json.loads(base64.b64decode(raw, validate=True).decode("utf-8"))
    except (binascii.Error, ValueError):
        pass
    try:
        return json.loads(raw)
    except ValueError as e:
        raise _MalformedPayload(f"not valid JSON or base64 JSON: {e.msg}") from e


def _legacy_reading_id(reading: Dict[str, Any]) -> str:
    legacy_id = reading.get("id")
    if legacy_id not in (None, ""):
        return f"{BP_ID_PREFIX}{legacy_id}"
    digest = hashlib.sha256(
        json.dumps(reading, sort_keys=True, default=str).encode("utf-8")
    ).hexdigest()
    return f"{BP_ID_PREFIX}{digest[:16]}"


def _legacy_timestamp(reading: Dict[str, Any]) -> str:
    """Build an ISO timestamp from the reading's date and optional time.

    The tracker recorded date and time as local wall-clock values, so a
    reading with a time is converted from the host's local zone. A bare
    date is midnight UTC.

    Raises:
        ValueError: If the date or time cannot be parsed.
    """
    reading_date = reading.get("date")
    reading_time = reading.get("time")
    if not reading_date:
        return utc_now_iso()
    if reading_time:
        moment = datetime.fromisoformat(f"{reading_date}T{reading_time}")
        if moment.tzinfo is None:
            moment = moment.astimezone()
    else:
        moment = datetime.fromisoformat(str(reading_date))
    return format_utc_iso(moment)


class LegacyMigrationImporter:
    """Migrate legacy unencrypted records from the medium into the store.

    Usage:
        importer = LegacyMigrationImporter(store, adapter.medium)
        result = importer.run()
        if not result.success:
            logger.error("; ".join(result.errors))
    """

    def __init__(
        self,
        store: "ClinicalDataStore",
        medium: "StorageMedium",
        target_patient_id: str = DEFAULT_LEGACY_PATIENT_ID,
    ):
        """Initialize the importer.

        Args:
            store: Store receiving the migrated records
            medium: Medium holding the legacy keys (the store's own medium)
            target_patient_id: Patient that legacy BP readings are attached to
        """
        self.store = store
        self.medium = medium
        self.target_patient_id = target_patient_id

    def run(self) -> MigrationResult:
        """Run both migrations, StorageManager collections first."""
        result = self.migrate_storage_manager().merge(self.migrate_bp_readings())
        if result.migrated_count or result.errors:
            logger.info(
                f"Legacy migration finished: {result.migrated_count} records, "
                f"{len(result.errors)} errors"
            )
        return result

    # =========================================================================
    # StorageManager collections
    # =========================================================================

    def migrate_storage_manager(self) -> MigrationResult:
        """Migrate the StorageManager collections and config."""
        if self.medium.get_item(STORAGE_MANAGER_MARKER):
            logger.debug("StorageManager data already migrated")
            return MigrationResult()

        payloads: Dict[str, Any] = {}
        for name, key in [*LEGACY_COLLECTION_KEYS.items(), ("config", LEGACY_CONFIG_KEY)]:
            raw = self.medium.get_item(key)
            if not raw:
                continue
            try:
                payload = _decode_legacy_payload(raw)
            except _MalformedPayload as e:
                return self._abort(f"Legacy '{key}' is malformed: {e}")
            if name == "config":
                if not isinstance(payload, dict):
                    return self._abort(f"Legacy '{key}' is not an object")
            elif not isinstance(payload, list):
                return self._abort(f"Legacy '{key}' is not an array")
            payloads[name] = payload

        result = MigrationResult()
        try:
            with self.store.batch():
                for name in LEGACY_COLLECTION_KEYS:
                    for index, item in enumerate(payloads.get(name, [])):
                        if self._save_legacy_record(name, index, item, result):
                            result.migrated_count += 1
                if "config" in payloads:
                    self._save_legacy_config(payloads["config"], result)
        except PersistenceError as e:
            return self._abort(f"Failed to commit migrated StorageManager data: {e}")

        keys = [*LEGACY_COLLECTION_KEYS.values(), LEGACY_CONFIG_KEY, *LEGACY_OBSOLETE_KEYS]
        return self._finish(result, keys, STORAGE_MANAGER_MARKER, STORAGE_MANAGER_DATE_KEY)

    def _save_legacy_record(
        self, name: str, index: int, item: Any, result: MigrationResult
    ) -> bool:
        if not isinstance(item, dict):
            result.errors.append(f"Skipping legacy {name}[{index}]: not an object")
            return False
        try:
            self.store.save(name, item, touch=False)
        except ValidationError as e:
            result.errors.append(
                f"Skipping invalid legacy {name}[{index}] ({e.error_count()} validation errors)"
            )
            return False
        except PatientReferenceError:
            result.errors.append(f"Skipping legacy {name}[{index}]: unknown patient reference")
            return False
        return True

    def _save_legacy_config(self, payload: Dict[str, Any], result: MigrationResult) -> None:
        try:
            config = StorageConfig.model_validate(payload)
        except ValidationError as e:
            result.errors.append(
                f"Skipping invalid legacy config ({e.error_count()} validation errors)"
            )
            return
        self.store.update_config(config)

    # =========================================================================
    # Blood pressure log
    # =========================================================================

    def migrate_bp_readings(self) -> MigrationResult:
        """Migrate legacy blood pressure readings into VitalSigns records.

        Each reading becomes a blood_pressure record; a reading with a pulse
        also becomes a heart_rate record.
        """
        if self.medium.get_item(BP_MARKER):
            logger.debug("BP readings already migrated")
            return MigrationResult()

        raw = self.medium.get_item(BP_READINGS_KEY)
        if not raw:
            return self._finish(MigrationResult(), [], BP_MARKER, BP_DATE_KEY)

        try:
            readings = json.loads(raw)
        except ValueError as e:
            return self._abort(f"Failed to parse legacy BP data: {e}")
        if not isinstance(readings, list):
            return self._abort("Legacy BP data is not an array")

        result = MigrationResult()
        try:
            with self.store.batch():
                for index, reading in enumerate(readings):
                    result.migrated_count += self._migrate_reading(index, reading, result)
        except PersistenceError as e:
            return self._abort(f"Failed to commit migrated BP readings: {e}")

        logger.info(f"Migrated {len(readings)} legacy BP readings")
        return self._finish(result, [BP_READINGS_KEY], BP_MARKER, BP_DATE_KEY)

    def _migrate_reading(self, index: int, reading: Any, result: MigrationResult) -> int:
        """Save one legacy reading. Returns the number of records written."""
        if not isinstance(reading, dict):
            result.errors.append(f"Skipping BP reading [{index}]: not an object")
            return 0

        label = reading.get("id", f"[{index}]")
        if not reading.get("systolic") or not reading.get("diastolic"):
            result.errors.append(f"Skipping invalid reading (missing BP values): {label}")
            return 0

        try:
            timestamp = _legacy_timestamp(reading)
            reading_id = _legacy_reading_id(reading)
            notes = reading.get("notes") or None
            records = [
                BloodPressureReading(
                    id=reading_id,
                    patient_id=self.target_patient_id,
                    value=BloodPressureValue(
                        systolic=float(reading["systolic"]),
                        diastolic=float(reading["diastolic"]),
                    ),
                    timestamp=timestamp,
                    notes=notes,
                    location="home",
                )
            ]
            if reading.get("pulse"):
                records.append(
                    HeartRateReading(
                        id=reading_id + PULSE_ID_SUFFIX,
                        patient_id=self.target_patient_id,
                        value=float(reading["pulse"]),
                        timestamp=timestamp,
                        notes=f"From BP reading: {notes}" if notes else None,
                        location="home",
                    )
                )
        except (TypeError, ValueError) as e:
            # ValidationError is a ValueError
            result.errors.append(f"Failed to migrate reading {label}: {type(e).__name__}")
            return 0

        self._ensure_target_patient()
        for record in records:
            self.store.save_vital_signs(record)
        return len(records)

    def _ensure_target_patient(self) -> None:
        if self.store.get_patient(self.target_patient_id) is None:
            logger.info("Creating placeholder patient for legacy BP readings")
            self.store.save_patient(
                PatientProfile(
                    id=self.target_patient_id,
                    first_name="Default",
                    last_name="Patient",
                    date_of_birth="",
                )
            )

    # =========================================================================
    # Markers and status
    # =========================================================================

    def _abort(self, message: str) -> MigrationResult:
        logger.error(message)
        return MigrationResult(success=False, migrated_count=0, errors=[message])

    def _finish(
        self,
        result: MigrationResult,
        legacy_keys: List[str],
        marker_key: str,
        date_key: str,
    ) -> MigrationResult:
        """Remove migrated legacy keys and write the marker (after a successful commit)."""
        try:
            for key in legacy_keys:
                self.medium.remove_item(key)
            self.medium.set_item(marker_key, "true")
            self.medium.set_item(date_key, utc_now_iso())
        except OSError as e:
            message = f"Migrated records were committed but '{marker_key}' was not written: {e}"
            logger.error(message)
            result.success = False
            result.errors.append(message)
            return result

        if result.errors:
            logger.warning(f"Migration to '{marker_key}' completed with {len(result.errors)} errors")
        return result

    def status(self) -> Dict[str, MigrationStatus]:
        """Report the migration state of each legacy source."""
        return {
            "storage_manager": MigrationStatus(
                migrated=self.medium.get_item(STORAGE_MANAGER_MARKER) == "true",
                migration_date=self.medium.get_item(STORAGE_MANAGER_DATE_KEY),
                has_legacy_data=any(
                    self.medium.get_item(key) for key in LEGACY_COLLECTION_KEYS.values()
                ),
            ),
            "bp_readings": MigrationStatus(
                migrated=self.medium.get_item(BP_MARKER) == "true",
                migration_date=self.medium.get_item(BP_DATE_KEY),
                has_legacy_data=bool(self.medium.get_item(BP_READINGS_KEY)),
            ),
        }
