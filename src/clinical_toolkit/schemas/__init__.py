"""Schemas for clinical records, audit entries and export payloads."""

from clinical_toolkit.schemas.audit_log import AuditAction, AuditLogEntry, MaskedPatient
from clinical_toolkit.schemas.backup import (
    BACKUP_FORMAT_VERSION,
    PatientExport,
    StoreExport,
)
from clinical_toolkit.schemas.clinical_records import (
    AssessmentResult,
    BloodGlucoseReading,
    BloodPressureReading,
    BloodPressureValue,
    EducationProgress,
    EmergencyContact,
    GoalCompletion,
    GoalTracking,
    HeartRateReading,
    Medication,
    PatientPreferences,
    PatientProfile,
    StorageConfig,
    TemperatureReading,
    VitalSigns,
    VitalType,
    WeightReading,
    format_utc_iso,
    parse_vital_signs,
    utc_now_iso,
)

__all__ = [
    # Clinical records
    "PatientProfile",
    "Medication",
    "EmergencyContact",
    "PatientPreferences",
    "AssessmentResult",
    "VitalSigns",
    "VitalType",
    "BloodPressureValue",
    "BloodPressureReading",
    "BloodGlucoseReading",
    "WeightReading",
    "TemperatureReading",
    "HeartRateReading",
    "parse_vital_signs",
    "GoalTracking",
    "GoalCompletion",
    "EducationProgress",
    "StorageConfig",
    "format_utc_iso",
    "utc_now_iso",
    # Audit
    "AuditAction",
    "AuditLogEntry",
    "MaskedPatient",
    # Export
    "BACKUP_FORMAT_VERSION",
    "PatientExport",
    "StoreExport",
]
