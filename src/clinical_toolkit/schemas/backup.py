"""Export and backup payload schemas.

Two payload shapes leave the store:

- PatientExport: one patient's full profile, its masked view and every record
  referencing the patient.
- StoreExport: the whole store (all collections, masked patient views and the
  storage config). This is also the shape accepted by ``import_backup``.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import Field

from clinical_toolkit.schemas.audit_log import AuditLogEntry, MaskedPatient
from clinical_toolkit.schemas.clinical_records import (
    AssessmentResult,
    ClinicalModel,
    EducationProgress,
    GoalTracking,
    PatientProfile,
    StorageConfig,
    VitalSigns,
    utc_now_iso,
)

BACKUP_FORMAT_VERSION = "1.0.0"


class PatientExport(ClinicalModel):
    """Single-patient export payload."""

    patient_profile: PatientProfile
    masked_patient_profile: MaskedPatient
    assessments: List[AssessmentResult] = Field(default_factory=list)
    vitals: List[VitalSigns] = Field(default_factory=list)
    goals: List[GoalTracking] = Field(default_factory=list)
    education: List[EducationProgress] = Field(default_factory=list)
    exported_at: str = Field(default_factory=utc_now_iso)
    audit_entry: Optional[AuditLogEntry] = None

    def masked_view(self) -> Dict[str, Any]:
        """Return the de-identified part of the export, safe for display and logs."""
        return {
            "maskedPatientProfile": self.masked_patient_profile.to_dict(),
            "recordCounts": {
                "assessments": len(self.assessments),
                "vitals": len(self.vitals),
                "goals": len(self.goals),
                "education": len(self.education),
            },
            "exportedAt": self.exported_at,
        }


class StoreExport(ClinicalModel):
    """Whole-store export and backup payload."""

    version: str = BACKUP_FORMAT_VERSION
    patients: List[PatientProfile] = Field(default_factory=list)
    masked_patients: List[MaskedPatient] = Field(default_factory=list)
    assessments: List[AssessmentResult] = Field(default_factory=list)
    vitals: List[VitalSigns] = Field(default_factory=list)
    goals: List[GoalTracking] = Field(default_factory=list)
    education: List[EducationProgress] = Field(default_factory=list)
    config: StorageConfig = Field(default_factory=StorageConfig)
    exported_at: str = Field(default_factory=utc_now_iso)
    audit_entry: Optional[AuditLogEntry] = None

    def masked_view(self) -> Dict[str, Any]:
        """Return the de-identified part of the export, safe for display and logs."""
        return {
            "version": self.version,
            "maskedPatients": [p.to_dict() for p in self.masked_patients],
            "recordCounts": {
                "patients": len(self.patients),
                "assessments": len(self.assessments),
                "vitals": len(self.vitals),
                "goals": len(self.goals),
                "education": len(self.education),
            },
            "exportedAt": self.exported_at,
        }
