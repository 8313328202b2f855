"""Schemas for masked patient views and audit log entries.

These structures are produced by the masking module whenever patient data
leaves the store (export, display, logging). They never carry a full name,
date of birth or medical record number.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import Field

from clinical_toolkit.schemas.clinical_records import ClinicalModel, utc_now_iso


class AuditAction(str, Enum):
    """Actions recorded in the audit trail."""

    EXPORT_PATIENT_DATA = "EXPORT_PATIENT_DATA"
    EXPORT_ALL_DATA = "EXPORT_ALL_DATA"
    IMPORT_BACKUP = "IMPORT_BACKUP"
    DELETE_PATIENT = "DELETE_PATIENT"


class MaskedPatient(ClinicalModel):
    """De-identified view of a patient profile.

    Attributes:
        hashed_id: Salted SHA-256 over the identifying fields
        display_initials: Initials, e.g. "J.D." for Jane Doe
        age_group: Age bucket instead of date of birth (e.g. "25-34")
        original_id: Store id, used for internal lookups only
        masked_mrn: Medical record number reduced to its last digits
        condition_count: Number of conditions on the profile
        medication_count: Number of medications on the profile
        allergy_count: Number of allergies on the profile
    """

    hashed_id: str
    display_initials: str
    age_group: str
    original_id: str
    masked_mrn: Optional[str] = None
    condition_count: int = 0
    medication_count: int = 0
    allergy_count: int = 0


class AuditLogEntry(ClinicalModel):
    """A structured, timestamped audit entry with a masked subject."""

    action: str
    timestamp: str = Field(default_factory=utc_now_iso)
    subject_display: str
    subject_hashed_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
