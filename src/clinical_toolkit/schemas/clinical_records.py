"""Clinical record schemas.

This module defines the structured records owned by the clinical data store:
patient profiles, assessments, vital signs, goals, education progress and the
storage configuration. All models serialize with camelCase aliases so the
persisted JSON keeps the same wire shape as backups and legacy records.

VitalSigns is a discriminated union keyed by ``type``: blood pressure readings
carry a systolic/diastolic pair, every other vital type carries one number.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


def format_utc_iso(moment: datetime) -> str:
    """Format a datetime as a fixed-width ISO-8601 UTC string with a Z suffix.

    Naive datetimes are taken to be UTC. The fixed width keeps timestamps
    ordered when compared as strings.
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string with a Z suffix."""
    return format_utc_iso(datetime.now(timezone.utc))


class ClinicalModel(BaseModel):
    """Base model for persisted clinical records."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-ready dictionary using camelCase keys."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# =============================================================================
# Patient profile
# =============================================================================


class Medication(ClinicalModel):
    """A medication on a patient's current list."""

    id: str
    name: str
    generic_name: str = ""
    dosage: str = ""
    frequency: str = ""
    prescribed_date: str = ""
    prescribed_by: Optional[str] = None
    active: bool = True
    notes: Optional[str] = None


class EmergencyContact(ClinicalModel):
    """Emergency contact details for a patient."""

    name: str
    relationship: str
    phone: str
    email: Optional[str] = None


class PatientPreferences(ClinicalModel):
    """Per-patient display and reminder preferences."""

    reminder_time: str = "09:00"
    language: Literal["en", "es", "fr"] = "en"
    units: Literal["metric", "imperial"] = "metric"
    data_sharing: bool = False
    export_format: Literal["pdf", "csv", "json"] = "json"


class PatientProfile(ClinicalModel):
    """A patient profile.

    ``created_at`` is set by the store on first save and never changes;
    ``updated_at`` is refreshed on every save.
    """

    id: str
    first_name: str
    last_name: str
    date_of_birth: str
    medical_record_number: Optional[str] = None
    conditions: List[str] = Field(default_factory=list)
    allergies: List[str] = Field(default_factory=list)
    current_medications: List[Medication] = Field(default_factory=list)
    emergency_contact: Optional[EmergencyContact] = None
    preferences: PatientPreferences = Field(default_factory=PatientPreferences)
    created_at: str = ""
    updated_at: str = ""


# =============================================================================
# Assessments
# =============================================================================

ResponseValue = Union[bool, int, float, str, List[str], List[float]]


class AssessmentResult(ClinicalModel):
    """Result of a clinical questionnaire or calculator run."""

    id: str
    patient_id: str
    condition_id: str = ""
    tool_id: str
    tool_name: str
    responses: Dict[str, ResponseValue] = Field(default_factory=dict)
    score: Optional[float] = None
    severity: Optional[str] = None
    recommendations: List[str] = Field(default_factory=list)
    timestamp: str = Field(default_factory=utc_now_iso)
    provider_id: Optional[str] = None


# =============================================================================
# Vital signs (tagged union on ``type``)
# =============================================================================


class VitalType(str, Enum):
    """Supported vital sign types."""

    BLOOD_PRESSURE = "blood_pressure"
    BLOOD_GLUCOSE = "blood_glucose"
    WEIGHT = "weight"
    TEMPERATURE = "temperature"
    HEART_RATE = "heart_rate"


class BloodPressureValue(ClinicalModel):
    """Systolic/diastolic pair in mmHg."""

    systolic: float
    diastolic: float


class _VitalSignsBase(ClinicalModel):
    id: str
    patient_id: str
    unit: str
    timestamp: str = Field(default_factory=utc_now_iso)
    notes: Optional[str] = None
    location: Optional[str] = None


class BloodPressureReading(_VitalSignsBase):
    type: Literal["blood_pressure"] = "blood_pressure"
    value: BloodPressureValue
    unit: str = "mmHg"


class BloodGlucoseReading(_VitalSignsBase):
    type: Literal["blood_glucose"] = "blood_glucose"
    value: float
    unit: str = "mg/dL"


class WeightReading(_VitalSignsBase):
    type: Literal["weight"] = "weight"
    value: float
    unit: str = "kg"


class TemperatureReading(_VitalSignsBase):
    type: Literal["temperature"] = "temperature"
    value: float
    unit: str = "C"


class HeartRateReading(_VitalSignsBase):
    type: Literal["heart_rate"] = "heart_rate"
    value: float
    unit: str = "bpm"


VitalSigns = Annotated[
    Union[
        BloodPressureReading,
        BloodGlucoseReading,
        WeightReading,
        TemperatureReading,
        HeartRateReading,
    ],
    Field(discriminator="type"),
]

VITAL_SIGNS_ADAPTER: TypeAdapter = TypeAdapter(VitalSigns)


def parse_vital_signs(data: Dict[str, Any]) -> VitalSigns:
    """Validate a raw dict into the VitalSigns variant selected by its type.

    Raises:
        pydantic.ValidationError: If the type is unknown or the value shape
            does not match the type.
    """
    return VITAL_SIGNS_ADAPTER.validate_python(data)


# =============================================================================
# Goals and education
# =============================================================================


class GoalCompletion(ClinicalModel):
    """A single check-in against a goal."""

    id: str
    date: str
    completed: bool
    value: Optional[Union[float, str]] = None
    notes: Optional[str] = None


class GoalTracking(ClinicalModel):
    """A self-management goal with its completion history."""

    id: str
    patient_id: str
    goal_id: str = ""
    goal_title: str = ""
    category: Literal["medication", "exercise", "diet", "monitoring", "lifestyle"]
    target: str
    frequency: Literal["daily", "weekly", "monthly"]
    completions: List[GoalCompletion] = Field(default_factory=list)
    status: Literal["active", "completed", "paused"] = "active"
    start_date: str
    end_date: Optional[str] = None


class EducationProgress(ClinicalModel):
    """Progress through a patient education module."""

    id: str
    patient_id: str
    condition_id: str = ""
    module_id: str
    module_title: str = ""
    completed_at: Optional[str] = None
    progress: int = Field(0, ge=0, le=100)
    quiz_answers: Optional[Dict[str, ResponseValue]] = None
    time_spent: float = 0


# =============================================================================
# Storage configuration
# =============================================================================


class StorageConfig(ClinicalModel):
    """User-facing storage preferences persisted with the clinical state.

    ``retention_period`` is recorded but not enforced.
    """

    encryption_enabled: bool = True
    auto_backup: bool = True
    backup_frequency: Literal["daily", "weekly", "monthly"] = "weekly"
    retention_period: int = Field(365, ge=0)
    max_file_size: float = Field(10, gt=0)
