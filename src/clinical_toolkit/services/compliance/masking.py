"""PII masking for patient data leaving the clinical store.

Produces de-identified views of patient profiles and audit log entries that
reference patients only through masked labels. Masking follows the HIPAA
Safe Harbor approach used by the packaged masking policy:

- names are reduced to initials ("J.D.")
- date of birth becomes an age bucket, with every age above 89 aggregated
- medical record numbers keep only their last digits ("****2345")
- a salted SHA-256 over the identity fields gives a stable pseudonymous id

All functions here are pure apart from reading the cached masking policy.
"""

import hashlib
import logging
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Union

from clinical_toolkit.schemas.audit_log import AuditAction, AuditLogEntry, MaskedPatient
from clinical_toolkit.schemas.clinical_records import PatientProfile
from clinical_toolkit.services.compliance.masking_policy import (
    MaskingPolicy,
    MaskingPolicyLoader,
)

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "Error occurred (PII redacted from message)"


def _hash_identity(patient: PatientProfile, pepper: str) -> str:
    identity = "|".join(
        [
            patient.first_name,
            patient.last_name,
            patient.date_of_birth,
            patient.medical_record_number or "",
        ]
    )
    return hashlib.sha256((identity + pepper).encode("utf-8")).hexdigest()


def _initials(first_name: str, last_name: str) -> str:
    first = (first_name.strip() or "?")[0].upper()
    last = (last_name.strip() or "?")[0].upper()
    return f"{first}.{last}."


def _parse_date_of_birth(value: str) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def calculate_age(date_of_birth: str, as_of: Optional[date] = None) -> int:
    """Return age in whole years on ``as_of`` (today by default).

    Returns -1 for a missing or unparsable date of birth. Future dates of
    birth are clamped to age 0.
    """
    born = _parse_date_of_birth(date_of_birth)
    if born is None:
        return -1

    today = as_of or date.today()
    age = today.year - born.year
    if (today.month, today.day) < (born.month, born.day):
        age -= 1
    return max(0, age)


def mask_mrn(mrn: Optional[str], policy: Optional[MaskingPolicy] = None) -> Optional[str]:
    """Reduce a medical record number to the mask plus its last digits.

    Non-digit characters are dropped first. An MRN with no more digits than
    the visible count is fully masked.
    """
    if not mrn:
        return None
    policy = policy or MaskingPolicyLoader.load()

    digits = "".join(ch for ch in mrn if ch.isdigit())
    if len(digits) <= policy.mrn_visible_digits:
        return policy.mrn_mask
    return policy.mrn_mask + digits[-policy.mrn_visible_digits:]


def mask_patient(
    patient: PatientProfile,
    policy: Optional[MaskingPolicy] = None,
    as_of: Optional[date] = None,
) -> MaskedPatient:
    """Create a de-identified view of a patient profile.

    Args:
        patient: Profile containing PII.
        policy: Masking policy. Loaded from the packaged default if not provided.
        as_of: Reference date for the age bucket. Defaults to today.

    Returns:
        MaskedPatient carrying no full name, date of birth or MRN.

    Example:
        masked = mask_patient(patient)
        masked.display_initials  # "J.D."
        masked.age_group         # "25-34"
    """
    policy = policy or MaskingPolicyLoader.load()

    return MaskedPatient(
        hashed_id=_hash_identity(patient, policy.pepper),
        display_initials=_initials(patient.first_name, patient.last_name),
        age_group=policy.age_group_for(calculate_age(patient.date_of_birth, as_of)),
        original_id=patient.id,
        masked_mrn=mask_mrn(patient.medical_record_number, policy),
        condition_count=len(patient.conditions),
        medication_count=len(patient.current_medications),
        allergy_count=len(patient.allergies),
    )


def mask_patient_batch(
    patients: Iterable[PatientProfile],
    policy: Optional[MaskingPolicy] = None,
    as_of: Optional[date] = None,
) -> List[MaskedPatient]:
    """Mask each patient, preserving order."""
    policy = policy or MaskingPolicyLoader.load()
    return [mask_patient(p, policy=policy, as_of=as_of) for p in patients]


def create_safe_display_name(masked: MaskedPatient) -> str:
    """Display label such as "J.D. (25-34)"."""
    return f"{masked.display_initials} ({masked.age_group})"


def create_safe_display_name_with_mrn(masked: MaskedPatient) -> str:
    """Display label with the masked MRN appended when present."""
    base = create_safe_display_name(masked)
    if masked.masked_mrn:
        return f"{base} [{masked.masked_mrn}]"
    return base


def contains_potential_pii(text: str, policy: Optional[MaskingPolicy] = None) -> bool:
    """Return True if text matches any of the policy's PII patterns."""
    if not text:
        return False
    policy = policy or MaskingPolicyLoader.load()
    return any(p.matches(text) for p in policy.pii_patterns)


def sanitize_error_message(
    error: Union[BaseException, str],
    masked: Optional[MaskedPatient] = None,
    policy: Optional[MaskingPolicy] = None,
) -> str:
    """Return an error message that is safe to log.

    Messages without potential PII pass through unchanged. Otherwise the
    message is replaced by a label built from the masked patient, or by a
    generic message when no masked patient is available.
    """
    message = error if isinstance(error, str) else str(error)

    if not contains_potential_pii(message, policy):
        return message

    if masked is not None:
        return f"Error for patient {masked.display_initials} (ID: {masked.hashed_id[:8]}...)"
    return GENERIC_ERROR_MESSAGE


def _reject_raw_profiles(value: Any) -> None:
    if isinstance(value, PatientProfile):
        raise TypeError("Audit entries must not contain an unmasked PatientProfile")
    if isinstance(value, dict):
        for item in value.values():
            _reject_raw_profiles(item)
    elif isinstance(value, (list, tuple, set)):
        for item in value:
            _reject_raw_profiles(item)


def _redact(value: Any, policy: MaskingPolicy) -> Any:
    if isinstance(value, str):
        if contains_potential_pii(value, policy):
            return policy.redaction_placeholder
        return value
    if isinstance(value, dict):
        return {k: _redact(v, policy) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_redact(v, policy) for v in value]
    return value


def _sanitize_metadata(
    metadata: Optional[Dict[str, Any]], policy: MaskingPolicy
) -> Dict[str, Any]:
    if not metadata:
        return {}
    _reject_raw_profiles(metadata)
    return _redact(metadata, policy)


def _action_name(action: Union[AuditAction, str]) -> str:
    return action.value if isinstance(action, AuditAction) else str(action)


def create_audit_log_entry(
    action: Union[AuditAction, str],
    masked_subject: MaskedPatient,
    metadata: Optional[Dict[str, Any]] = None,
    policy: Optional[MaskingPolicy] = None,
) -> AuditLogEntry:
    """Build a timestamped audit entry for a single masked patient.

    Raises:
        TypeError: If the subject or any metadata value is a raw PatientProfile.
    """
    if not isinstance(masked_subject, MaskedPatient):
        raise TypeError(
            f"Audit subject must be a MaskedPatient, got {type(masked_subject).__name__}"
        )
    policy = policy or MaskingPolicyLoader.load()

    return AuditLogEntry(
        action=_action_name(action),
        subject_display=create_safe_display_name(masked_subject),
        subject_hashed_id=masked_subject.hashed_id,
        metadata=_sanitize_metadata(metadata, policy),
    )


def create_batch_audit_log_entry(
    action: Union[AuditAction, str],
    masked_subjects: Iterable[MaskedPatient],
    metadata: Optional[Dict[str, Any]] = None,
    policy: Optional[MaskingPolicy] = None,
) -> AuditLogEntry:
    """Build one audit entry covering several masked patients.

    The subject label lists the patients' initials; ``patientCount`` is
    added to the metadata.

    Raises:
        TypeError: If any subject or metadata value is a raw PatientProfile.
    """
    subjects = list(masked_subjects)
    for subject in subjects:
        if not isinstance(subject, MaskedPatient):
            raise TypeError(
                f"Audit subjects must be MaskedPatient, got {type(subject).__name__}"
            )
    policy = policy or MaskingPolicyLoader.load()

    sanitized = _sanitize_metadata(metadata, policy)
    sanitized["patientCount"] = len(subjects)

    return AuditLogEntry(
        action=_action_name(action),
        subject_display=", ".join(s.display_initials for s in subjects) or "(none)",
        metadata=sanitized,
    )
