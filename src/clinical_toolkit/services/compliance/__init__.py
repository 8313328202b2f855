"""Compliance subsystem: encryption, PII masking and storage settings.

Usage:
    from clinical_toolkit.services.compliance import (
        ClinicalStorageSettings,
        EnvelopeEncryptor,
        generate_key,
        mask_patient,
        create_audit_log_entry,
    )

    encryptor = EnvelopeEncryptor(Path("keys/clinical.key"))
    masked = mask_patient(patient)
    entry = create_audit_log_entry("EXPORT_PATIENT_DATA", masked, {"dataTypes": ["vitals"]})
"""

from clinical_toolkit.services.compliance.config import (
    ClinicalStorageSettings,
    MediumType,
)
from clinical_toolkit.services.compliance.crypto import (
    CryptoError,
    DecryptionError,
    EncryptionError,
    EnvelopeEncryptor,
    KeyLoadError,
    generate_key,
    generate_key_file,
)
from clinical_toolkit.services.compliance.masking import (
    contains_potential_pii,
    create_audit_log_entry,
    create_batch_audit_log_entry,
    create_safe_display_name,
    create_safe_display_name_with_mrn,
    mask_patient,
    mask_patient_batch,
    sanitize_error_message,
)
from clinical_toolkit.services.compliance.masking_policy import (
    MaskingPolicy,
    MaskingPolicyLoader,
)

__all__ = [
    # Config
    "ClinicalStorageSettings",
    "MediumType",
    # Crypto
    "EnvelopeEncryptor",
    "CryptoError",
    "KeyLoadError",
    "EncryptionError",
    "DecryptionError",
    "generate_key",
    "generate_key_file",
    # Masking
    "MaskingPolicy",
    "MaskingPolicyLoader",
    "mask_patient",
    "mask_patient_batch",
    "create_audit_log_entry",
    "create_batch_audit_log_entry",
    "create_safe_display_name",
    "create_safe_display_name_with_mrn",
    "contains_potential_pii",
    "sanitize_error_message",
]
