"""Exceptions raised by the clinical store and its storage adapter."""


class ClinicalStoreError(Exception):
    """Base exception for clinical store errors."""

    pass


class PatientReferenceError(ClinicalStoreError, LookupError):
    """A record references a patient that does not exist in the store."""

    def __init__(self, patient_id: str, record_kind: str = "record"):
        self.patient_id = patient_id
        self.record_kind = record_kind
        super().__init__(
            f"Cannot save {record_kind}: unknown patient id '{patient_id}'"
        )


class PersistenceError(ClinicalStoreError, IOError):
    """Writing to the underlying storage medium failed.

    The in-memory state of the store still reflects the attempted mutation.
    """

    pass


class ExportTooLargeError(ClinicalStoreError):
    """An export payload exceeds the configured maximum file size."""

    pass
