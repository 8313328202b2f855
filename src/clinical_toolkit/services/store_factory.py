"""Factory for building a clinical data store from settings.

Wires the configured medium, the envelope encryptor, the encrypted adapter
and the store together.
"""

import logging
from typing import Optional

from clinical_toolkit.services.clinical_store import ClinicalDataStore
from clinical_toolkit.services.compliance.config import ClinicalStorageSettings, MediumType
from clinical_toolkit.services.compliance.crypto import EnvelopeEncryptor, generate_key
from clinical_toolkit.services.compliance.masking_policy import MaskingPolicy
from clinical_toolkit.storage import (
    EncryptedStorageAdapter,
    FileStorageMedium,
    InMemoryStorageMedium,
    StorageMedium,
)

logger = logging.getLogger(__name__)


class ClinicalStoreFactory:
    """Factory for creating the storage stack based on settings.

    Example:
        >>> settings = ClinicalStorageSettings(
        ...     storage_dir=Path("output/clinical"),
        ...     encryption_key_path=Path("keys/clinical.key"),
        ... )
        >>> store = ClinicalStoreFactory.create_store(settings)
    """

    @staticmethod
    def create_medium(settings: ClinicalStorageSettings) -> StorageMedium:
        """Create the underlying storage medium.

        Raises:
            ValueError: If the medium type is not supported
        """
        if settings.medium_type == MediumType.FILE:
            return FileStorageMedium(settings.storage_dir)

        if settings.medium_type == MediumType.MEMORY:
            return InMemoryStorageMedium()

        raise ValueError(f"Unsupported medium type: {settings.medium_type}")

    @staticmethod
    def create_encryptor(settings: ClinicalStorageSettings) -> EnvelopeEncryptor:
        """Create the encryptor from the configured key file.

        The memory medium may run without a key file; it then gets a random
        key that lives as long as the process.

        Raises:
            KeyLoadError: If the key file cannot be loaded
        """
        if settings.encryption_key_path is not None:
            return EnvelopeEncryptor(settings.encryption_key_path)

        logger.debug("No key file configured, using an ephemeral key")
        return EnvelopeEncryptor(generate_key())

    @staticmethod
    def create_adapter(settings: ClinicalStorageSettings) -> EncryptedStorageAdapter:
        """Create the encrypted adapter over the configured medium."""
        settings.validate_for_medium()
        return EncryptedStorageAdapter(
            ClinicalStoreFactory.create_medium(settings),
            ClinicalStoreFactory.create_encryptor(settings),
        )

    @staticmethod
    def create_store(
        settings: ClinicalStorageSettings,
        masking_policy: Optional[MaskingPolicy] = None,
    ) -> ClinicalDataStore:
        """Create a rehydrated (and migrated) clinical data store.

        Raises:
            ValueError: If required settings are missing
            KeyLoadError: If the key file cannot be loaded
        """
        adapter = ClinicalStoreFactory.create_adapter(settings)
        return ClinicalDataStore(
            adapter,
            storage_key=settings.storage_key,
            schema_version=settings.schema_version,
            run_migrations=settings.run_migrations,
            legacy_patient_id=settings.legacy_patient_id,
            quota_bytes=settings.quota_bytes,
            masking_policy=masking_policy,
        )
