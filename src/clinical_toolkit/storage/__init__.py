"""Storage layer: the underlying medium and the encrypted adapter over it.

Usage:
    from clinical_toolkit.storage import (
        EncryptedStorageAdapter,
        FileStorageMedium,
        InMemoryStorageMedium,
    )

    medium = FileStorageMedium(Path("output/clinical"))
    adapter = EncryptedStorageAdapter(medium, EnvelopeEncryptor(key))
    adapter.set("clinical-toolkit-storage", envelope)
"""

from .protocol import StorageMedium
from .filesystem import FileStorageMedium
from .memory import InMemoryStorageMedium
from .encrypted import EncryptedStorageAdapter, canonical_json

__all__ = [
    # Protocol
    "StorageMedium",
    # Media
    "FileStorageMedium",
    "InMemoryStorageMedium",
    # Adapter
    "EncryptedStorageAdapter",
    "canonical_json",
]
