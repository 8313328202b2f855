"""Encrypted storage adapter.

Wraps a StorageMedium so that every value is serialized to canonical JSON,
encrypted with AES-256-GCM envelope encryption and written as base64 text.
The adapter is pure plumbing: it does not inspect the envelope it stores.

Reads fail safe. A value that cannot be decoded, decrypted or parsed is
reported as absent (None) and logged, so a corrupted or foreign cache never
prevents the store from starting.
"""

import json
import logging
from typing import Any, Optional

from clinical_toolkit.services.compliance.crypto import (
    DecryptionError,
    EncryptionError,
    EnvelopeEncryptor,
)
from clinical_toolkit.services.errors import PersistenceError
from clinical_toolkit.storage.protocol import StorageMedium

logger = logging.getLogger(__name__)


def canonical_json(value: Any) -> bytes:
    """Serialize a JSON value to its canonical UTF-8 byte form."""
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


class EncryptedStorageAdapter:
    """Encrypting key/value adapter over a StorageMedium.

    Each stored value is bound to its key through the AEAD associated data,
    so a blob copied to another key fails to decrypt.

    Example:
        adapter = EncryptedStorageAdapter(FileStorageMedium(root), EnvelopeEncryptor(key))
        adapter.set("clinical-toolkit-storage", {"state": {...}, "version": 1})
        envelope = adapter.get("clinical-toolkit-storage")
    """

    def __init__(self, medium: StorageMedium, encryptor: EnvelopeEncryptor):
        self._medium = medium
        self._encryptor = encryptor

    @property
    def medium(self) -> StorageMedium:
        """The wrapped storage medium."""
        return self._medium

    def set(self, key: str, envelope: Any) -> None:
        """Encrypt envelope and write it under key.

        Raises:
            TypeError, ValueError: If envelope is not JSON-representable.
            PersistenceError: If encryption or the medium write fails.
        """
        plaintext = canonical_json(envelope).decode("utf-8")
        try:
            blob_b64 = self._encryptor.encrypt_string(plaintext, key.encode("utf-8"))
        except EncryptionError as e:
            raise PersistenceError(f"Failed to encrypt value for '{key}': {e}") from e

        try:
            self._medium.set_item(key, blob_b64)
        except OSError as e:
            raise PersistenceError(f"Failed to write '{key}' to storage: {e}") from e

        logger.debug(f"Stored encrypted value for '{key}' ({len(blob_b64)} chars)")

    def get(self, key: str) -> Optional[Any]:
        """Read, decrypt and parse the value stored under key.

        Returns:
            The original JSON value, or None if the key is absent or its
            value cannot be decrypted or parsed.
        """
        raw = self._medium.get_item(key)
        if raw is None:
            return None

        try:
            plaintext = self._encryptor.decrypt_string(raw, key.encode("utf-8"))
        except DecryptionError as e:
            logger.warning(f"Failed to decrypt stored value for '{key}': {e}")
            return None

        try:
            return json.loads(plaintext)
        except ValueError as e:
            logger.warning(f"Stored value for '{key}' is not valid JSON: {e}")
            return None

    def remove(self, key: str) -> None:
        """Delete key from the medium.

        Raises:
            PersistenceError: If the medium cannot be written.
        """
        try:
            self._medium.remove_item(key)
        except OSError as e:
            raise PersistenceError(f"Failed to remove '{key}' from storage: {e}") from e

    def contains(self, key: str) -> bool:
        """Return True if a raw value exists under key (without decrypting)."""
        return self._medium.get_item(key) is not None
