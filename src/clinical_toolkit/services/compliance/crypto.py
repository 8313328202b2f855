"""Cryptographic utilities for the encrypted clinical storage adapter.

This module provides envelope encryption using AES-256-GCM authenticated
encryption. Every write is encrypted with a fresh Data Encryption Key (DEK),
which is itself encrypted with the Key Encryption Key (KEK) supplied by the
host application.

Design:
- Envelope encryption: DEK per write, KEK for DEK encryption
- Algorithm: AES-256-GCM for authenticated encryption
- Nonce: 12 bytes (96 bits) per encryption operation
- Associated data: optional, bound to both the DEK and the payload (the
  storage adapter passes the storage key so a blob cannot be moved to
  another key undetected)

Wire format:
    [encrypted_dek (48 bytes)] [dek_nonce (12 bytes)] [data_nonce (12 bytes)] [ciphertext]

Where:
- encrypted_dek: DEK encrypted with KEK (32 byte key + 16 byte auth tag)
- dek_nonce: Nonce used for DEK encryption
- data_nonce: Nonce used for data encryption
- ciphertext: Data encrypted with DEK + auth tag
"""

import base64
import binascii
import secrets
from pathlib import Path
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


# Constants
KEK_SIZE = 32  # 256 bits
DEK_SIZE = 32  # 256 bits
NONCE_SIZE = 12  # 96 bits (standard for GCM)
AUTH_TAG_SIZE = 16  # 128 bits (standard for GCM)
ENCRYPTED_DEK_SIZE = DEK_SIZE + AUTH_TAG_SIZE  # 48 bytes


class CryptoError(Exception):
    """Base exception for cryptographic errors."""

    pass


class KeyLoadError(CryptoError):
    """Error loading encryption key."""

    pass


class EncryptionError(CryptoError):
    """Error during encryption."""

    pass


class DecryptionError(CryptoError):
    """Error during decryption (includes tampering detection)."""

    pass


class EnvelopeEncryptor:
    """Envelope encryption for persisted clinical state.

    Example:
        >>> encryptor = EnvelopeEncryptor(Path("keys/clinical.key"))
        >>> blob = encryptor.encrypt(b"sensitive data", b"clinical-toolkit-storage")
        >>> encryptor.decrypt(blob, b"clinical-toolkit-storage")
        b'sensitive data'

    The KEK must be 32 bytes of cryptographically secure random data. It is
    supplied by the host; provisioning and rotation happen elsewhere.
    """

    HEADER_SIZE = ENCRYPTED_DEK_SIZE + NONCE_SIZE + NONCE_SIZE  # 72 bytes

    def __init__(self, kek: Union[Path, bytes]):
        """Initialize encryptor with Key Encryption Key.

        Args:
            kek: Either a Path to a file containing the KEK, or the KEK bytes directly.
                 KEK must be exactly 32 bytes (256 bits).

        Raises:
            KeyLoadError: If the key file cannot be read or key is invalid size.
        """
        if isinstance(kek, Path):
            self._kek = self._load_kek(kek)
        else:
            if len(kek) != KEK_SIZE:
                raise KeyLoadError(
                    f"KEK must be {KEK_SIZE} bytes, got {len(kek)} bytes"
                )
            self._kek = bytes(kek)

        self._kek_cipher = AESGCM(self._kek)

    def _load_kek(self, kek_path: Path) -> bytes:
        """Load KEK from a raw, base64 or hex encoded key file.

        Raises:
            KeyLoadError: If file cannot be read or contains invalid key.
        """
        if not kek_path.exists():
            raise KeyLoadError(f"KEK file not found: {kek_path}")

        try:
            raw_content = kek_path.read_bytes()
        except OSError as e:
            raise KeyLoadError(f"Failed to read KEK file: {e}") from e

        if len(raw_content) == KEK_SIZE:
            return raw_content

        try:
            decoded = base64.b64decode(raw_content.strip(), validate=True)
            if len(decoded) == KEK_SIZE:
                return decoded
        except (binascii.Error, ValueError):
            pass

        try:
            decoded = bytes.fromhex(raw_content.decode("utf-8").strip())
            if len(decoded) == KEK_SIZE:
                return decoded
        except (UnicodeDecodeError, ValueError):
            pass

        raise KeyLoadError(
            f"KEK file must contain {KEK_SIZE} bytes "
            f"(raw, base64, or hex encoded), got {len(raw_content)} bytes"
        )

    def encrypt(self, plaintext: bytes, associated_data: Optional[bytes] = None) -> bytes:
        """Encrypt plaintext using envelope encryption.

        Args:
            plaintext: Data to encrypt (any size).
            associated_data: Authenticated but unencrypted context. The same
                value must be passed to decrypt().

        Returns:
            encrypted_dek || dek_nonce || data_nonce || ciphertext

        Raises:
            EncryptionError: If encryption fails.
        """
        try:
            dek = AESGCM.generate_key(bit_length=256)
            dek_nonce = secrets.token_bytes(NONCE_SIZE)
            data_nonce = secrets.token_bytes(NONCE_SIZE)

            encrypted_dek = self._kek_cipher.encrypt(dek_nonce, dek, associated_data)
            ciphertext = AESGCM(dek).encrypt(data_nonce, plaintext, associated_data)

            return encrypted_dek + dek_nonce + data_nonce + ciphertext

        except (TypeError, ValueError, OverflowError) as e:
            raise EncryptionError(f"Encryption failed: {e}") from e

    def decrypt(self, blob: bytes, associated_data: Optional[bytes] = None) -> bytes:
        """Decrypt envelope-encrypted data.

        Raises:
            DecryptionError: If decryption fails (wrong key, wrong associated
                data, tampered or truncated blob).
        """
        if len(blob) < self.HEADER_SIZE:
            raise DecryptionError(
                f"Encrypted blob too small: {len(blob)} bytes, "
                f"minimum {self.HEADER_SIZE} bytes required"
            )

        offset = 0
        encrypted_dek = blob[offset : offset + ENCRYPTED_DEK_SIZE]
        offset += ENCRYPTED_DEK_SIZE

        dek_nonce = blob[offset : offset + NONCE_SIZE]
        offset += NONCE_SIZE

        data_nonce = blob[offset : offset + NONCE_SIZE]
        offset += NONCE_SIZE

        ciphertext = blob[offset:]

        try:
            dek = self._kek_cipher.decrypt(dek_nonce, encrypted_dek, associated_data)
            return AESGCM(dek).decrypt(data_nonce, ciphertext, associated_data)
        except (InvalidTag, ValueError) as e:
            raise DecryptionError(f"Decryption failed: {e!r}") from e

    def encrypt_string(
        self,
        plaintext: str,
        associated_data: Optional[bytes] = None,
        encoding: str = "utf-8",
    ) -> str:
        """Encrypt a string and return the base64-encoded blob."""
        encrypted = self.encrypt(plaintext.encode(encoding), associated_data)
        return base64.b64encode(encrypted).decode("ascii")

    def decrypt_string(
        self,
        blob_b64: str,
        associated_data: Optional[bytes] = None,
        encoding: str = "utf-8",
    ) -> str:
        """Decrypt a base64-encoded blob to string.

        Raises:
            DecryptionError: If decoding or decryption fails.
        """
        try:
            blob = base64.b64decode(blob_b64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecryptionError(f"Invalid base64 encoding: {e}") from e

        plaintext = self.decrypt(blob, associated_data)
        try:
            return plaintext.decode(encoding)
        except UnicodeDecodeError as e:
            raise DecryptionError(f"Failed to decode plaintext: {e}") from e


def generate_key() -> bytes:
    """Generate a new 256-bit encryption key."""
    return secrets.token_bytes(KEK_SIZE)


def generate_key_file(path: Path, format: str = "raw") -> None:
    """Generate a new key and save to file.

    Args:
        path: Path to save the key.
        format: Output format - "raw" (binary), "base64", or "hex".

    Raises:
        ValueError: If format is invalid.
        OSError: If file cannot be written.
    """
    if format not in ("raw", "base64", "hex"):
        raise ValueError(f"Invalid format: {format}. Use 'raw', 'base64', or 'hex'")

    key = generate_key()
    path.parent.mkdir(parents=True, exist_ok=True)

    if format == "raw":
        path.write_bytes(key)
    elif format == "base64":
        path.write_text(base64.b64encode(key).decode("ascii"))
    else:
        path.write_text(key.hex())
