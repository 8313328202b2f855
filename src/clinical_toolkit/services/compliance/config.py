"""Configuration for the encrypted clinical store.

This module provides the settings model used to select the underlying
storage medium, locate the encryption key and tune store behavior.
"""

import os
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator


DEFAULT_STORAGE_KEY = "clinical-toolkit-storage"
DEFAULT_LEGACY_PATIENT_ID = "default-patient"
DEFAULT_QUOTA_BYTES = 5 * 1024 * 1024


class MediumType(str, Enum):
    """Supported underlying storage media."""

    FILE = "file"
    MEMORY = "memory"


class ClinicalStorageSettings(BaseModel):
    """Settings for building a clinical data store.

    Attributes:
        medium_type: The underlying medium (file or memory)
        storage_dir: Directory for the file medium
        encryption_key_path: Path to the 32-byte key file
        storage_key: Medium key under which the encrypted state is written
        schema_version: Version tag written into the persisted envelope
        run_migrations: Run the legacy migration importer at startup
        legacy_patient_id: Patient that legacy readings are attached to
        quota_bytes: Medium capacity reported by storage stats

    Example:
        >>> settings = ClinicalStorageSettings(
        ...     storage_dir=Path("output/clinical"),
        ...     encryption_key_path=Path("keys/clinical.key"),
        ... )
    """

    medium_type: MediumType = MediumType.FILE
    storage_dir: Path = Path("output/clinical")
    encryption_key_path: Optional[Path] = None
    storage_key: str = DEFAULT_STORAGE_KEY
    schema_version: int = Field(1, ge=1)
    run_migrations: bool = True
    legacy_patient_id: str = DEFAULT_LEGACY_PATIENT_ID
    quota_bytes: int = Field(DEFAULT_QUOTA_BYTES, gt=0)

    model_config = {"extra": "forbid"}

    @field_validator("storage_dir", "encryption_key_path", mode="before")
    @classmethod
    def convert_paths(cls, v):
        """Convert string paths to Path objects."""
        if isinstance(v, str):
            return Path(v)
        return v

    @field_validator("storage_key")
    @classmethod
    def check_storage_key(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("storage_key must not be empty")
        return v

    def validate_for_medium(self) -> None:
        """Validate that required options are set for the selected medium.

        Raises:
            ValueError: If required options are missing.
        """
        if self.medium_type == MediumType.FILE and not self.encryption_key_path:
            raise ValueError("encryption_key_path is required for the file medium")

    @classmethod
    def from_env(cls, prefix: str = "CLINICAL_TOOLKIT_") -> "ClinicalStorageSettings":
        """Create settings from environment variables.

        Environment variables:
            {prefix}MEDIUM: Medium type (file or memory)
            {prefix}STORAGE_DIR: Directory for the file medium
            {prefix}KEY_PATH: Path to the encryption key file
            {prefix}STORAGE_KEY: Medium key for the encrypted state
            {prefix}RUN_MIGRATIONS: "0"/"false" disables startup migration
            {prefix}LEGACY_PATIENT_ID: Patient id for migrated legacy readings
            {prefix}QUOTA_BYTES: Medium capacity for storage stats

        Args:
            prefix: Environment variable prefix (default: CLINICAL_TOOLKIT_)

        Returns:
            ClinicalStorageSettings with values from environment
        """
        kwargs = {}

        medium = os.getenv(f"{prefix}MEDIUM")
        if medium:
            kwargs["medium_type"] = MediumType(medium.lower())

        storage_dir = os.getenv(f"{prefix}STORAGE_DIR")
        if storage_dir:
            kwargs["storage_dir"] = Path(storage_dir)

        key_path = os.getenv(f"{prefix}KEY_PATH")
        if key_path:
            kwargs["encryption_key_path"] = Path(key_path)

        storage_key = os.getenv(f"{prefix}STORAGE_KEY")
        if storage_key:
            kwargs["storage_key"] = storage_key

        run_migrations = os.getenv(f"{prefix}RUN_MIGRATIONS")
        if run_migrations:
            kwargs["run_migrations"] = run_migrations.lower() not in ("0", "false", "no")

        legacy_patient_id = os.getenv(f"{prefix}LEGACY_PATIENT_ID")
        if legacy_patient_id:
            kwargs["legacy_patient_id"] = legacy_patient_id

        quota = os.getenv(f"{prefix}QUOTA_BYTES")
        if quota:
            kwargs["quota_bytes"] = int(quota)

        return cls(**kwargs)
