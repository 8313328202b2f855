"""Contract tests for FileStorageMedium.

Applies the StorageMediumContractTests to the file-backed medium.
"""

from pathlib import Path

from clinical_toolkit.storage import FileStorageMedium, StorageMedium
from tests.contract.storage_medium_contract import StorageMediumContractTests


class TestFileStorageMediumContract(StorageMediumContractTests):
    """Apply contract tests to FileStorageMedium."""

    def create_medium(self, tmp_path: Path) -> StorageMedium:
        """Create a FileStorageMedium instance."""
        return FileStorageMedium(tmp_path / "clinical")
