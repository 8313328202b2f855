"""Contract tests for storage media.

Contract tests define the behavior that all implementations of a protocol
must satisfy. They are abstract test classes inherited by a concrete test
class per implementation, so every medium is held to the same behavior.

Usage:
    from tests.contract import StorageMediumContractTests

    class TestFileMediumContract(StorageMediumContractTests):
        def create_medium(self, tmp_path):
            return FileStorageMedium(tmp_path)
"""

from tests.contract.storage_medium_contract import StorageMediumContractTests

__all__ = [
    "StorageMediumContractTests",
]
