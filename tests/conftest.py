"""
Pytest fixtures shared by the clinical toolkit tests.
Provides storage stacks, stores and sample records.
"""

import pytest

from clinical_toolkit.services.clinical_store import ClinicalDataStore
from clinical_toolkit.services.compliance.crypto import EnvelopeEncryptor, generate_key
from clinical_toolkit.services.compliance.masking_policy import MaskingPolicyLoader
from clinical_toolkit.storage import EncryptedStorageAdapter, InMemoryStorageMedium


@pytest.fixture(autouse=True)
def reset_masking_policy_cache(monkeypatch):
    """Each test loads the packaged masking policy with the default pepper."""
    monkeypatch.delenv("CLINICAL_TOOLKIT_MASKING_PEPPER", raising=False)
    MaskingPolicyLoader.clear_cache()
    yield
    MaskingPolicyLoader.clear_cache()


@pytest.fixture
def kek() -> bytes:
    """A fresh key-encryption key."""
    return generate_key()


@pytest.fixture
def medium() -> InMemoryStorageMedium:
    """An empty in-memory medium."""
    return InMemoryStorageMedium()


@pytest.fixture
def adapter(medium, kek) -> EncryptedStorageAdapter:
    """Encrypted adapter over the in-memory medium."""
    return EncryptedStorageAdapter(medium, EnvelopeEncryptor(kek))


@pytest.fixture
def store(adapter) -> ClinicalDataStore:
    """A fresh store over the in-memory medium."""
    return ClinicalDataStore(adapter)


@pytest.fixture
def reopen(medium, kek):
    """Factory that builds a new store over the same medium and key (a restart)."""

    def _reopen(**kwargs) -> ClinicalDataStore:
        return ClinicalDataStore(
            EncryptedStorageAdapter(medium, EnvelopeEncryptor(kek)), **kwargs
        )

    return _reopen
