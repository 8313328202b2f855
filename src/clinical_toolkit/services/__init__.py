"""Services package: the clinical data store, legacy migration and exports."""

# The storage adapter imports from this package (crypto, errors), so the
# store and its collaborators are resolved lazily via __getattr__.
_LAZY_SYMBOLS = {
    "ClinicalDataStore": "clinical_toolkit.services.clinical_store",
    "Collection": "clinical_toolkit.services.clinical_store",
    "LegacyMigrationImporter": "clinical_toolkit.services.migration",
    "MigrationResult": "clinical_toolkit.services.migration",
    "MigrationStatus": "clinical_toolkit.services.migration",
    "ClinicalStoreFactory": "clinical_toolkit.services.store_factory",
    "write_export": "clinical_toolkit.services.export",
}


def __getattr__(name: str):
    """Lazy-load service classes on first access."""
    if name in _LAZY_SYMBOLS:
        import importlib

        module = importlib.import_module(_LAZY_SYMBOLS[name])
        return getattr(module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = sorted(_LAZY_SYMBOLS)
