"""
Clinical Toolkit - encrypted local persistence for per-patient clinical data.

This package provides an encrypted key/value storage adapter, a versioned
clinical data store with cascade delete and export, a one-time migration
path from the legacy unencrypted format, and PII masking for audit trails.
"""

__version__ = "0.1.0"
