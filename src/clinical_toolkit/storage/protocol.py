"""Protocol for the underlying key/value storage medium.

The medium is a host-supplied persistent map of string keys to string
values. The encrypted storage adapter is its only reader/writer for
clinical state; the migration importer reads legacy keys from it.
"""

from typing import List, Optional, Protocol, runtime_checkable


@runtime_checkable
class StorageMedium(Protocol):
    """Persistent string key -> string value map.

    Implementations must:
    - Return None from get_item for keys never written or removed
    - Make set_item atomic (a reader never sees a partial value)
    - Raise OSError (or a subclass) when the medium cannot be written
    """

    def get_item(self, key: str) -> Optional[str]:
        """Return the raw value stored under key, or None if absent."""
        ...

    def set_item(self, key: str, value: str) -> None:
        """Store value under key, replacing any previous value."""
        ...

    def remove_item(self, key: str) -> None:
        """Delete key. Removing an absent key is a no-op."""
        ...

    def keys(self) -> List[str]:
        """Return all keys currently stored."""
        ...

    def clear(self) -> None:
        """Delete every key."""
        ...
