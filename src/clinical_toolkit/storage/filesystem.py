"""File-backed storage medium.

Each key is stored in its own file under the medium root. File names are
the URL-quoted key so arbitrary keys map to safe names, and writes go
through a temp file followed by an atomic replace.

Layout:
    <root_dir>/
        clinical-toolkit-storage.val
        bp-readings.val
        ...
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional
from urllib.parse import quote, unquote

logger = logging.getLogger(__name__)

VALUE_SUFFIX = ".val"
TMP_SUFFIX = ".tmp"


class FileStorageMedium:
    """StorageMedium that keeps one UTF-8 file per key.

    Example:
        medium = FileStorageMedium(Path("output/clinical"))
        medium.set_item("bp-readings", "[]")
        medium.get_item("bp-readings")  # "[]"
    """

    def __init__(self, root_dir: Path):
        self.root_dir = Path(root_dir)
        self.root_dir.mkdir(parents=True, exist_ok=True)

    def _path_for(self, key: str) -> Path:
        if not key:
            raise ValueError("Storage key must not be empty")
        return self.root_dir / (quote(key, safe="") + VALUE_SUFFIX)

    def get_item(self, key: str) -> Optional[str]:
        """Return the stored value, or None if the key has no file."""
        path = self._path_for(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def set_item(self, key: str, value: str) -> None:
        """Atomically write value for key.

        Raises:
            OSError: If the file cannot be written.
        """
        path = self._path_for(key)
        tmp_path = path.with_name(path.name + TMP_SUFFIX)

        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(value)
            tmp_path.replace(path)
        except OSError:
            if tmp_path.exists():
                tmp_path.unlink()
            raise

    def remove_item(self, key: str) -> None:
        path = self._path_for(key)
        try:
            path.unlink()
        except FileNotFoundError:
            pass

    def keys(self) -> List[str]:
        if not self.root_dir.exists():
            return []
        return sorted(
            unquote(p.name[: -len(VALUE_SUFFIX)])
            for p in self.root_dir.iterdir()
            if p.is_file() and p.name.endswith(VALUE_SUFFIX)
        )

    def clear(self) -> None:
        for key in self.keys():
            self.remove_item(key)
        logger.debug(f"Cleared file medium at {self.root_dir}")
