"""Write patient and store exports to JSON files."""

import json
import logging
from pathlib import Path
from typing import Union

from clinical_toolkit.schemas.backup import PatientExport, StoreExport
from clinical_toolkit.services.errors import ExportTooLargeError

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024


def serialize_export(
    payload: Union[PatientExport, StoreExport], masked_only: bool = False
) -> bytes:
    """Serialize an export to indented UTF-8 JSON with camelCase keys."""
    data = payload.masked_view() if masked_only else payload.to_dict()
    return json.dumps(data, indent=2, ensure_ascii=False).encode("utf-8")


def write_export(
    payload: Union[PatientExport, StoreExport],
    path: Path,
    max_file_size_mb: float,
    masked_only: bool = False,
) -> int:
    """Atomically write an export payload to path.

    Args:
        payload: Export produced by the clinical store
        path: Destination file
        max_file_size_mb: Size limit, normally StorageConfig.max_file_size
        masked_only: Write only the de-identified view of the export

    Returns:
        Number of bytes written.

    Raises:
        ExportTooLargeError: If the serialized payload exceeds the limit.
            Nothing is written.
        IOError: If the file cannot be written.
    """
    content = serialize_export(payload, masked_only=masked_only)
    limit = int(max_file_size_mb * BYTES_PER_MB)
    if len(content) > limit:
        raise ExportTooLargeError(
            f"Export is {len(content)} bytes, limit is {max_file_size_mb} MB ({limit} bytes)"
        )

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")

    try:
        with open(tmp_path, "wb") as f:
            f.write(content)
        tmp_path.replace(path)
    except IOError as exc:
        if tmp_path.exists():
            tmp_path.unlink()
        raise IOError(f"Failed to write export: {exc}") from exc

    logger.info(f"Wrote export to {path} ({len(content)} bytes)")
    return len(content)
