from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path

from ..models.validation_error import ValidationError

"""Validation report buffering (JSON Lines).

One report file per run: `<logs_dir>/errors-YYYYMMDD-HHMMSS.log` (UTC),
created lazily on the first flush with content. Fixed keys per line:

    {"timestamp", "file", "row", "column", "kind", "message",
     "original_value", "corrected_value", "suggested_value"}

`row` is 1-based here (matches spreadsheet row numbers below the header).
"""

__all__ = [
    "ErrorLogBuffer",
    "REPORT_KEYS",
]

LOGS_DIR = Path("./logs")
TIMESTAMP_FMT = "%Y%m%d-%H%M%S"

REPORT_KEYS = (
    "timestamp",
    "file",
    "row",
    "column",
    "kind",
    "message",
    "original_value",
    "corrected_value",
    "suggested_value",
)


def _report_line(source_file: str, error: ValidationError, timestamp: str) -> str:
    record = {
        "timestamp": timestamp,
        "file": source_file,
        "row": error.row_number,
        "column": error.column,
        "kind": error.kind.value,
        "message": error.message,
        "original_value": error.original_value,
        "corrected_value": error.corrected_value,
        "suggested_value": error.suggested_value,
    }
    return json.dumps(record, ensure_ascii=False)


class ErrorLogBuffer:
    """In-memory buffer of validation findings; flush() appends JSON Lines.

    Single threaded use (the session flushes once at the end of a run).
    """

    def __init__(self, source_file: str, logs_dir: Path | None = None) -> None:
        self.source_file = source_file
        self.logs_dir = logs_dir or LOGS_DIR
        self._errors: list[ValidationError] = []
        self._file_path: Path | None = None

    @property
    def file_path(self) -> Path:
        if self._file_path is None:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
            stamp = datetime.now(UTC).strftime(TIMESTAMP_FMT)
            self._file_path = self.logs_dir / f"errors-{stamp}.log"
        return self._file_path

    def append(self, error: ValidationError) -> None:
        self._errors.append(error)

    def extend(self, errors: Iterable[ValidationError]) -> None:
        self._errors.extend(errors)

    def __len__(self) -> int:
        return len(self._errors)

    def flush(self) -> Path | None:
        """Write buffered findings and clear the buffer.

        Returns:
            The report path, or None when there was nothing to write
        """
        if not self._errors:
            return None
        fp = self.file_path
        ts = datetime.now(UTC).isoformat().replace("+00:00", "Z")
        with fp.open("a", encoding="utf-8") as f:
            for e in self._errors:
                f.write(_report_line(self.source_file, e, ts) + "\n")
        self._errors.clear()
        return fp
