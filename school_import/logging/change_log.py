from __future__ import annotations

import csv
import io
from collections import Counter
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from ..models.change_log_entry import ChangeLogEntry, ChangeType

if TYPE_CHECKING:
    from _csv import _writer as CsvWriter

"""Append-only change log (audit trail) and its delimited-text export.

Export layout (';' delimited, CRLF line ends, csv minimal quoting):

    #;source=<file>;import_type=<name>;entries=<n>
    Timestamp;Type;Row;Column;OriginalValue;NewValue;RecordLabel
    2024-01-05T10:00:00.123456Z;ai-auto;3;P_TEL;0041791234567;+41791234567;Muster Max

Any field containing ';', '"' or a line break is quoted with embedded quotes
doubled, so re-reading with a csv reader yields exactly one field per column.
Row is written 1-based; entries hold it 0-based.
"""

__all__ = [
    "ChangeLog",
    "ChangeLogSummary",
    "EXPORT_HEADER",
    "parse_delimited_text",
]

DELIMITER = ";"
EXPORT_HEADER = ("Timestamp", "Type", "Row", "Column", "OriginalValue", "NewValue", "RecordLabel")
METADATA_MARKER = "#"
TIMESTAMP_FMT = "%Y%m%d-%H%M%S"


@dataclass(frozen=True)
class ChangeLogSummary:
    total_count: int
    count_by_type: dict[str, int] = field(default_factory=dict)
    count_by_column: dict[str, int] = field(default_factory=dict)


def _writer(buf: io.StringIO) -> CsvWriter:
    return csv.writer(buf, delimiter=DELIMITER, quoting=csv.QUOTE_MINIMAL, lineterminator="\r\n")


class ChangeLog:
    """Ordered, append-only list of ChangeLogEntry.

    Entries are never reordered, changed or removed; reverse_chronological()
    is the only read-time ordering offered.
    """

    def __init__(self) -> None:
        self._entries: list[ChangeLogEntry] = []

    def append(self, entry: ChangeLogEntry) -> None:
        if not isinstance(entry, ChangeLogEntry):
            raise TypeError(f"expected ChangeLogEntry, got {type(entry).__name__}")
        self._entries.append(entry)

    def extend(self, entries: list[ChangeLogEntry] | tuple[ChangeLogEntry, ...]) -> None:
        for e in entries:
            self.append(e)

    @property
    def entries(self) -> tuple[ChangeLogEntry, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ChangeLogEntry]:
        return iter(tuple(self._entries))

    def reverse_chronological(self) -> list[ChangeLogEntry]:
        return list(reversed(self._entries))

    def summary(self) -> ChangeLogSummary:
        by_type = Counter(e.type.value for e in self._entries)
        by_column = Counter(e.column for e in self._entries)
        return ChangeLogSummary(
            total_count=len(self._entries),
            count_by_type=dict(by_type),
            count_by_column=dict(by_column),
        )

    def export_as_delimited_text(self, source_file_name: str, import_type_name: str) -> str:
        buf = io.StringIO()
        w = _writer(buf)
        w.writerow([
            METADATA_MARKER,
            f"source={source_file_name}",
            f"import_type={import_type_name}",
            f"entries={len(self._entries)}",
        ])
        w.writerow(EXPORT_HEADER)
        for e in self._entries:
            w.writerow([
                e.timestamp,
                e.type.value,
                e.row + 1,
                e.column,
                e.original_value,
                e.new_value,
                e.record_label or "",
            ])
        return buf.getvalue()

    def flush(self, directory: Path, source_file_name: str, import_type_name: str) -> Path:
        """Write the export to `<directory>/aenderungsprotokoll_<stamp>.csv` (UTF-8 BOM)."""
        directory.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(UTC).strftime(TIMESTAMP_FMT)
        fp = directory / f"aenderungsprotokoll_{stamp}.csv"
        # Excel 互換のため BOM 付き
        fp.write_text(
            self.export_as_delimited_text(source_file_name, import_type_name),
            encoding="utf-8-sig",
            newline="",
        )
        return fp


def parse_delimited_text(text: str) -> list[ChangeLogEntry]:
    """Parse an export produced by ChangeLog.export_as_delimited_text.

    Raises:
        ValueError: header line missing or a record has the wrong field count
    """
    reader = csv.reader(io.StringIO(text.lstrip("\ufeff"), newline=""), delimiter=DELIMITER)
    records = list(reader)
    if records and records[0] and records[0][0] == METADATA_MARKER:
        records = records[1:]
    if not records or tuple(records[0]) != EXPORT_HEADER:
        raise ValueError("change log header not found")

    entries: list[ChangeLogEntry] = []
    for n, rec in enumerate(records[1:], start=1):
        if not rec:
            continue
        if len(rec) != len(EXPORT_HEADER):
            raise ValueError(f"record {n}: expected {len(EXPORT_HEADER)} fields, got {len(rec)}")
        ts, type_, row, column, original, new, label = rec
        entries.append(
            ChangeLogEntry(
                timestamp=ts,
                type=ChangeType(type_),
                row=int(row) - 1,
                column=column,
                original_value=original,
                new_value=new,
                record_label=label or None,
            )
        )
    return entries
