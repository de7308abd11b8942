from __future__ import annotations

import csv
import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

import pandas as pd

from ..models.row_data import ImportRow
from ..models.rules import ColumnDefinition

logger = logging.getLogger(__name__)

"""Spreadsheet reader for legacy school-administration exports.

- .csv: delimiter sniffed from the first lines (';' ',' tab), UTF-8 with or
  without BOM, falling back to latin-1 for old exports
- .xlsx / .xls: first sheet only
- first row is the header row, every cell is read as text
- rows where every cell is empty are dropped; empty cells become None
"""

__all__ = [
    "SUPPORTED_SUFFIXES",
    "UnsupportedFileError",
    "EmptyFileError",
    "ParsedFile",
    "ColumnStatus",
    "read_import_file",
    "check_column_status",
    "suggest_header_mapping",
    "apply_header_mapping",
]

SUPPORTED_SUFFIXES = (".csv", ".xlsx", ".xls")
_SNIFF_DELIMITERS = ";,\t"


class UnsupportedFileError(Exception):
    """File type is not one of SUPPORTED_SUFFIXES or cannot be decoded."""


class EmptyFileError(Exception):
    """File has no header row."""


@dataclass
class ParsedFile:
    file_name: str
    headers: list[str]
    rows: list[dict[str, str | None]]


@dataclass(frozen=True)
class ColumnStatus:
    found: tuple[str, ...]
    missing: tuple[str, ...]
    missing_required: tuple[str, ...]
    extra: tuple[str, ...]

    @property
    def ok(self) -> bool:
        return not self.missing_required


def _sniff_delimiter(path: Path, default: str) -> str:
    try:
        with path.open("r", encoding="utf-8-sig", errors="replace", newline="") as f:
            sample = f.read(8192)
        return csv.Sniffer().sniff(sample, delimiters=_SNIFF_DELIMITERS).delimiter
    except csv.Error:
        return default


def _read_csv(path: Path, delimiter: str) -> pd.DataFrame:
    sep = _sniff_delimiter(path, delimiter)
    kwargs = dict(sep=sep, dtype=str, keep_default_na=False, skip_blank_lines=True)
    try:
        return pd.read_csv(path, encoding="utf-8-sig", **kwargs)
    except UnicodeDecodeError:
        # 旧システムの CSV は Windows-1252 / latin-1 のことがある
        logger.warning(f"{path.name}: not UTF-8, reading as latin-1")
        return pd.read_csv(path, encoding="latin-1", **kwargs)


def _read_excel(path: Path) -> pd.DataFrame:
    engine = "openpyxl" if path.suffix.lower() == ".xlsx" else None
    try:
        return pd.read_excel(path, sheet_name=0, dtype=str, keep_default_na=False, engine=engine)
    except ImportError as e:
        raise UnsupportedFileError(f"{path.name}: no reader engine available ({e})") from e


def read_import_file(path: Path, *, delimiter: str = ";") -> ParsedFile:
    """Read a CSV / Excel file into header list + row dicts.

    Raises:
        UnsupportedFileError: unknown suffix or unreadable content
        EmptyFileError: no header row
    """
    suffix = path.suffix.lower()
    if suffix not in SUPPORTED_SUFFIXES:
        raise UnsupportedFileError(
            f"unsupported file type '{suffix or path.name}' (expected {', '.join(SUPPORTED_SUFFIXES)})"
        )
    try:
        df = _read_csv(path, delimiter) if suffix == ".csv" else _read_excel(path)
    except pd.errors.EmptyDataError as e:
        raise EmptyFileError(f"{path.name}: file is empty") from e
    except (pd.errors.ParserError, ValueError) as e:
        raise UnsupportedFileError(f"{path.name}: cannot parse file: {e}") from e

    headers = [str(c).strip() for c in df.columns]
    if not headers or all(h == "" or h.startswith("Unnamed:") for h in headers):
        raise EmptyFileError(f"{path.name}: no header row")

    rows: list[dict[str, str | None]] = []
    for values in df.itertuples(index=False, name=None):
        cells = ["" if pd.isna(v) else str(v) for v in values]
        if all(c.strip() == "" for c in cells):
            continue
        rows.append({h: (c if c.strip() != "" else None) for h, c in zip(headers, cells, strict=False)})

    logger.debug(f"read {path.name}: {len(headers)} columns, {len(rows)} rows")
    return ParsedFile(file_name=path.name, headers=headers, rows=rows)


def check_column_status(headers: Iterable[str], columns: Sequence[ColumnDefinition]) -> ColumnStatus:
    """Compare (already mapped) headers with the defined columns."""
    present = list(headers)
    present_set = set(present)
    keys = {c.key for c in columns}
    return ColumnStatus(
        found=tuple(c.key for c in columns if c.key in present_set),
        missing=tuple(c.key for c in columns if c.key not in present_set),
        missing_required=tuple(c.key for c in columns if c.required and c.key not in present_set),
        extra=tuple(h for h in present if h not in keys),
    )


def suggest_header_mapping(headers: Iterable[str], columns: Sequence[ColumnDefinition]) -> dict[str, str]:
    """Map source headers to column keys by key or export header (case-insensitive).

    Headers already equal to a key map to themselves; unknown headers are left out.
    """
    lookup: dict[str, str] = {}
    for c in columns:
        lookup.setdefault(c.export_header.casefold(), c.key)
    for c in columns:
        lookup[c.key.casefold()] = c.key
    mapping: dict[str, str] = {}
    taken: set[str] = set()
    for h in headers:
        key = lookup.get(h.strip().casefold())
        if key is not None and key not in taken:
            mapping[h] = key
            taken.add(key)
    return mapping


def apply_header_mapping(rows: Iterable[ImportRow], mapping: Mapping[str, str]) -> list[dict[str, object]]:
    """Rename source headers to column keys; unmapped headers are kept as is."""
    return [{mapping.get(k, k): v for k, v in row.items()} for row in rows]
