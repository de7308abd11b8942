from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date
from pathlib import Path

import pandas as pd

from ..models.row_data import ImportRow, cell_text
from ..models.rules import RuleRegistry
from ..models.validation_error import ValidationError
from .reader import UnsupportedFileError

logger = logging.getLogger(__name__)

"""Cleaned data export (.csv with ';' and UTF-8 BOM, or .xlsx sheet "Daten")."""

__all__ = [
    "SHEET_NAME",
    "ExportOptions",
    "default_output_name",
    "build_export_frame",
    "write_export",
]

SHEET_NAME = "Daten"
OUTPUT_SUFFIXES = (".csv", ".xlsx")


@dataclass(frozen=True)
class ExportOptions:
    only_error_free: bool = False  # 未修正エラーを含む行を除外
    remove_extra_columns: bool = False  # 定義外の列を出力しない
    use_target_headers: bool = True
    delimiter: str = ";"


def default_output_name(import_type: str, suffix: str = ".csv", today: date | None = None) -> str:
    day = (today or date.today()).isoformat()
    return f"{import_type}_{day}_bereinigt{suffix}"


def build_export_frame(
    rows: Sequence[ImportRow],
    registry: RuleRegistry,
    errors: Iterable[ValidationError] = (),
    options: ExportOptions = ExportOptions(),
) -> pd.DataFrame:
    """Rows -> DataFrame in export column order (defined columns first, then extras)."""
    seen: dict[str, None] = {}
    for row in rows:
        for k in row:
            seen.setdefault(k, None)
    defined = [k for k in registry.column_keys if k in seen]
    extra = [] if options.remove_extra_columns else [k for k in seen if registry.column(k) is None]
    columns = defined + extra

    excluded: set[int] = set()
    if options.only_error_free:
        excluded = {e.row for e in errors if not e.is_corrected}

    records = [
        [cell_text(row.get(c)) for c in columns]
        for i, row in enumerate(rows)
        if i not in excluded
    ]
    frame = pd.DataFrame(records, columns=columns, dtype=str)
    if options.use_target_headers:
        frame = frame.rename(columns=registry.header_mapping())
    if excluded:
        logger.info(f"export: {len(excluded)} rows with open errors left out")
    return frame


def write_export(path: Path, frame: pd.DataFrame, *, delimiter: str = ";") -> Path:
    """Write the frame; the format follows the file suffix.

    Raises:
        UnsupportedFileError: suffix other than .csv / .xlsx
    """
    suffix = path.suffix.lower()
    if suffix not in OUTPUT_SUFFIXES:
        raise UnsupportedFileError(f"unsupported output type '{suffix or path.name}'")
    path.parent.mkdir(parents=True, exist_ok=True)
    if suffix == ".csv":
        # Excel 互換のため BOM 付き UTF-8
        frame.to_csv(path, sep=delimiter, index=False, encoding="utf-8-sig")
    else:
        frame.to_excel(path, sheet_name=SHEET_NAME, index=False, engine="openpyxl")
    logger.info(f"export written: {path} ({len(frame)} rows)")
    return path
