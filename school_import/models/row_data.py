from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from typing import Union

"""Row helpers for imported spreadsheet records.

One ImportRow is one source record (e.g. one pupil) keyed by column key.
Rows are treated as immutable inputs: every correction produces a new dict.
"""

__all__ = [
    "CellValue",
    "ImportRow",
    "cell_text",
    "is_empty",
    "record_label",
]

CellValue = Union[str, int, float, None]
ImportRow = Mapping[str, CellValue]


def cell_text(value: object) -> str:
    """Return the cell value as text. None / NaN become an empty string."""
    if value is None:
        return ""
    if isinstance(value, float):
        if math.isnan(value):
            return ""
        # Excel 由来の整数 float (1234.0) は整数表記に揃える
        if value.is_integer():
            return str(int(value))
    return str(value)


def is_empty(value: object) -> bool:
    return cell_text(value).strip() == ""


def record_label(row: ImportRow, columns: Iterable[str]) -> str | None:
    """Build a human readable label (e.g. "Max Muster") from the given columns.

    Returns None when none of the columns carry a value.
    """
    parts = [cell_text(row.get(c)).strip() for c in columns]
    label = " ".join(p for p in parts if p)
    return label or None
