from __future__ import annotations

from datetime import date
from pathlib import Path

import pandas as pd
import pytest

from school_import.excel.reader import UnsupportedFileError
from school_import.excel.writer import (
    SHEET_NAME,
    ExportOptions,
    build_export_frame,
    default_output_name,
    write_export,
)
from school_import.models.validation_error import ErrorKind, ValidationError

ROWS = [
    {"S_Name": "Muster", "S_Vorname": "Max", "Notiz": "a"},
    {"S_Name": "", "S_Vorname": "Lea", "Notiz": "b"},
    {"S_Name": "Meier", "S_Vorname": "Anna", "Notiz": None},
]


def test_default_output_name():
    assert default_output_name("schueler", today=date(2024, 1, 5)) == "schueler_2024-01-05_bereinigt.csv"
    assert default_output_name("journal", ".xlsx", date(2024, 1, 5)) == "journal_2024-01-05_bereinigt.xlsx"


def test_frame_uses_target_headers_and_keeps_extras(pupil_registry):
    frame = build_export_frame(ROWS, pupil_registry)
    assert list(frame.columns) == ["Familienname", "Vorname", "Notiz"]
    assert frame.iloc[2]["Notiz"] == ""


def test_frame_options(pupil_registry):
    errors = [
        ValidationError(1, "S_Name", "", ErrorKind.MISSING_REQUIRED, "leer"),
        ValidationError(2, "S_Name", "Meier", ErrorKind.FORMAT_VIOLATION, "x", corrected_value="Meier"),
    ]
    options = ExportOptions(only_error_free=True, remove_extra_columns=True, use_target_headers=False)
    frame = build_export_frame(ROWS, pupil_registry, errors, options)
    assert list(frame.columns) == ["S_Name", "S_Vorname"]
    assert frame["S_Vorname"].tolist() == ["Max", "Anna"]


def test_write_csv_with_bom(tmp_path: Path, pupil_registry):
    frame = build_export_frame(ROWS, pupil_registry)
    fp = write_export(tmp_path / "out" / "clean.csv", frame)
    raw = fp.read_bytes()
    assert raw.startswith(b"\xef\xbb\xbf")
    first_line = raw.decode("utf-8-sig").splitlines()[0]
    assert first_line == "Familienname;Vorname;Notiz"


def test_write_xlsx_sheet_name(tmp_path: Path, pupil_registry):
    frame = build_export_frame(ROWS, pupil_registry)
    fp = write_export(tmp_path / "clean.xlsx", frame)
    back = pd.read_excel(fp, sheet_name=SHEET_NAME, dtype=str, keep_default_na=False)
    assert back["Vorname"].tolist() == ["Max", "Lea", "Anna"]


def test_write_unsupported_suffix(tmp_path: Path, pupil_registry):
    with pytest.raises(UnsupportedFileError):
        write_export(tmp_path / "clean.json", build_export_frame(ROWS, pupil_registry))
