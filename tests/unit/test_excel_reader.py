from __future__ import annotations

from pathlib import Path

import pandas as pd
import pytest

from school_import.excel.reader import (
    EmptyFileError,
    UnsupportedFileError,
    apply_header_mapping,
    check_column_status,
    read_import_file,
    suggest_header_mapping,
)
from school_import.models.rules import ColumnDefinition


def test_read_csv_semicolon_keeps_text(write_csv):
    fp = write_csv("schueler.csv", ["S_ID", "S_Name", "S_PLZ"], [["007", "Muster", "8000"], ["", "", ""], ["8", "Meier", ""]])
    parsed = read_import_file(fp)
    assert parsed.file_name == "schueler.csv"
    assert parsed.headers == ["S_ID", "S_Name", "S_PLZ"]
    assert parsed.rows == [
        {"S_ID": "007", "S_Name": "Muster", "S_PLZ": "8000"},
        {"S_ID": "8", "S_Name": "Meier", "S_PLZ": None},
    ]


def test_read_csv_sniffs_comma(write_csv):
    fp = write_csv("komma.csv", ["A", "B"], [["1", "x"], ["2", "y"]], delimiter=",")
    parsed = read_import_file(fp)
    assert parsed.headers == ["A", "B"]
    assert parsed.rows[1] == {"A": "2", "B": "y"}


def test_read_csv_with_bom(temp_workdir: Path):
    fp = temp_workdir / "data" / "bom.csv"
    fp.write_bytes("\ufeffS_Name;S_Ort\nMüller;Zürich\n".encode("utf-8"))
    parsed = read_import_file(fp)
    assert parsed.headers == ["S_Name", "S_Ort"]
    assert parsed.rows == [{"S_Name": "Müller", "S_Ort": "Zürich"}]


def test_read_xlsx_first_sheet(temp_workdir: Path):
    fp = temp_workdir / "data" / "schueler.xlsx"
    with pd.ExcelWriter(fp, engine="openpyxl") as xw:
        pd.DataFrame({"S_ID": ["1", "2"], "S_AHV": ["7561234567897", None]}).to_excel(xw, sheet_name="Export", index=False)
        pd.DataFrame({"ignored": ["x"]}).to_excel(xw, sheet_name="Other", index=False)
    parsed = read_import_file(fp)
    assert parsed.headers == ["S_ID", "S_AHV"]
    assert parsed.rows == [{"S_ID": "1", "S_AHV": "7561234567897"}, {"S_ID": "2", "S_AHV": None}]


def test_unsupported_and_empty(temp_workdir: Path):
    txt = temp_workdir / "data" / "notes.txt"
    txt.write_text("x", encoding="utf-8")
    with pytest.raises(UnsupportedFileError):
        read_import_file(txt)
    empty = temp_workdir / "data" / "empty.csv"
    empty.write_text("", encoding="utf-8")
    with pytest.raises(EmptyFileError):
        read_import_file(empty)


def test_column_status_and_mapping():
    columns = [
        ColumnDefinition("S_Name", required=True, target="Familienname"),
        ColumnDefinition("S_Vorname", required=True, target="Vorname"),
        ColumnDefinition("S_Ort", target="Ort"),
    ]
    headers = ["familienname", "S_Vorname", "Extra"]
    mapping = suggest_header_mapping(headers, columns)
    assert mapping == {"familienname": "S_Name", "S_Vorname": "S_Vorname"}

    rows = apply_header_mapping([{"familienname": "Muster", "S_Vorname": "Max", "Extra": "1"}], mapping)
    assert rows == [{"S_Name": "Muster", "S_Vorname": "Max", "Extra": "1"}]

    status = check_column_status(rows[0].keys(), columns)
    assert status.found == ("S_Name", "S_Vorname")
    assert status.missing == ("S_Ort",)
    assert status.missing_required == ()
    assert status.extra == ("Extra",)
    assert status.ok
