# Shared pytest fixtures
from __future__ import annotations

import tempfile
from pathlib import Path

import pytest

from school_import.logging.init import reset_logging
from school_import.models.rules import (
    BusinessRule,
    ColumnDefinition,
    FormatRule,
    IdentityGroup,
    RuleRegistry,
    ValueType,
)


@pytest.fixture()
def temp_workdir(monkeypatch) -> Path:
    with tempfile.TemporaryDirectory() as d:
        p = Path(d)
        (p / "config").mkdir()
        (p / "data").mkdir()
        (p / "logs").mkdir()
        monkeypatch.chdir(p)
        monkeypatch.delenv("SCHOOL_IMPORT_CONFIG", raising=False)
        yield p


@pytest.fixture(autouse=True)
def _reset_logger():
    yield
    reset_logging()


@pytest.fixture()
def sample_config_yaml() -> str:
    return """logs_directory: ./logs
storage:
  directory: ./.store
analysis:
  min_occurrences: 2
import_types:
  schueler:
    name: Schülerdaten
    identifier_column: S_ID
    record_label_columns: [S_Vorname, S_Name]
    unique_columns: [S_AHV]
    columns:
      - {key: S_ID, target: ID}
      - {key: S_AHV, type: ahv, target: Sozialversicherungsnummer}
      - {key: S_Name, required: true, target: Familienname}
      - {key: S_Vorname, required: true, target: Vorname}
      - {key: S_Geburtsdatum, type: date, target: Geburtsdatum}
      - {key: P_TEL, type: phone, target: Telefon}
      - {key: P_ERZ1_ID}
      - {key: P_ERZ1_Name}
      - {key: P_ERZ1_Vorname}
    format_rules:
      - name: telefon-format
        columns: [P_TEL]
        normalizer: phone_format
        message: Telefonnummer nicht im Format +41 XX XXX XX XX
    business_rules:
      - name: erz1-vollstaendig
        kind: field_dependency
        if_set: P_ERZ1_Name
        then_required: [P_ERZ1_Vorname]
        message: Vorname ERZ1 fehlt
    identity_groups:
      - {id_column: P_ERZ1_ID, key_columns: [P_ERZ1_Name, P_ERZ1_Vorname]}
"""


@pytest.fixture()
def write_config(temp_workdir: Path, sample_config_yaml: str) -> Path:
    cfg = temp_workdir / "config" / "import.yml"
    cfg.write_text(sample_config_yaml, encoding="utf-8")
    return cfg


@pytest.fixture()
def write_csv(temp_workdir: Path):
    def _write(name: str, header: list[str], rows: list[list[str]], delimiter: str = ";") -> Path:
        lines = [delimiter.join(header)] + [delimiter.join(r) for r in rows]
        fp = temp_workdir / "data" / name
        fp.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return fp

    return _write


@pytest.fixture()
def pupil_registry() -> RuleRegistry:
    return RuleRegistry(
        import_type="schueler",
        name="Schülerdaten",
        columns=(
            ColumnDefinition("S_ID"),
            ColumnDefinition("S_Name", required=True, target="Familienname"),
            ColumnDefinition("S_Vorname", required=True, target="Vorname"),
            ColumnDefinition("S_AHV", expected_type=ValueType.AHV),
            ColumnDefinition("P_TEL", expected_type=ValueType.PHONE),
        ),
        format_rules=(
            FormatRule(columns=("P_TEL",), error_message="Telefonnummer ungültig", normalizer="phone_format"),
        ),
        business_rules=(
            BusinessRule.field_dependency("name-vorname", "S_Name", ["S_Vorname"], "Vorname fehlt"),
        ),
        unique_columns=("S_AHV",),
        identity_groups=(IdentityGroup("S_ID", ("S_Name", "S_Vorname")),),
        identifier_column="S_ID",
        record_label_columns=("S_Vorname", "S_Name"),
    )


@pytest.fixture()
def pupil_rows() -> list[dict[str, object]]:
    return [
        {"S_ID": "1", "S_Name": "Muster", "S_Vorname": "Max", "S_AHV": "756.1234.5678.97", "P_TEL": "+41 79 123 45 67"},
        {"S_ID": "2", "S_Name": "Meier", "S_Vorname": "Anna", "S_AHV": "756.9876.5432.10", "P_TEL": "0791234567"},
        {"S_ID": "3", "S_Name": "", "S_Vorname": "Lea", "S_AHV": "", "P_TEL": None},
    ]
