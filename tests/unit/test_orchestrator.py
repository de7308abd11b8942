from __future__ import annotations

from pathlib import Path

import pytest

from school_import.config.loader import ConfigError, ImportConfig
from school_import.models.change_log_entry import ChangeType
from school_import.models.correction_rule import MatchMode
from school_import.models.rules import ColumnDefinition, FormatRule, RuleRegistry
from school_import.services.orchestrator import ImportSession, SessionError
from school_import.services.pattern_analysis import PatternNotFixableError
from school_import.services.storage import MemoryStore


@pytest.fixture()
def config(pupil_registry, tmp_path: Path) -> ImportConfig:
    return ImportConfig(import_types={"schueler": pupil_registry}, logs_directory=tmp_path / "logs")


def test_unknown_import_type(config):
    with pytest.raises(ConfigError):
        ImportSession(config, "journal")


def test_corrections_require_validation(config, pupil_rows):
    with ImportSession(config, "schueler") as session:
        session.load_rows(pupil_rows)
        with pytest.raises(SessionError):
            session.correct(2, "S_Name", "Muster")


def test_manual_correction_marks_error_and_remembers(config, pupil_rows):
    store = MemoryStore()
    with ImportSession(config, "schueler", store=store) as session:
        session.load_rows(pupil_rows, "schueler.csv")
        session.validate()
        assert len(session.remaining_errors) == 2

        entry = session.correct(2, "S_Name", "Keller", remember=True)
        assert entry is not None
        assert entry.type is ChangeType.MANUAL
        assert entry.record_label == "Lea Keller"
        assert session.rows[2]["S_Name"] == "Keller"
        assert pupil_rows[2]["S_Name"] == ""
        assert len(session.remaining_errors) == 1
        assert session.correct(2, "S_Name", "Keller") is None

        (rule,) = session.memory.rules
        assert rule.match_mode is MatchMode.IDENTIFIER
        assert (rule.identifier_column, rule.identifier_value) == ("S_ID", "3")
        assert session.save_memory().ok
    assert "pupil-wizard-corrections-schueler" in store.keys()


def test_correct_out_of_range(config, pupil_rows):
    with ImportSession(config, "schueler") as session:
        session.load_rows(pupil_rows)
        session.validate()
        with pytest.raises(SessionError, match="out of range"):
            session.correct(10, "S_Name", "x")


def test_apply_pattern_rejects_manual_pattern(config):
    rows = [{"S_ID": str(i), "S_Vorname": "Max"} for i in range(3)]
    with ImportSession(config, "schueler") as session:
        session.load_rows(rows)
        session.validate()
        (pattern,) = session.analyze()
        assert pattern.type == "manual_review"
        with pytest.raises(PatternNotFixableError):
            session.apply_pattern(pattern)


def test_remember_changes_creates_exact_rules(config):
    rows = [{"S_ID": str(i), "S_Name": f"M{i}", "S_Vorname": "X", "P_TEL": "079 123 45 6" + str(i)} for i in range(3)]
    with ImportSession(config, "schueler") as session:
        session.load_rows(rows)
        session.validate()
        assert session.auto_fix() == 3
        assert session.remember_changes() == 3
        assert {r.match_mode for r in session.memory.rules} == {MatchMode.EXACT}


def test_finish_writes_outputs(config, pupil_rows):
    with ImportSession(config, "schueler") as session:
        session.load_rows(pupil_rows, "schueler.csv")
        session.validate()
        session.correct(2, "S_Name", "Keller")
        result, outputs = session.finish()
    assert result.total_rows == 3
    assert result.total_errors == 2
    assert result.remaining_errors == 1
    assert result.manual_applied == 1
    assert outputs.error_report is not None and outputs.error_report.exists()
    assert outputs.change_log is not None and outputs.change_log.name.startswith("aenderungsprotokoll_")


def test_bad_manual_correction_reappears_after_revalidation(config, pupil_rows):
    with ImportSession(config, "schueler") as session:
        session.load_rows(pupil_rows)
        session.validate()
        session.correct(0, "S_AHV", "still-bad")
        errors = session.validate()
        open_cells = [(e.row, e.column) for e in session.remaining_errors]
        assert (0, "S_AHV") in open_cells
        assert next(e for e in errors if e.column == "S_AHV").original_value == "still-bad"


def test_auto_fix_skips_fixes_that_break_format_rules(tmp_path: Path):
    registry = RuleRegistry(
        import_type="klassen",
        name="Klassen",
        columns=(ColumnDefinition("K_Name", required=True),),
        format_rules=(
            FormatRule(columns=("K_Name",), error_message="Klassenname ungültig", pattern=r"^[A-Za-z0-9 ._-]{1,20}$"),
        ),
    )
    cfg = ImportConfig(import_types={"klassen": registry}, logs_directory=tmp_path / "logs")
    with ImportSession(cfg, "klassen") as session:
        session.load_rows([{"K_Name": "KLASSE 1A!"}, {"K_Name": "KLASSE 2B!"}])
        session.validate()
        assert session.auto_fix() == 0
        assert len(session.remaining_errors) == 2
        assert [p.can_auto_fix for p in session.patterns] == [False]
