from __future__ import annotations

import json
from datetime import date
from pathlib import Path

import pytest

from school_import.logging.change_log import ChangeLog
from school_import.models.change_log_entry import ChangeType
from school_import.models.correction_rule import CorrectionRule, MatchMode
from school_import.services.correction_memory import (
    FILE_VERSION,
    ConfirmationRequiredError,
    CorrectionFileError,
    CorrectionMemory,
    apply_rules,
    build_rules_document,
    create_rule_from_correction,
    default_rules_file_name,
    find_applicable_rule,
    merge_rules,
    read_rules_file,
    write_rules_file,
)
from school_import.services.storage import MemoryStore, PersistenceError


def _exact(column: str, original: str, corrected: str) -> CorrectionRule:
    return create_rule_from_correction(column, original, corrected, import_type="schueler")


def _ident(column: str, original: str, corrected: str, id_col: str, id_val: str) -> CorrectionRule:
    return create_rule_from_correction(column, original, corrected, id_col, id_val, import_type="schueler")


def test_create_rule_match_modes():
    assert _exact("S_Ort", "Zuerich", "Zürich").match_mode is MatchMode.EXACT
    rule = _ident("S_Ort", "Zuerich", "Zürich", "S_ID", "7")
    assert rule.match_mode is MatchMode.IDENTIFIER
    assert (rule.identifier_column, rule.identifier_value) == ("S_ID", "7")
    # 片方だけなら exact
    assert create_rule_from_correction("S_Ort", "a", "b", "S_ID", None, import_type="x").match_mode is MatchMode.EXACT


def test_identifier_rule_takes_precedence():
    exact = _exact("S_Ort", "Zuerich", "Zürich")
    ident = _ident("S_Ort", "Zuerich", "Zürich ZH", "S_ID", "7")
    rules = [exact, ident]
    assert find_applicable_rule(rules, {"S_ID": "7", "S_Ort": "Zuerich"}, "S_Ort") is ident
    assert find_applicable_rule(rules, {"S_ID": "8", "S_Ort": "Zuerich"}, "S_Ort") is exact
    assert find_applicable_rule(rules, {"S_ID": "7", "S_Ort": "Bern"}, "S_Ort") is None


def test_first_exact_rule_in_list_order_wins():
    first = _exact("S_Ort", "Zuerich", "A")
    second = _exact("S_Ort", "Zuerich", "B")
    assert find_applicable_rule([first, second], {"S_Ort": "Zuerich"}, "S_Ort") is first


def test_apply_rules_memory_replay_scenario():
    rule = _exact("P_TEL", "0041791234567", "+41791234567")
    rows = [{"P_TEL": "0041791234567"}, {"P_TEL": "0041799999999"}]
    log = ChangeLog()
    result = apply_rules([rule], rows, change_log=log, label_for=lambda r: "Muster Max")
    assert result.rows[0]["P_TEL"] == "+41791234567"
    assert result.rows[1]["P_TEL"] == "0041799999999"
    assert result.applied_count == 1
    (entry,) = result.entries
    assert entry.type is ChangeType.AI_AUTO
    assert (entry.row, entry.column, entry.record_label) == (0, "P_TEL", "Muster Max")
    assert log.entries == result.entries
    assert result.stats.rules_used == (rule.id,)
    assert result.stats.by_column == {"P_TEL": 1}
    assert rows[0]["P_TEL"] == "0041791234567"


def test_apply_rules_does_not_cascade():
    rules = [_exact("X", "A", "B"), _exact("X", "B", "C")]
    result = apply_rules(rules, [{"X": "A"}, {"X": "B"}])
    assert [r["X"] for r in result.rows] == ["B", "C"]


def test_apply_rules_shares_untouched_rows():
    rows = [{"X": "keep"}, {"X": "A"}]
    result = apply_rules([_exact("X", "A", "B")], rows)
    assert result.rows[0] is rows[0]
    assert result.rows[1] is not rows[1]


def test_merge_rules_last_write_wins_in_place():
    a = _exact("X", "1", "one")
    b = _exact("Y", "2", "two")
    a2 = _exact("X", "1", "ONE")
    c = _ident("X", "1", "uno", "S_ID", "5")
    merged = merge_rules([a, b], [a2, c])
    assert merged == [a2, b, c]


def test_memory_add_persist_load_roundtrip():
    store = MemoryStore()
    memory = CorrectionMemory(store, "schueler")
    memory.add(_exact("X", "1", "one"))
    memory.add(_ident("X", "1", "uno", "S_ID", "5"))
    report = memory.persist()
    assert report.ok
    assert len(report.saved) == 2
    assert store.keys() == ["pupil-wizard-corrections-schueler"]

    other = CorrectionMemory(store, "schueler")
    loaded = other.load()
    assert [r.identity for r in loaded] == [r.identity for r in memory.rules]
    assert CorrectionMemory(store, "journal").load() == []


def test_memory_remove_and_record_usage():
    memory = CorrectionMemory(MemoryStore(), "schueler")
    rule = _exact("X", "A", "B")
    memory.add(rule)
    result = memory.apply([{"X": "A"}, {"X": "A"}])
    assert result.applied_count == 2
    assert memory.rules[0].applied_count == 2
    assert memory.remove(rule.id) is True
    assert memory.remove(rule.id) is False
    assert len(memory) == 0


class _FlakyStore(MemoryStore):
    """Rejects any write whose payload contains a marker value."""

    def set(self, key: str, value: str) -> None:
        if "REJECT" in value:
            raise PersistenceError("quota exceeded")
        super().set(key, value)


def test_persist_is_best_effort_per_rule():
    store = _FlakyStore()
    memory = CorrectionMemory(store, "schueler")
    good = _exact("X", "1", "one")
    bad = _exact("X", "2", "REJECT")
    also_good = _exact("X", "3", "three")
    for r in (good, bad, also_good):
        memory.add(r)
    report = memory.persist()
    assert report.saved == (good.id, also_good.id)
    assert [rid for rid, _ in report.failed] == [bad.id]
    stored = json.loads(store.get("pupil-wizard-corrections-schueler"))
    assert [d["id"] for d in stored] == [good.id, also_good.id]


def test_clear_requires_confirmation():
    store = MemoryStore({"pupil-wizard-corrections-schueler": "[]"})
    memory = CorrectionMemory(store, "schueler")
    with pytest.raises(ConfirmationRequiredError):
        memory.clear()
    with pytest.raises(ConfirmationRequiredError):
        memory.clear(confirm="yes")  # type: ignore[arg-type]
    assert store.keys() == ["pupil-wizard-corrections-schueler"]
    memory.clear(confirm=True)
    assert store.keys() == []


def test_load_corrupt_store_raises_persistence_error():
    store = MemoryStore({"pupil-wizard-corrections-schueler": "{not json"})
    memory = CorrectionMemory(store, "schueler")
    with pytest.raises(PersistenceError):
        memory.load()
    assert memory.stored_count() == 0


def test_rules_file_roundtrip(tmp_path: Path):
    rules = [_exact("X", "a;b", 'say "hi"'), _ident("Y", "1", "2", "S_ID", "9")]
    path = write_rules_file(tmp_path / "rules.json", rules, "schueler", "schueler.xlsx")
    document = json.loads(path.read_text(encoding="utf-8"))
    assert document["version"] == FILE_VERSION
    assert document["importType"] == "schueler"
    assert document["exportedFrom"] == "schueler.xlsx"
    assert read_rules_file(path, "schueler") == rules


def test_rules_file_type_mismatch_and_malformed(tmp_path: Path):
    path = write_rules_file(tmp_path / "rules.json", [_exact("X", "a", "b")], "journal")
    with pytest.raises(CorrectionFileError, match="journal"):
        read_rules_file(path, "schueler")

    broken = tmp_path / "broken.json"
    broken.write_text("{", encoding="utf-8")
    with pytest.raises(CorrectionFileError):
        read_rules_file(broken, "schueler")

    invalid = tmp_path / "invalid.json"
    doc = build_rules_document([], "schueler")
    doc["rules"] = [{"id": "1", "column": "X", "originalValue": "a", "correctedValue": "b", "matchType": "identifier"}]
    invalid.write_text(json.dumps(doc), encoding="utf-8")
    with pytest.raises(CorrectionFileError, match="invalid rules file"):
        read_rules_file(invalid, "schueler")

    with pytest.raises(CorrectionFileError, match="not found"):
        read_rules_file(tmp_path / "missing.json", "schueler")


def test_import_file_merges(tmp_path: Path):
    memory = CorrectionMemory(MemoryStore(), "schueler")
    existing = _exact("X", "a", "old")
    memory.add(existing)
    path = write_rules_file(tmp_path / "r.json", [_exact("X", "a", "new"), _exact("Z", "1", "2")], "schueler")
    assert memory.import_file(path) == 2
    assert [r.corrected_value for r in memory.rules] == ["new", "2"]


def test_default_rules_file_name():
    assert default_rules_file_name("schueler", date(2024, 1, 5)) == "korrektur-regeln_schueler_2024-01-05.json"
