from __future__ import annotations

import json
from pathlib import Path

from school_import.logging.error_log import REPORT_KEYS, ErrorLogBuffer
from school_import.models.validation_error import ErrorKind, ValidationError


def test_empty_buffer_writes_nothing(tmp_path: Path):
    buf = ErrorLogBuffer("in.csv", logs_dir=tmp_path)
    assert buf.flush() is None
    assert list(tmp_path.iterdir()) == []


def test_flush_writes_json_lines(tmp_path: Path):
    buf = ErrorLogBuffer("schueler.csv", logs_dir=tmp_path)
    buf.append(ValidationError(0, "S_Name", "", ErrorKind.MISSING_REQUIRED, 'Pflichtfeld "S_Name" ist leer'))
    buf.extend([
        ValidationError(4, "P_ERZ1_ID", "200", ErrorKind.INCONSISTENT_ID, "id", suggested_value="100"),
    ])
    assert len(buf) == 2
    fp = buf.flush()
    assert fp is not None and fp.name.startswith("errors-") and fp.suffix == ".log"
    lines = [json.loads(line) for line in fp.read_text(encoding="utf-8").splitlines()]
    assert [tuple(rec) for rec in lines] == [REPORT_KEYS, REPORT_KEYS]
    assert lines[0]["row"] == 1
    assert lines[0]["kind"] == "missing-required"
    assert lines[1]["suggested_value"] == "100"
    assert len(buf) == 0
