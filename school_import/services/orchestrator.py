from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from ..config.loader import ImportConfig
from ..excel.reader import (
    ColumnStatus,
    apply_header_mapping,
    check_column_status,
    read_import_file,
    suggest_header_mapping,
)
from ..excel.writer import ExportOptions, build_export_frame, write_export
from ..logging.change_log import ChangeLog
from ..logging.error_log import ErrorLogBuffer
from ..models.analysis_pattern import AnalysisPattern
from ..models.apply_result import ApplyResult
from ..models.change_log_entry import ChangeLogEntry, ChangeType
from ..models.row_data import ImportRow, cell_text, record_label
from ..models.session_result import SessionResult
from ..models.validation_error import ValidationError
from .correction_memory import CorrectionMemory, PersistReport, create_rule_from_correction
from .pattern_analysis import PatternNotFixableError
from .progress import ProgressTracker
from .storage import KeyValueStore, MemoryStore, PersistenceError
from .validation import mark_corrected
from .worker import ValidationWorker

logger = logging.getLogger(__name__)

"""Import session orchestration (one file, one import type).

Flow:
    load_file -> validate -> replay_memory -> analyze -> apply_pattern / correct
    -> export -> finish

The session owns the row collection, the error list and the change log.
Every correction replaces `rows` with a new list (inputs are never mutated)
and re-marks the affected errors as corrected. Validation, analysis and
pattern application run on the ValidationWorker.
"""

__all__ = [
    "SessionError",
    "SessionOutputs",
    "ImportSession",
]


class SessionError(Exception):
    """Session step called out of order or with invalid arguments."""


@dataclass(frozen=True)
class SessionOutputs:
    error_report: Path | None
    change_log: Path | None


class ImportSession:
    def __init__(
        self,
        config: ImportConfig,
        import_type: str,
        *,
        store: KeyValueStore | None = None,
        worker: ValidationWorker | None = None,
    ) -> None:
        self.config = config
        self.registry = config.registry(import_type)
        self.import_type = import_type
        self.memory = CorrectionMemory(store if store is not None else MemoryStore(), import_type)
        self.change_log = ChangeLog()
        self.worker = worker or ValidationWorker()
        self.source_file_name = "unknown"
        self.rows: list[ImportRow] = []
        self.errors: list[ValidationError] = []
        self.patterns: list[AnalysisPattern] = []
        self.column_status: ColumnStatus | None = None
        self._validated = False
        self._memory_loaded = False
        self._initial_errors = 0
        self._pattern_count = 0
        self._start = datetime.now(UTC)

    def __enter__(self) -> ImportSession:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.worker.shutdown()

    def label_for(self, row: ImportRow) -> str | None:
        return record_label(row, self.registry.record_label_columns)

    # --- input -------------------------------------------------------------

    def load_rows(self, rows: list[ImportRow], source_file_name: str = "rows") -> ColumnStatus:
        headers: list[str] = []
        for row in rows:
            for k in row:
                if k not in headers:
                    headers.append(k)
        self.rows = list(rows)
        self.source_file_name = source_file_name
        self.column_status = check_column_status(headers, self.registry.columns)
        self._validated = False
        if self.column_status.missing_required:
            logger.warning(
                f"{source_file_name}: required columns missing: {', '.join(self.column_status.missing_required)}"
            )
        return self.column_status

    def load_file(self, path: Path) -> ColumnStatus:
        """Read a file and map its headers (key or export header) to column keys.

        Raises:
            UnsupportedFileError / EmptyFileError: from the reader
        """
        parsed = read_import_file(path, delimiter=self.config.delimiter)
        mapping = suggest_header_mapping(parsed.headers, self.registry.columns)
        rows = apply_header_mapping(parsed.rows, mapping)
        logger.info(f"read {len(rows)} rows from {parsed.file_name}")
        return self.load_rows(rows, parsed.file_name)

    # --- validation / analysis -------------------------------------------

    def validate(self) -> list[ValidationError]:
        """Validate the current rows; already logged corrections stay marked."""
        with ProgressTracker(len(self.rows)) as progress:
            errors = self.worker.validate(self.rows, self.registry, on_row=progress.update)
            progress.set_postfix(errors=len(errors))
        self.errors = mark_corrected(errors, self.change_log.entries)
        if not self._validated:
            self._initial_errors = len(errors)
            self._validated = True
        logger.info(f"validation: {len(errors)} errors in {len(self.rows)} rows")
        return self.errors

    def _require_validated(self) -> None:
        if not self._validated:
            raise SessionError("validate() must run before corrections")

    def _accept(self, result: ApplyResult) -> ApplyResult:
        self.rows = result.rows
        self.errors = mark_corrected(self.errors, result.entries)
        return result

    def _load_memory(self) -> None:
        # 一度だけ読み込む (取り込んだルールファイルを上書きしない)
        if self._memory_loaded:
            return
        self._memory_loaded = True
        try:
            self.memory.load()
        except PersistenceError as e:
            logger.warning(f"correction memory unavailable, continuing without: {e}")

    def replay_memory(self) -> ApplyResult:
        """Load remembered rules and apply them (ai-auto).

        A store that cannot be read is reported and the session continues
        without remembered rules.
        """
        self._require_validated()
        self._load_memory()
        result = self.memory.apply(self.rows, label_for=self.label_for, change_log=self.change_log)
        if result.applied_count:
            logger.info(
                f"memory: {result.applied_count} corrections from {len(result.stats.rules_used)} rules"
            )
        return self._accept(result)

    def import_rules_file(self, path: Path) -> int:
        """Merge a rules file into the remembered rules (stored rules are loaded first)."""
        self._load_memory()
        return self.memory.import_file(path)

    def analyze(self) -> list[AnalysisPattern]:
        self._require_validated()
        self.patterns = self.worker.analyze(
            self.errors,
            self.rows,
            columns=self.registry.columns,
            format_rules=self.registry.format_rules,
            min_occurrences=self.config.analysis.min_occurrences,
        )
        self._pattern_count = max(self._pattern_count, len(self.patterns))
        for p in self.patterns:
            flag = "auto" if p.can_auto_fix else "manual"
            logger.info(f"pattern {p.type} [{flag}] {p.affected_column}: {p.count} rows")
        return self.patterns

    def apply_pattern(self, pattern: AnalysisPattern) -> ApplyResult:
        """Apply one fixable pattern (ai-bulk).

        Raises:
            PatternNotFixableError: pattern is not auto-fixable
            DeliveryError: the worker failed
        """
        self._require_validated()
        if not pattern.can_auto_fix:
            raise PatternNotFixableError(f"pattern '{pattern.type}' on {pattern.affected_column} is not auto-fixable")
        response = self.worker.wait(self.worker.submit_apply_pattern(pattern, self.rows, label_for=self.label_for))
        result: ApplyResult = response.payload
        self.change_log.extend(result.entries)
        return self._accept(result)

    def auto_fix(self) -> int:
        """Analyze and apply every auto-fixable pattern; returns the changed cell count."""
        total = 0
        for pattern in self.analyze():
            if pattern.can_auto_fix:
                total += self.apply_pattern(pattern).applied_count
        return total

    def correct(
        self, row: int, column: str, new_value: str, *, remember: bool = False, use_identifier: bool = True
    ) -> ChangeLogEntry | None:
        """Manual correction of one cell; optionally remembered as a rule.

        Returns None when the value is unchanged.
        """
        self._require_validated()
        if not 0 <= row < len(self.rows):
            raise SessionError(f"row {row + 1} out of range (1..{len(self.rows)})")
        if self.registry.column(column) is None and column not in self.rows[row]:
            raise SessionError(f"unknown column: {column}")
        original = cell_text(self.rows[row].get(column))
        if original == new_value:
            return None

        updated = dict(self.rows[row])
        updated[column] = new_value
        rows = list(self.rows)
        rows[row] = updated
        entry = ChangeLogEntry.create(
            ChangeType.MANUAL,
            row=row,
            column=column,
            original_value=original,
            new_value=new_value,
            record_label=self.label_for(updated),
        )
        self.change_log.append(entry)
        self.rows = rows
        self.errors = mark_corrected(self.errors, [entry])

        if remember:
            id_column = self.registry.identifier_column if use_identifier else None
            id_value = cell_text(updated.get(id_column)).strip() if id_column else ""
            self.memory.add(
                create_rule_from_correction(
                    column,
                    original,
                    new_value,
                    id_column if id_value else None,
                    id_value or None,
                    import_type=self.import_type,
                )
            )
        return entry

    def remember_changes(self, types: tuple[ChangeType, ...] = (ChangeType.MANUAL, ChangeType.AI_BULK)) -> int:
        """Turn logged corrections of the given types into exact rules."""
        added = 0
        for entry in self.change_log:
            if entry.type not in types:
                continue
            self.memory.add(
                create_rule_from_correction(
                    entry.column, entry.original_value, entry.new_value, import_type=self.import_type
                )
            )
            added += 1
        return added

    def save_memory(self) -> PersistReport:
        report = self.memory.persist()
        if report.failed:
            logger.error(f"{len(report.failed)} correction rules not saved; retry later")
        else:
            logger.info(f"saved {len(report.saved)} correction rules")
        return report

    # --- output ------------------------------------------------------------

    @property
    def remaining_errors(self) -> list[ValidationError]:
        return [e for e in self.errors if not e.is_corrected]

    def export(self, path: Path, options: ExportOptions | None = None) -> Path:
        opts = options or ExportOptions(delimiter=self.config.delimiter)
        frame = build_export_frame(self.rows, self.registry, self.errors, opts)
        return write_export(path, frame, delimiter=opts.delimiter)

    def finish(self, logs_dir: Path | None = None) -> tuple[SessionResult, SessionOutputs]:
        """Flush the error report and change log, and build the session result."""
        directory = logs_dir or self.config.logs_directory
        buffer = ErrorLogBuffer(self.source_file_name, logs_dir=directory)
        buffer.extend(self.errors)
        report_path = buffer.flush()
        change_log_path = None
        if len(self.change_log):
            change_log_path = self.change_log.flush(directory, self.source_file_name, self.registry.name)

        counts = self.change_log.summary().count_by_type
        end = datetime.now(UTC)
        result = SessionResult(
            total_rows=len(self.rows),
            total_errors=self._initial_errors,
            remaining_errors=len(self.remaining_errors),
            auto_applied=counts.get(ChangeType.AI_AUTO.value, 0),
            bulk_applied=counts.get(ChangeType.AI_BULK.value, 0),
            manual_applied=counts.get(ChangeType.MANUAL.value, 0),
            patterns=self._pattern_count,
            start_time=self._start,
            end_time=end,
            elapsed_seconds=(end - self._start).total_seconds(),
        )
        return result, SessionOutputs(error_report=report_path, change_log=change_log_path)
