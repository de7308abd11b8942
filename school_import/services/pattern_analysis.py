from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING

from ..models.analysis_pattern import AnalysisPattern, ProposedFix
from ..models.apply_result import ApplyResult, CorrectionStats
from ..models.change_log_entry import ChangeLogEntry, ChangeType
from ..models.row_data import ImportRow, cell_text
from ..models.rules import ColumnDefinition, FormatRule, ValueType
from ..models.validation_error import ErrorKind, ValidationError
from .formatters import NORMALIZERS
from .validation import make_cell_check

if TYPE_CHECKING:
    from ..logging.change_log import ChangeLog

logger = logging.getLogger(__name__)

"""Pattern analyzer: finds systematic errors and proposes bulk corrections.

Grouping: uncorrected errors by (column, kind), in order of first appearance.
A group with fewer affected rows than `min_occurrences` yields no pattern.

Auto-fix is conservative: a format group is fixable only if ONE normalizer
produces a changed value for EVERY affected row and every produced value
passes the column checks (type, column pattern, format rules). Otherwise the
whole pattern is reported with can_auto_fix=False and no fixes, never a
partial fix.

The result is pure derived data; identical inputs give identical patterns.
"""

__all__ = [
    "DEFAULT_MIN_OCCURRENCES",
    "PatternNotFixableError",
    "analyze",
    "apply_pattern",
    "candidate_normalizers",
]

DEFAULT_MIN_OCCURRENCES = 2
MANUAL_REVIEW = "manual_review"
DUPLICATE = "duplicate"
ID_CONSOLIDATION = "id_consolidation"

LabelFn = Callable[[ImportRow], str | None]

_TYPE_NORMALIZERS: dict[ValueType, tuple[str, ...]] = {
    ValueType.AHV: ("ahv_format",),
    ValueType.PHONE: ("phone_format",),
    ValueType.EMAIL: ("email_format",),
    ValueType.PLZ: ("plz_format",),
    ValueType.GENDER: ("gender_format",),
    ValueType.DATE: ("date_format", "date_de_format"),
}

# 列名キーワード -> 候補 (上から順に評価)
_KEYWORD_NORMALIZERS: tuple[tuple[tuple[str, ...], tuple[str, ...]], ...] = (
    (("ahv",), ("ahv_format",)),
    (("tel", "phone", "mobil", "fax"), ("phone_format",)),
    (("mail",), ("email_format",)),
    (("plz", "zip", "postleitzahl"), ("plz_format",)),
    (("geschlecht", "gender", "sex"), ("gender_format",)),
    (("iban", "konto"), ("iban_format",)),
    (("datum", "date", "geburt"), ("date_format", "date_de_format")),
    (("name",), ("name_format",)),
    (("strasse", "street", "adresse", "address"), ("street_format",)),
    (("postfach", "pobox"), ("postfach_format",)),
)

_DESCRIPTIONS: dict[str, str] = {
    "ahv_format": "{n} AHV-Nummern können automatisch formatiert werden (756.XXXX.XXXX.XX)",
    "phone_format": "{n} Telefonnummern können automatisch formatiert werden (+41 XX XXX XX XX)",
    "email_format": "{n} E-Mail-Adressen können bereinigt werden (Tippfehler, Leerzeichen, Umlaute)",
    "plz_format": "{n} PLZ können formatiert werden",
    "gender_format": "{n} Geschlechtsangaben können normalisiert werden (M/W/D)",
    "name_format": "{n} Namen können korrekt kapitalisiert werden",
    "street_format": "{n} Adressen können korrekt formatiert werden",
    "postfach_format": "{n} Postfach-Angaben können vereinheitlicht werden (Postfach XXX)",
    "iban_format": "{n} IBAN können formatiert werden",
    "date_format": "{n} Excel-Seriennummern können in Datum konvertiert werden",
    "date_de_format": "{n} Datumsangaben im falschen Format (Bindestriche/ISO) → DD.MM.YYYY",
    "whitespace_trim": '{n} Einträge in "{column}" haben führende/nachfolgende Leerzeichen oder Doppelleerzeichen',
}

_ACTIONS: dict[str, str] = {
    "ahv_format": "Format: 756.XXXX.XXXX.XX",
    "phone_format": "Format: +41 XX XXX XX XX",
    "email_format": "Normalisieren & Tippfehler korrigieren",
    "plz_format": "Format: XXXX",
    "gender_format": "Normalisieren zu M/W/D",
    "name_format": "Grossschreibung korrigieren",
    "street_format": "Strassen-Format korrigieren",
    "postfach_format": "Format: Postfach XXX",
    "iban_format": "Format: CHXX XXXX XXXX XXXX XXXX X",
    "date_format": "Format: DD.MM.YYYY",
    "date_de_format": "Format: DD.MM.YYYY",
    "whitespace_trim": "Leerzeichen bereinigen",
}


class PatternNotFixableError(Exception):
    """Raised when applying a pattern that is not declared auto-fixable."""


def candidate_normalizers(column: str, definition: ColumnDefinition | None = None) -> list[str]:
    """Normalizer names to try for a column, most specific first.

    The column's expected type decides when it has one; otherwise the column
    name is matched against keywords. whitespace_trim is always tried last.
    """
    names: list[str] = []
    if definition is not None and definition.expected_type in _TYPE_NORMALIZERS:
        names.extend(_TYPE_NORMALIZERS[definition.expected_type])
    else:
        lowered = column.lower()
        for keywords, normalizers in _KEYWORD_NORMALIZERS:
            if any(k in lowered for k in keywords):
                names.extend(n for n in normalizers if n not in names)
    names.append("whitespace_trim")
    return names


def _group_errors(errors: Sequence[ValidationError]) -> dict[tuple[str, ErrorKind], list[ValidationError]]:
    groups: dict[tuple[str, ErrorKind], list[ValidationError]] = {}
    for e in errors:
        if e.is_corrected:
            continue
        groups.setdefault((e.column, e.kind), []).append(e)
    return groups


def _unique_rows(group: Sequence[ValidationError]) -> list[int]:
    seen: dict[int, None] = {}
    for e in group:
        seen.setdefault(e.row, None)
    return list(seen)


def _current_value(rows: Sequence[ImportRow], row: int, column: str, fallback: str) -> str:
    if 0 <= row < len(rows):
        return cell_text(rows[row].get(column))
    return fallback


def _manual(column: str, affected: list[int], kind: ErrorKind) -> AnalysisPattern:
    return AnalysisPattern(
        type=MANUAL_REVIEW,
        affected_column=column,
        affected_rows=tuple(affected),
        description=f'{len(affected)} Einträge in "{column}" erfordern manuelle Überprüfung',
        can_auto_fix=False,
        error_kind=kind,
    )


def _format_pattern(
    column: str,
    group: list[ValidationError],
    rows: Sequence[ImportRow],
    definition: ColumnDefinition | None,
    format_rules: Sequence[FormatRule],
) -> AnalysisPattern:
    affected = _unique_rows(group)
    originals = {e.row: e.original_value for e in group}
    values = {r: _current_value(rows, r, column, originals[r]) for r in affected}
    passes = make_cell_check(definition or ColumnDefinition(column), format_rules)

    best_name: str | None = None
    best_fixes: list[ProposedFix] = []
    for name in candidate_normalizers(column, definition):
        normalizer = NORMALIZERS[name]
        fixes = []
        for r in affected:
            fixed = normalizer(values[r])
            if fixed is not None and fixed != values[r]:
                fixes.append(ProposedFix(row=r, original_value=values[r], corrected_value=fixed))
        if len(fixes) != len(affected):
            logger.debug(f"pattern {name} on {column} covers {len(fixes)}/{len(affected)} rows")
            continue
        # 修正後の値も検証を通ること
        if not all(passes(f.corrected_value) for f in fixes):
            logger.debug(f"pattern {name} on {column} leaves invalid values")
            continue
        best_name, best_fixes = name, fixes
        break

    if best_name is None:
        return _manual(column, affected, ErrorKind.FORMAT_VIOLATION)

    return AnalysisPattern(
        type=best_name,
        affected_column=column,
        affected_rows=tuple(affected),
        description=_DESCRIPTIONS[best_name].format(n=len(affected), column=column),
        can_auto_fix=True,
        error_kind=ErrorKind.FORMAT_VIOLATION,
        suggested_action=_ACTIONS[best_name],
        fixes=tuple(best_fixes),
    )


def _id_pattern(column: str, group: list[ValidationError]) -> AnalysisPattern:
    affected = _unique_rows(group)
    targets: dict[str, set[str | None]] = {}
    for e in group:
        targets.setdefault(e.original_value, set()).add(e.suggested_value)
    fixable = all(len(t) == 1 and None not in t for t in targets.values())
    if not fixable:
        return _manual(column, affected, ErrorKind.INCONSISTENT_ID)

    fixes: list[ProposedFix] = []
    for r in affected:
        e = next(x for x in group if x.row == r)
        assert e.suggested_value is not None
        fixes.append(ProposedFix(row=r, original_value=e.original_value, corrected_value=e.suggested_value))
    suggested = sorted({f.corrected_value for f in fixes})
    return AnalysisPattern(
        type=ID_CONSOLIDATION,
        affected_column=column,
        affected_rows=tuple(affected),
        description=f"{len(affected)} inkonsistente IDs - Kann auf {', '.join(suggested)} konsolidiert werden",
        can_auto_fix=True,
        error_kind=ErrorKind.INCONSISTENT_ID,
        suggested_action="IDs vereinheitlichen",
        fixes=tuple(fixes),
    )


def analyze(
    errors: Sequence[ValidationError],
    rows: Sequence[ImportRow],
    *,
    columns: Sequence[ColumnDefinition] | None = None,
    format_rules: Sequence[FormatRule] = (),
    min_occurrences: int = DEFAULT_MIN_OCCURRENCES,
) -> list[AnalysisPattern]:
    """Group uncorrected errors into patterns and decide auto-fixability.

    Args:
        errors: Findings from the validation engine
        rows: The row snapshot the errors refer to (current values are used)
        columns: Column definitions; enables type based normalizer choice
        format_rules: Format rules every proposed value must satisfy
        min_occurrences: Minimum number of affected rows per pattern

    Returns:
        Patterns in order of first appearance of their (column, kind) group
    """
    definitions = {c.key: c for c in columns} if columns else {}
    patterns: list[AnalysisPattern] = []
    for (column, kind), group in _group_errors(errors).items():
        affected = _unique_rows(group)
        if len(affected) < min_occurrences:
            continue
        if kind is ErrorKind.FORMAT_VIOLATION:
            patterns.append(_format_pattern(column, group, rows, definitions.get(column), format_rules))
        elif kind is ErrorKind.INCONSISTENT_ID:
            patterns.append(_id_pattern(column, group))
        elif kind is ErrorKind.DUPLICATE:
            patterns.append(
                AnalysisPattern(
                    type=DUPLICATE,
                    affected_column=column,
                    affected_rows=tuple(affected),
                    description=f'{len(affected)} Duplikate in "{column}" - Manuelle Prüfung erforderlich',
                    can_auto_fix=False,
                    error_kind=kind,
                    suggested_action="Manuell prüfen und entscheiden",
                )
            )
        else:
            patterns.append(_manual(column, affected, kind))
    return patterns


def apply_pattern(
    pattern: AnalysisPattern,
    rows: Sequence[ImportRow],
    *,
    change_log: ChangeLog | None = None,
    label_for: LabelFn | None = None,
) -> ApplyResult:
    """Apply an auto-fixable pattern's proposed fixes to a copy of rows.

    Cells whose current value no longer equals the fix's original value
    (changed since analysis) are skipped. One ai-bulk ChangeLogEntry is
    produced per changed cell and appended to `change_log` when given.

    Raises:
        PatternNotFixableError: pattern.can_auto_fix is False
    """
    if not pattern.can_auto_fix:
        raise PatternNotFixableError(
            f"pattern '{pattern.type}' on {pattern.affected_column} is not auto-fixable"
        )

    column = pattern.affected_column
    new_rows: list[ImportRow] = list(rows)
    entries: list[ChangeLogEntry] = []
    for fix in pattern.fixes:
        if not 0 <= fix.row < len(new_rows):
            logger.debug(f"fix skipped, row out of range: {fix.row}")
            continue
        current = cell_text(new_rows[fix.row].get(column))
        if current != fix.original_value:
            logger.debug(f"fix skipped, row {fix.row + 1} changed since analysis")
            continue
        updated = dict(new_rows[fix.row])
        updated[column] = fix.corrected_value
        new_rows[fix.row] = updated
        entry = ChangeLogEntry.create(
            ChangeType.AI_BULK,
            row=fix.row,
            column=column,
            original_value=current,
            new_value=fix.corrected_value,
            record_label=label_for(updated) if label_for is not None else None,
        )
        entries.append(entry)
        if change_log is not None:
            change_log.append(entry)

    logger.info(f"pattern {pattern.type} applied on {column}: {len(entries)}/{pattern.count} cells")
    return ApplyResult(
        rows=new_rows,
        applied_count=len(entries),
        entries=tuple(entries),
        stats=CorrectionStats(total_applied=len(entries), by_column={column: len(entries)} if entries else {}),
    )
