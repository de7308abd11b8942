from __future__ import annotations

import logging
import math
import re
import unicodedata
from collections.abc import Callable, Sequence

from ..models.change_log_entry import ChangeLogEntry
from ..models.row_data import ImportRow, cell_text
from ..models.rules import (
    BusinessRule,
    ColumnDefinition,
    FormatRule,
    IdentityGroup,
    RuleRegistry,
    ValueType,
)
from ..models.validation_error import ErrorKind, ValidationError
from .formatters import NORMALIZERS

logger = logging.getLogger(__name__)

"""Validation engine: applies a rule registry to imported rows.

Order of findings (deterministic for identical inputs):
1. per row, per ColumnDefinition in definition order
   - missing-required for empty required cells (no further checks on that cell)
   - expected-type check, column validation_pattern, then each active FormatRule
     covering the column; every violated check is its own format-violation
2. per row, every active BusinessRule against the full row
3. after the row pass: duplicate findings per unique column, then
   inconsistent-id findings per identity group slot

Content problems are returned as ValidationError data; nothing here raises
for bad cell values. Invalid regular expressions in rules are skipped with a
WARN log line.
"""

__all__ = [
    "validate",
    "validate_with_registry",
    "check_value_type",
    "make_cell_check",
    "mark_corrected",
    "TYPE_MESSAGES",
]

RowCallback = Callable[[int], None]

_PHONE_STRIP = re.compile(r"[\s\-().\/]")
_PHONE_PATTERNS = (
    re.compile(r"^\+\d{7,15}$"),  # E.164
    re.compile(r"^00\d{7,15}$"),  # 0041...
    re.compile(r"^0\d{8,10}$"),  # national
    re.compile(r"^\d{10,11}$"),
)
_DATE = re.compile(r"^\d{2}\.\d{2}\.\d{4}$")
_AHV = re.compile(r"^756\.\d{4}\.\d{4}\.\d{2}$")
_EMAIL = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PLZ = re.compile(r"^\d{4,5}$")
_GENDER_VALUES = {"M", "W", "D", "MÄNNLICH", "WEIBLICH", "DIVERS", "MALE", "FEMALE", "DIVERSE"}

TYPE_MESSAGES: dict[ValueType, str] = {
    ValueType.NUMBER: "Ungültige Zahl",
    ValueType.DATE: "Ungültiges Datumsformat (TT.MM.JJJJ erwartet)",
    ValueType.AHV: "Ungültiges AHV-Format (756.XXXX.XXXX.XX)",
    ValueType.EMAIL: "Ungültige E-Mail-Adresse",
    ValueType.PLZ: "Ungültige PLZ (4-5 Ziffern erwartet)",
    ValueType.GENDER: "Ungültiges Geschlecht (M, W oder D erwartet)",
    ValueType.PHONE: "Ungültiges Telefonformat",
}


def _is_number(value: str) -> bool:
    try:
        return math.isfinite(float(value))
    except ValueError:
        return False


def check_value_type(value: str, value_type: ValueType) -> bool:
    """Return True if a non-empty cell value passes the built-in type check."""
    if value_type is ValueType.TEXT:
        return True
    if value_type is ValueType.NUMBER:
        return _is_number(value)
    if value_type is ValueType.DATE:
        return bool(_DATE.match(value))
    if value_type is ValueType.AHV:
        return bool(_AHV.match(value))
    if value_type is ValueType.EMAIL:
        return bool(_EMAIL.match(value))
    if value_type is ValueType.PLZ:
        return bool(_PLZ.match(re.sub(r"\s", "", value)))
    if value_type is ValueType.GENDER:
        return value.strip().upper() in _GENDER_VALUES
    if value_type is ValueType.PHONE:
        cleaned = _PHONE_STRIP.sub("", value)
        return any(p.match(cleaned) for p in _PHONE_PATTERNS)
    raise ValueError(f"unhandled value type: {value_type}")


def _compile(pattern: str, owner: str) -> re.Pattern[str] | None:
    try:
        return re.compile(pattern)
    except re.error as e:
        logger.warning(f"invalid regex skipped ({owner}): {e}")
        return None


class _CompiledFormatRule:
    __slots__ = ("rule", "regex", "normalizer")

    def __init__(self, rule: FormatRule) -> None:
        self.rule = rule
        self.regex = _compile(rule.pattern, rule.name or rule.error_message) if rule.pattern is not None else None
        self.normalizer = NORMALIZERS.get(rule.normalizer) if rule.normalizer is not None else None
        if rule.normalizer is not None and self.normalizer is None:
            logger.warning(f"unknown normalizer skipped: {rule.normalizer}")

    @property
    def usable(self) -> bool:
        return self.regex is not None or self.normalizer is not None

    def conforms(self, value: str) -> bool:
        if self.regex is not None:
            return self.regex.search(value) is not None
        assert self.normalizer is not None
        return self.normalizer(value) == value


def _rules_by_column(
    columns: Sequence[ColumnDefinition], format_rules: Sequence[FormatRule]
) -> dict[str, list[_CompiledFormatRule]]:
    compiled = [_CompiledFormatRule(r) for r in format_rules if r.active]
    compiled = [c for c in compiled if c.usable]
    return {col.key: [c for c in compiled if c.rule.covers(col.key)] for col in columns}


def _check_cell(
    row_index: int,
    column: ColumnDefinition,
    value: str,
    column_pattern: re.Pattern[str] | None,
    rules: list[_CompiledFormatRule],
) -> list[ValidationError]:
    found: list[ValidationError] = []
    if value.strip() == "":
        if column.required:
            found.append(
                ValidationError(
                    row=row_index,
                    column=column.key,
                    original_value=value,
                    kind=ErrorKind.MISSING_REQUIRED,
                    message=f'Pflichtfeld "{column.key}" ist leer',
                )
            )
        return found

    def violation(message: str) -> ValidationError:
        return ValidationError(
            row=row_index,
            column=column.key,
            original_value=value,
            kind=ErrorKind.FORMAT_VIOLATION,
            message=message,
        )

    if not check_value_type(value, column.expected_type):
        found.append(violation(TYPE_MESSAGES[column.expected_type]))
    if column_pattern is not None and column_pattern.search(value) is None:
        found.append(violation(f'Wert entspricht nicht dem Muster von "{column.key}"'))
    for compiled in rules:
        if not compiled.conforms(value):
            found.append(violation(compiled.rule.error_message))
    return found


def make_cell_check(column: ColumnDefinition, format_rules: Sequence[FormatRule] = ()) -> Callable[[str], bool]:
    """Return a predicate that is True when a value passes every cell check of the column.

    Same checks as the row pass: required, expected type, column pattern and
    the active format rules covering the column.
    """
    rules = _rules_by_column([column], format_rules)[column.key]
    pattern = _compile(column.validation_pattern, column.key) if column.validation_pattern else None

    def passes(value: str) -> bool:
        return not _check_cell(0, column, value, pattern, rules)

    return passes


def _check_business_rules(
    row_index: int, row: ImportRow, business_rules: Sequence[BusinessRule]
) -> list[ValidationError]:
    found: list[ValidationError] = []
    for rule in business_rules:
        if not rule.active:
            continue
        message = rule.error_message
        try:
            ok = bool(rule.predicate(row))
        except Exception as e:
            # 述語の例外は内容エラー扱い (呼び出し元へは投げない)
            logger.debug(f"business rule '{rule.name}' raised on row {row_index + 1}: {e}")
            ok = False
            message = f"{rule.error_message} ({e})"
        if not ok:
            found.append(
                ValidationError(
                    row=row_index,
                    column=rule.column,
                    original_value=cell_text(row.get(rule.column)),
                    kind=ErrorKind.BUSINESS_RULE_VIOLATION,
                    message=message,
                )
            )
    return found


def _find_duplicates(rows: Sequence[ImportRow], unique_columns: Sequence[str]) -> list[ValidationError]:
    found: list[ValidationError] = []
    for column in unique_columns:
        first_seen: dict[str, int] = {}
        for i, row in enumerate(rows):
            value = cell_text(row.get(column)).strip()
            if not value:
                continue
            if value in first_seen:
                found.append(
                    ValidationError(
                        row=i,
                        column=column,
                        original_value=value,
                        kind=ErrorKind.DUPLICATE,
                        message=f'Duplikat: "{value}" kommt auch in Zeile {first_seen[value] + 1} vor',
                    )
                )
            else:
                first_seen[value] = i
    return found


def _fold(value: str) -> str:
    """Case and diacritic insensitive comparison key (Juhász == juhasz)."""
    decomposed = unicodedata.normalize("NFD", value)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(stripped.casefold().split())


def _find_inconsistent_ids(
    rows: Sequence[ImportRow], identity_groups: Sequence[IdentityGroup]
) -> list[ValidationError]:
    """Same person (folded key columns) listed with different ids.

    One person index is shared by all groups, so a parent in slot 1 of one
    row and slot 2 of another row is matched too.
    """
    found: list[ValidationError] = []
    first_id: dict[str, tuple[str, int]] = {}
    for i, row in enumerate(rows):
        for group in identity_groups:
            id_value = cell_text(row.get(group.id_column)).strip()
            parts = [_fold(cell_text(row.get(c))) for c in group.key_columns]
            if not id_value or not all(parts):
                continue
            key = "|".join(parts)
            if key not in first_id:
                first_id[key] = (id_value, i)
                continue
            known_id, known_row = first_id[key]
            if id_value != known_id:
                label = " ".join(cell_text(row.get(c)).strip() for c in group.key_columns)
                found.append(
                    ValidationError(
                        row=i,
                        column=group.id_column,
                        original_value=id_value,
                        kind=ErrorKind.INCONSISTENT_ID,
                        message=(
                            f"Inkonsistente ID: {label} hat in Zeile {known_row + 1} "
                            f"die ID '{known_id}'"
                        ),
                        suggested_value=known_id,
                    )
                )
    return found


def validate(
    rows: Sequence[ImportRow],
    columns: Sequence[ColumnDefinition],
    format_rules: Sequence[FormatRule] = (),
    business_rules: Sequence[BusinessRule] = (),
    *,
    unique_columns: Sequence[str] = (),
    identity_groups: Sequence[IdentityGroup] = (),
    on_row: RowCallback | None = None,
) -> list[ValidationError]:
    """Validate rows and return every violated constraint as a ValidationError.

    Args:
        rows: Row snapshot; never modified
        columns: Column definitions, checked in order
        format_rules: Shape rules; inactive ones are ignored
        business_rules: Cross-column predicates evaluated per row
        unique_columns: Columns whose non-empty values must not repeat
        identity_groups: Person slots checked for consistent ids
        on_row: Progress callback, called with 1 after each validated row

    Returns:
        Findings in deterministic order (see module docstring)
    """
    per_column = _rules_by_column(columns, format_rules)
    column_patterns = {
        c.key: _compile(c.validation_pattern, c.key) if c.validation_pattern else None for c in columns
    }

    errors: list[ValidationError] = []
    for i, row in enumerate(rows):
        for column in columns:
            value = cell_text(row.get(column.key))
            errors.extend(_check_cell(i, column, value, column_patterns[column.key], per_column[column.key]))
        errors.extend(_check_business_rules(i, row, business_rules))
        if on_row is not None:
            on_row(1)

    errors.extend(_find_duplicates(rows, unique_columns))
    errors.extend(_find_inconsistent_ids(rows, identity_groups))
    logger.debug(f"validated rows={len(rows)} errors={len(errors)}")
    return errors


def validate_with_registry(
    rows: Sequence[ImportRow], registry: RuleRegistry, *, on_row: RowCallback | None = None
) -> list[ValidationError]:
    return validate(
        rows,
        registry.columns,
        registry.format_rules,
        registry.business_rules,
        unique_columns=registry.unique_columns,
        identity_groups=registry.identity_groups,
        on_row=on_row,
    )


def mark_corrected(
    errors: Sequence[ValidationError], entries: Sequence[ChangeLogEntry]
) -> list[ValidationError]:
    """Return a new error list with corrected_value set for every changed cell.

    The last entry for a (row, column) wins. Already corrected errors are
    updated as well, so a later manual correction overrides an earlier bulk fix.
    An error found on the value a correction wrote (re-validation) stays open.
    """
    latest: dict[tuple[int, str], str] = {}
    for entry in entries:
        latest[(entry.row, entry.column)] = entry.new_value
    if not latest:
        return list(errors)
    return [
        e.with_correction(latest[(e.row, e.column)])
        if (e.row, e.column) in latest and latest[(e.row, e.column)] != e.original_value
        else e
        for e in errors
    ]
