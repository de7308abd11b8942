from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from .row_data import ImportRow, cell_text, is_empty

"""Rule registry models: column definitions, format rules and business rules.

These objects are configuration data. They are built once by the config
loader (school_import.config.loader) and stay immutable for the whole
validation run.
"""

__all__ = [
    "ValueType",
    "ColumnDefinition",
    "FormatRule",
    "BusinessRule",
    "FieldDependency",
    "DateRange",
    "IdentityGroup",
    "RuleRegistry",
]

DATE_FORMAT = "%d.%m.%Y"


class ValueType(Enum):
    """Expected value type of a column, each with a built-in format check."""
    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    AHV = "ahv"
    EMAIL = "email"
    PLZ = "plz"
    GENDER = "gender"
    PHONE = "phone"


@dataclass(frozen=True)
class ColumnDefinition:
    """Static definition of one import column.

    key is the source column name as found in the legacy export (S_AHV, P_ERZ1_Email ...),
    target is the header written to the cleaned export.
    """
    key: str
    required: bool = False
    expected_type: ValueType = ValueType.TEXT
    validation_pattern: str | None = None  # 任意の追加正規表現 (search)
    target: str | None = None
    category: str | None = None

    @property
    def export_header(self) -> str:
        return self.target or self.key


@dataclass(frozen=True)
class FormatRule:
    """Acceptable shape for the values of one or more columns.

    Exactly one of pattern / normalizer is set. A pattern rule uses regex search
    semantics, a normalizer rule accepts a value only if the named normalizer
    leaves it unchanged.
    """
    columns: tuple[str, ...]
    error_message: str
    pattern: str | None = None
    normalizer: str | None = None
    active: bool = True
    name: str | None = None

    def __post_init__(self) -> None:
        if (self.pattern is None) == (self.normalizer is None):
            raise ValueError("format rule needs exactly one of pattern / normalizer")

    def covers(self, column: str) -> bool:
        return column in self.columns


@dataclass(frozen=True)
class FieldDependency:
    """Predicate: if `if_set` has a value, every column in `then_required` must too."""
    if_set: str
    then_required: tuple[str, ...]

    def __call__(self, row: ImportRow) -> bool:
        if is_empty(row.get(self.if_set)):
            return True
        return all(not is_empty(row.get(c)) for c in self.then_required)


@dataclass(frozen=True)
class DateRange:
    """Predicate: start date must not lie after end date (both DD.MM.YYYY).

    Unparsable or missing dates are left to the per-column format checks.
    """
    start: str
    end: str

    def __call__(self, row: ImportRow) -> bool:
        try:
            start = datetime.strptime(cell_text(row.get(self.start)).strip(), DATE_FORMAT)
            end = datetime.strptime(cell_text(row.get(self.end)).strip(), DATE_FORMAT)
        except ValueError:
            return True
        return start <= end


@dataclass(frozen=True)
class BusinessRule:
    """Cross-column invariant evaluated against a full row.

    predicate returns True when the row satisfies the rule. Violations are
    reported on `column`.
    """
    name: str
    predicate: Callable[[ImportRow], bool]
    error_message: str
    column: str
    active: bool = True

    @classmethod
    def field_dependency(
        cls, name: str, if_set: str, then_required: list[str] | tuple[str, ...], error_message: str
    ) -> BusinessRule:
        required = tuple(then_required)
        if not required:
            raise ValueError(f"business rule '{name}' needs at least one dependent column")
        return cls(
            name=name,
            predicate=FieldDependency(if_set, required),
            error_message=error_message,
            column=required[0],
        )

    @classmethod
    def date_range(cls, name: str, start: str, end: str, error_message: str) -> BusinessRule:
        return cls(name=name, predicate=DateRange(start, end), error_message=error_message, column=end)


@dataclass(frozen=True)
class IdentityGroup:
    """One person slot in a row, e.g. parent 1: id column + name columns.

    All groups of a registry share one person index, so the same parent listed
    in slot 1 of one row and slot 2 of another is recognised as one person.
    """
    id_column: str
    key_columns: tuple[str, ...]


@dataclass(frozen=True)
class RuleRegistry:
    """Resolved rule set for one import type (schueler, journal, ...)."""
    import_type: str
    name: str
    columns: tuple[ColumnDefinition, ...]
    format_rules: tuple[FormatRule, ...] = ()
    business_rules: tuple[BusinessRule, ...] = ()
    unique_columns: tuple[str, ...] = ()
    identity_groups: tuple[IdentityGroup, ...] = ()
    identifier_column: str | None = None
    record_label_columns: tuple[str, ...] = field(default_factory=tuple)

    @property
    def column_keys(self) -> list[str]:
        return [c.key for c in self.columns]

    def column(self, key: str) -> ColumnDefinition | None:
        for c in self.columns:
            if c.key == key:
                return c
        return None

    def header_mapping(self) -> dict[str, str]:
        """Column key -> export header."""
        return {c.key: c.export_header for c in self.columns}
