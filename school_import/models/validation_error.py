from __future__ import annotations

import json
from dataclasses import dataclass, replace
from enum import Enum

"""ValidationError model.

A ValidationError is a content finding, never an exception: the validation
engine returns them as data. `corrected_value` stays None until a correction
(manual, bulk or replayed from memory) is accepted for the cell.

Serialized form for the JSON Lines error report:
    {"row", "column", "original_value", "kind", "message", "corrected_value", "suggested_value"}
"""

__all__ = [
    "ErrorKind",
    "ValidationError",
]


class ErrorKind(Enum):
    MISSING_REQUIRED = "missing-required"
    FORMAT_VIOLATION = "format-violation"
    BUSINESS_RULE_VIOLATION = "business-rule-violation"
    DUPLICATE = "duplicate"
    INCONSISTENT_ID = "inconsistent-id"


@dataclass(frozen=True)
class ValidationError:
    """One violated constraint for one cell.

    Attributes:
        row: 0-based index into the validated row list
        column: Column key
        original_value: Cell text as validated ("" for empty cells)
        kind: Error classification
        message: Human readable description (rule error message)
        corrected_value: Accepted correction, None while uncorrected
        suggested_value: Value proposed by the engine itself (inconsistent ids)
    """
    row: int
    column: str
    original_value: str
    kind: ErrorKind
    message: str
    corrected_value: str | None = None
    suggested_value: str | None = None

    @property
    def is_corrected(self) -> bool:
        return self.corrected_value is not None

    @property
    def row_number(self) -> int:
        """1-based row number for display."""
        return self.row + 1

    def with_correction(self, value: str) -> ValidationError:
        return replace(self, corrected_value=value)

    def to_dict(self) -> dict[str, object]:
        return {
            "row": self.row,
            "column": self.column,
            "original_value": self.original_value,
            "kind": self.kind.value,
            "message": self.message,
            "corrected_value": self.corrected_value,
            "suggested_value": self.suggested_value,
        }

    def to_json_line(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)
