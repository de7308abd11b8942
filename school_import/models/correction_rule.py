from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any

"""CorrectionRule model.

A correction rule remembers one user approved fix:

- exact: applies to every row where `column == original_value`
- identifier: additionally requires `row[identifier_column] == identifier_value`
  (one uniquely identified record). Identifier rules are strictly narrower than
  exact rules on the same column/value and win over them.

Wire format (rule files / local store) uses the camelCase keys of the
original browser tool so rule files stay interchangeable:
    id, column, originalValue, correctedValue, matchType, identifierColumn,
    identifierValue, importType, createdAt, appliedCount
"""

__all__ = [
    "MatchMode",
    "CorrectionRule",
]


class MatchMode(Enum):
    EXACT = "exact"
    IDENTIFIER = "identifier"


def _utc_now() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


def _new_rule_id() -> str:
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:7]}"


@dataclass(frozen=True)
class CorrectionRule:
    id: str
    column: str
    match_mode: MatchMode
    original_value: str
    corrected_value: str
    import_type: str
    created_at: str
    identifier_column: str | None = None
    identifier_value: str | None = None
    applied_count: int = 0

    def __post_init__(self) -> None:
        has_identifier = bool(self.identifier_column) and self.identifier_value is not None
        if self.match_mode is MatchMode.IDENTIFIER and not has_identifier:
            raise ValueError("identifier rule requires identifier_column and identifier_value")
        if self.match_mode is MatchMode.EXACT and (self.identifier_column or self.identifier_value):
            raise ValueError("exact rule must not carry an identifier")

    @staticmethod
    def create(
        column: str,
        original_value: str,
        corrected_value: str,
        import_type: str,
        identifier_column: str | None = None,
        identifier_value: str | None = None,
    ) -> CorrectionRule:
        """Create a rule with a fresh id and UTC timestamp.

        An identifier rule is produced only when both identifier column and value
        are given, otherwise an exact rule.
        """
        if identifier_column and identifier_value:
            mode = MatchMode.IDENTIFIER
        else:
            mode = MatchMode.EXACT
            identifier_column = None
            identifier_value = None
        return CorrectionRule(
            id=_new_rule_id(),
            column=column,
            match_mode=mode,
            original_value=original_value,
            corrected_value=corrected_value,
            import_type=import_type,
            created_at=_utc_now(),
            identifier_column=identifier_column,
            identifier_value=identifier_value,
        )

    @property
    def identity(self) -> tuple[str, str, str, str | None, str | None]:
        """Key used for merge / de-duplication (last write wins)."""
        return (
            self.column,
            self.match_mode.value,
            self.original_value,
            self.identifier_column,
            self.identifier_value,
        )

    def with_applied(self, count: int) -> CorrectionRule:
        return replace(self, applied_count=self.applied_count + count)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "column": self.column,
            "originalValue": self.original_value,
            "correctedValue": self.corrected_value,
            "matchType": self.match_mode.value,
            "importType": self.import_type,
            "createdAt": self.created_at,
            "appliedCount": self.applied_count,
        }
        if self.match_mode is MatchMode.IDENTIFIER:
            data["identifierColumn"] = self.identifier_column
            data["identifierValue"] = self.identifier_value
        return data

    @staticmethod
    def from_dict(data: dict[str, Any]) -> CorrectionRule:
        """Inverse of to_dict. Raises ValueError / KeyError on malformed input."""
        return CorrectionRule(
            id=str(data["id"]),
            column=str(data["column"]),
            match_mode=MatchMode(data["matchType"]),
            original_value=str(data["originalValue"]),
            corrected_value=str(data["correctedValue"]),
            import_type=str(data["importType"]),
            created_at=str(data.get("createdAt") or _utc_now()),
            identifier_column=data.get("identifierColumn") or None,
            identifier_value=data.get("identifierValue"),
            applied_count=int(data.get("appliedCount", 0)),
        )
