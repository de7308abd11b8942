from __future__ import annotations

from dataclasses import dataclass

from .validation_error import ErrorKind

"""AnalysisPattern model (derived data, never persisted).

A pattern is recomputed whenever errors or rows change. When can_auto_fix is
True, `fixes` holds one proposed correction per affected row; otherwise it is
empty.
"""

__all__ = [
    "ProposedFix",
    "AnalysisPattern",
]


@dataclass(frozen=True)
class ProposedFix:
    row: int
    original_value: str
    corrected_value: str


@dataclass(frozen=True)
class AnalysisPattern:
    type: str  # ahv_format / phone_format / manual_review / duplicate ...
    affected_column: str
    affected_rows: tuple[int, ...]
    description: str
    can_auto_fix: bool
    error_kind: ErrorKind
    suggested_action: str | None = None
    fixes: tuple[ProposedFix, ...] = ()

    @property
    def count(self) -> int:
        return len(self.affected_rows)
