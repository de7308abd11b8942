from __future__ import annotations

from dataclasses import dataclass, field

from .change_log_entry import ChangeLogEntry
from .row_data import ImportRow

"""Result of applying corrections (remembered rules or a bulk pattern) to rows."""

__all__ = [
    "CorrectionStats",
    "ApplyResult",
]


@dataclass(frozen=True)
class CorrectionStats:
    total_applied: int
    by_column: dict[str, int] = field(default_factory=dict)
    rules_used: tuple[str, ...] = ()  # CorrectionRule.id (パターン適用時は空)
    by_rule: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class ApplyResult:
    """New row collection plus one ChangeLogEntry per changed cell.

    `rows` is a new list; unchanged rows are shared with the input, changed
    rows are fresh dict copies. The input collection is never modified.
    """
    rows: list[ImportRow]
    applied_count: int
    entries: tuple[ChangeLogEntry, ...]
    stats: CorrectionStats
