from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

"""ChangeLogEntry model for the correction audit trail.

Entries are append-only: once added to a ChangeLog they are never changed or
removed. `row` is the 0-based row index (exports show it 1-based).
"""

__all__ = [
    "ChangeType",
    "ChangeLogEntry",
]


class ChangeType(Enum):
    MANUAL = "manual"  # 手動修正
    AI_BULK = "ai-bulk"  # パターン一括修正
    AI_AUTO = "ai-auto"  # 記憶済みルールの自動適用


@dataclass(frozen=True)
class ChangeLogEntry:
    timestamp: str  # ISO8601 UTC ("Z")
    type: ChangeType
    row: int
    column: str
    original_value: str
    new_value: str
    record_label: str | None = None

    @staticmethod
    def create(
        type: ChangeType,
        row: int,
        column: str,
        original_value: str,
        new_value: str,
        record_label: str | None = None,
    ) -> ChangeLogEntry:
        """Create a new entry stamped with the current UTC time."""
        ts = datetime.now(UTC).isoformat().replace("+00:00", "Z")
        return ChangeLogEntry(
            timestamp=ts,
            type=type,
            row=row,
            column=column,
            original_value=original_value,
            new_value=new_value,
            record_label=record_label,
        )
