from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

"""Aggregated result of one import session, used for the SUMMARY line."""

__all__ = [
    "SessionResult",
]


@dataclass(frozen=True)
class SessionResult:
    """Counters collected over one import session.

    remaining_errors counts errors still uncorrected after memory replay and
    bulk fixes; it decides the CLI exit code.
    """
    total_rows: int  # 読み込み行数
    total_errors: int  # 初回検証のエラー数
    remaining_errors: int  # 未修正エラー数
    auto_applied: int  # ai-auto (記憶ルール)
    bulk_applied: int  # ai-bulk (パターン一括)
    manual_applied: int  # manual
    patterns: int  # 検出パターン数
    start_time: datetime
    end_time: datetime
    elapsed_seconds: float

    @property
    def has_remaining_errors(self) -> bool:
        return self.remaining_errors > 0
