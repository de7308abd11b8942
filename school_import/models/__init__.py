"""Domain models for the school spreadsheet import tool.

Rule registry, validation findings, analysis patterns, correction rules and
change log entries. All models are immutable dataclasses.
"""

from .analysis_pattern import AnalysisPattern, ProposedFix
from .apply_result import ApplyResult, CorrectionStats
from .change_log_entry import ChangeLogEntry, ChangeType
from .correction_rule import CorrectionRule, MatchMode
from .row_data import ImportRow, cell_text, is_empty, record_label
from .rules import (
    BusinessRule,
    ColumnDefinition,
    FormatRule,
    IdentityGroup,
    RuleRegistry,
    ValueType,
)
from .session_result import SessionResult
from .validation_error import ErrorKind, ValidationError

__all__ = [
    # Rule registry
    "ValueType",
    "ColumnDefinition",
    "FormatRule",
    "BusinessRule",
    "IdentityGroup",
    "RuleRegistry",
    # Row data
    "ImportRow",
    "cell_text",
    "is_empty",
    "record_label",
    # Findings & corrections
    "ErrorKind",
    "ValidationError",
    "AnalysisPattern",
    "ProposedFix",
    "MatchMode",
    "CorrectionRule",
    "ChangeType",
    "ChangeLogEntry",
    "ApplyResult",
    "CorrectionStats",
    "SessionResult",
]
