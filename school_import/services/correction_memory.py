from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, date, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import jsonschema
from jsonschema.exceptions import ValidationError as SchemaValidationError

from ..models.apply_result import ApplyResult, CorrectionStats
from ..models.change_log_entry import ChangeLogEntry, ChangeType
from ..models.correction_rule import CorrectionRule, MatchMode
from ..models.row_data import ImportRow, cell_text
from .storage import KeyValueStore, PersistenceError

if TYPE_CHECKING:
    from ..logging.change_log import ChangeLog

logger = logging.getLogger(__name__)

"""Correction memory: remembered user approved fixes, replayed on later imports.

Rule matching:
- identifier rules (column + original value + identifier column/value) are
  checked before exact rules (column + original value); within each kind the
  first rule in list order wins.
- a cell is matched on its input value only; corrections never cascade
  (A->B and B->C applied to "A" gives "B").

Merge policy for imported rule files: incoming rules are appended, a rule
with the same identity (column, match mode, original value, identifier
column, identifier value) as an existing one replaces it in place
(last write wins).

Local store layout: one JSON array of rules per import type under the key
`pupil-wizard-corrections-<import_type>`.
"""

__all__ = [
    "STORAGE_KEY_PREFIX",
    "FILE_VERSION",
    "RULES_SCHEMA_PATH",
    "CorrectionFileError",
    "ConfirmationRequiredError",
    "PersistReport",
    "CorrectionMemory",
    "create_rule_from_correction",
    "find_applicable_rule",
    "apply_rules",
    "merge_rules",
    "build_rules_document",
    "parse_rules_document",
    "write_rules_file",
    "read_rules_file",
    "default_rules_file_name",
]

STORAGE_KEY_PREFIX = "pupil-wizard-corrections-"
FILE_VERSION = "1.0"
RULES_SCHEMA_PATH = Path(__file__).parent.parent / "config" / "correction_rules_schema.json"

LabelFn = Callable[[ImportRow], str | None]


class CorrectionFileError(Exception):
    """Rule file unreadable, malformed or meant for another import type."""


class ConfirmationRequiredError(Exception):
    """Destructive operation attempted without explicit confirmation."""


@dataclass(frozen=True)
class PersistReport:
    saved: tuple[str, ...]  # rule ids
    failed: tuple[tuple[str, str], ...]  # (rule id, reason)

    @property
    def ok(self) -> bool:
        return not self.failed


def create_rule_from_correction(
    column: str,
    original_value: str,
    corrected_value: str,
    identifier_column: str | None = None,
    identifier_value: str | None = None,
    *,
    import_type: str,
) -> CorrectionRule:
    """Turn one accepted correction into a rule.

    With both identifier column and value an identifier rule is produced,
    otherwise an exact rule.
    """
    return CorrectionRule.create(
        column=column,
        original_value=original_value,
        corrected_value=corrected_value,
        import_type=import_type,
        identifier_column=identifier_column,
        identifier_value=identifier_value,
    )


def find_applicable_rule(
    rules: Sequence[CorrectionRule], row: ImportRow, column: str
) -> CorrectionRule | None:
    value = cell_text(row.get(column))
    candidates = [r for r in rules if r.column == column and r.original_value == value]
    for rule in candidates:
        if rule.match_mode is MatchMode.IDENTIFIER:
            assert rule.identifier_column is not None
            if cell_text(row.get(rule.identifier_column)) == rule.identifier_value:
                return rule
    for rule in candidates:
        if rule.match_mode is MatchMode.EXACT:
            return rule
    return None


def apply_rules(
    rules: Sequence[CorrectionRule],
    rows: Sequence[ImportRow],
    *,
    change_type: ChangeType = ChangeType.AI_AUTO,
    label_for: LabelFn | None = None,
    change_log: ChangeLog | None = None,
) -> ApplyResult:
    """Replay rules against rows without modifying the input.

    Every replaced cell yields one ChangeLogEntry of `change_type`
    (appended to `change_log` when given).
    """
    columns = list(dict.fromkeys(r.column for r in rules))
    new_rows: list[ImportRow] = list(rows)
    entries: list[ChangeLogEntry] = []
    by_column: dict[str, int] = {}
    by_rule: dict[str, int] = {}

    for i, row in enumerate(rows):
        updated: dict[str, Any] | None = None
        for column in columns:
            rule = find_applicable_rule(rules, row, column)
            if rule is None or rule.corrected_value == rule.original_value:
                continue
            if updated is None:
                updated = dict(row)
            updated[column] = rule.corrected_value
            entries.append(
                ChangeLogEntry.create(
                    change_type,
                    row=i,
                    column=column,
                    original_value=rule.original_value,
                    new_value=rule.corrected_value,
                )
            )
            by_column[column] = by_column.get(column, 0) + 1
            by_rule[rule.id] = by_rule.get(rule.id, 0) + 1
        if updated is not None:
            new_rows[i] = updated

    if label_for is not None:
        # ラベルは修正後の行から作る
        entries = [
            ChangeLogEntry(
                timestamp=e.timestamp,
                type=e.type,
                row=e.row,
                column=e.column,
                original_value=e.original_value,
                new_value=e.new_value,
                record_label=label_for(new_rows[e.row]),
            )
            for e in entries
        ]
    if change_log is not None:
        change_log.extend(entries)

    stats = CorrectionStats(
        total_applied=len(entries),
        by_column=by_column,
        rules_used=tuple(by_rule),
        by_rule=by_rule,
    )
    return ApplyResult(rows=new_rows, applied_count=len(entries), entries=tuple(entries), stats=stats)


def merge_rules(existing: Iterable[CorrectionRule], incoming: Iterable[CorrectionRule]) -> list[CorrectionRule]:
    merged = list(existing)
    position = {r.identity: i for i, r in enumerate(merged)}
    for rule in incoming:
        pos = position.get(rule.identity)
        if pos is None:
            position[rule.identity] = len(merged)
            merged.append(rule)
        else:
            merged[pos] = rule
    return merged


def default_rules_file_name(import_type: str, today: date | None = None) -> str:
    day = (today or datetime.now(UTC).date()).isoformat()
    return f"korrektur-regeln_{import_type}_{day}.json"


def build_rules_document(
    rules: Sequence[CorrectionRule], import_type: str, source_file_name: str | None = None
) -> dict[str, Any]:
    return {
        "version": FILE_VERSION,
        "exportedAt": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "exportedFrom": source_file_name or "unknown",
        "importType": import_type,
        "rules": [r.to_dict() for r in rules],
    }


def _load_rules_schema() -> dict[str, Any]:
    try:
        return json.loads(RULES_SCHEMA_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:  # pragma: no cover (packaging error)
        raise CorrectionFileError(f"invalid schema file: {e}") from e


def parse_rules_document(document: Any, import_type: str) -> list[CorrectionRule]:
    """Validate a decoded rules document and return its rules.

    Raises:
        CorrectionFileError: schema violation or import type mismatch
    """
    try:
        jsonschema.validate(document, _load_rules_schema())
    except SchemaValidationError as e:
        raise CorrectionFileError(f"invalid rules file: {e.message}") from e
    if document["importType"] != import_type:
        raise CorrectionFileError(
            f"rules file is for import type '{document['importType']}', expected '{import_type}'"
        )
    try:
        return [CorrectionRule.from_dict({"importType": import_type, **raw}) for raw in document["rules"]]
    except (KeyError, ValueError) as e:
        raise CorrectionFileError(f"invalid rule in file: {e}") from e


def write_rules_file(
    path: Path, rules: Sequence[CorrectionRule], import_type: str, source_file_name: str | None = None
) -> Path:
    document = build_rules_document(rules, import_type, source_file_name)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(document, ensure_ascii=False, indent=2), encoding="utf-8")
    except OSError as e:
        raise CorrectionFileError(f"cannot write rules file {path}: {e}") from e
    return path


def read_rules_file(path: Path, import_type: str) -> list[CorrectionRule]:
    if not path.exists():
        raise CorrectionFileError(f"rules file not found: {path}")
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as e:
        raise CorrectionFileError(f"cannot read rules file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise CorrectionFileError(f"invalid json in rules file {path}: {e}") from e
    return parse_rules_document(document, import_type)


class CorrectionMemory:
    """Rule set of one import type, backed by an injected KeyValueStore.

    The in-memory rule list is the working copy; load() and persist() move it
    from/to the store explicitly.
    """

    def __init__(self, store: KeyValueStore, import_type: str) -> None:
        self.store = store
        self.import_type = import_type
        self._rules: list[CorrectionRule] = []

    @property
    def storage_key(self) -> str:
        return f"{STORAGE_KEY_PREFIX}{self.import_type}"

    @property
    def rules(self) -> tuple[CorrectionRule, ...]:
        return tuple(self._rules)

    def __len__(self) -> int:
        return len(self._rules)

    def _read_stored(self) -> list[CorrectionRule]:
        raw = self.store.get(self.storage_key)
        if raw is None:
            return []
        try:
            data = json.loads(raw)
            return [CorrectionRule.from_dict({"importType": self.import_type, **d}) for d in data]
        except (json.JSONDecodeError, TypeError, KeyError, ValueError) as e:
            raise PersistenceError(f"stored rules unreadable ({self.storage_key}): {e}") from e

    def load(self) -> list[CorrectionRule]:
        """Replace the working copy with the stored rules.

        Raises:
            PersistenceError: store unavailable or content unreadable
        """
        self._rules = self._read_stored()
        logger.info(f"loaded {len(self._rules)} correction rules for {self.import_type}")
        return list(self._rules)

    def stored_count(self) -> int:
        """Number of rules in the store; 0 when the store cannot be read."""
        try:
            return len(self._read_stored())
        except PersistenceError as e:
            logger.warning(f"correction store: {e}")
            return 0

    def add(self, rule: CorrectionRule) -> None:
        self._rules = merge_rules(self._rules, [rule])

    def remove(self, rule_id: str) -> bool:
        before = len(self._rules)
        self._rules = [r for r in self._rules if r.id != rule_id]
        return len(self._rules) != before

    def merge(self, incoming: Iterable[CorrectionRule]) -> int:
        """Merge rules into the working copy; returns the resulting rule count."""
        self._rules = merge_rules(self._rules, incoming)
        return len(self._rules)

    def record_usage(self, stats: CorrectionStats) -> None:
        """Increase applied_count of the rules used in an apply run."""
        if not stats.by_rule:
            return
        self._rules = [
            r.with_applied(stats.by_rule[r.id]) if r.id in stats.by_rule else r for r in self._rules
        ]

    def apply(
        self,
        rows: Sequence[ImportRow],
        *,
        label_for: LabelFn | None = None,
        change_log: ChangeLog | None = None,
    ) -> ApplyResult:
        result = apply_rules(self._rules, rows, label_for=label_for, change_log=change_log)
        self.record_usage(result.stats)
        return result

    def persist(self) -> PersistReport:
        """Save the working copy, best effort per rule.

        The whole set is written at once; if the store rejects that write,
        rules are added one at a time so a single failing rule (e.g. store
        full) does not block the others.
        """
        payloads: list[tuple[CorrectionRule, dict[str, Any]]] = []
        failed: list[tuple[str, str]] = []
        for rule in self._rules:
            try:
                d = rule.to_dict()
                json.dumps(d, ensure_ascii=False)
                payloads.append((rule, d))
            except (TypeError, ValueError) as e:
                failed.append((rule.id, f"not serializable: {e}"))

        try:
            self.store.set(self.storage_key, json.dumps([d for _, d in payloads], ensure_ascii=False))
            saved = tuple(r.id for r, _ in payloads)
        except PersistenceError as e:
            logger.warning(f"bulk save failed, retrying per rule: {e}")
            kept: list[dict[str, Any]] = []
            saved_ids: list[str] = []
            for rule, d in payloads:
                try:
                    self.store.set(self.storage_key, json.dumps(kept + [d], ensure_ascii=False))
                except PersistenceError as item_error:
                    failed.append((rule.id, str(item_error)))
                    continue
                kept.append(d)
                saved_ids.append(rule.id)
            saved = tuple(saved_ids)

        for rule_id, reason in failed:
            logger.warning(f"rule not saved id={rule_id}: {reason}")
        return PersistReport(saved=saved, failed=tuple(failed))

    def clear(self, *, confirm: bool = False) -> None:
        """Remove every stored rule of this import type. Not reversible.

        Raises:
            ConfirmationRequiredError: confirm is not exactly True
        """
        if confirm is not True:
            raise ConfirmationRequiredError(
                f"clearing stored correction rules for '{self.import_type}' requires confirm=True"
            )
        self.store.remove(self.storage_key)
        self._rules = []
        logger.info(f"cleared correction rules for {self.import_type}")

    def export_file(self, path: Path, source_file_name: str | None = None) -> Path:
        return write_rules_file(path, self._rules, self.import_type, source_file_name)

    def import_file(self, path: Path) -> int:
        """Merge the rules of a rule file into the working copy.

        Returns:
            Number of rules read from the file
        """
        incoming = read_rules_file(path, self.import_type)
        self.merge(incoming)
        logger.info(f"imported {len(incoming)} correction rules from {path.name}")
        return len(incoming)
