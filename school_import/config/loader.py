from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import jsonschema
import yaml
from jsonschema.exceptions import ValidationError

from ..models.rules import (
    BusinessRule,
    ColumnDefinition,
    FormatRule,
    IdentityGroup,
    RuleRegistry,
    ValueType,
)
from ..services.formatters import NORMALIZERS

logger = logging.getLogger(__name__)

"""Config loader: YAML file -> validated, frozen configuration objects.

Responsibilities:
- Load YAML config/import.yml (PyYAML safe_load)
- Validate structure against config_schema.json (jsonschema)
- Apply defaults (delimiter ';', min_occurrences 2, storage / logs directories)
- Compile every regex once and reject patterns prone to catastrophic
  backtracking (too long or nested quantifiers)
- Resolve one RuleRegistry per import type
"""

__all__ = [
    "SCHEMA_PATH",
    "DEFAULT_CONFIG_PATH",
    "MAX_PATTERN_LENGTH",
    "ConfigError",
    "AnalysisConfig",
    "StorageConfig",
    "ImportConfig",
    "load_config",
    "check_pattern",
]

SCHEMA_PATH = Path(__file__).parent / "config_schema.json"
DEFAULT_CONFIG_PATH = Path("config") / "import.yml"
MAX_PATTERN_LENGTH = 500

# (a+)+ / (a*)+ / (a+)* / (a*)* / (a+){2,}
_NESTED_QUANTIFIER = re.compile(r"\((?:[^()\\]|\\.)*[+*]\)[+*{]")


class ConfigError(Exception):
    pass


@dataclass(frozen=True)
class AnalysisConfig:
    min_occurrences: int = 2


@dataclass(frozen=True)
class StorageConfig:
    directory: Path = Path(".school_import")


@dataclass(frozen=True)
class ImportConfig:
    import_types: dict[str, RuleRegistry]
    delimiter: str = ";"
    logs_directory: Path = Path("logs")
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    def registry(self, import_type: str) -> RuleRegistry:
        try:
            return self.import_types[import_type]
        except KeyError:
            known = ", ".join(sorted(self.import_types))
            raise ConfigError(f"unknown import type '{import_type}' (known: {known})") from None


def check_pattern(pattern: str, where: str) -> re.Pattern[str]:
    """Compile a configured regex.

    Raises:
        ConfigError: pattern too long, nested quantifier or invalid syntax
    """
    if len(pattern) > MAX_PATTERN_LENGTH:
        raise ConfigError(f"{where}: pattern longer than {MAX_PATTERN_LENGTH} characters")
    if _NESTED_QUANTIFIER.search(pattern):
        raise ConfigError(f"{where}: nested quantifier in pattern '{pattern}'")
    try:
        return re.compile(pattern)
    except re.error as e:
        raise ConfigError(f"{where}: invalid pattern '{pattern}': {e}") from e


def _validate_config_schema(data: dict[str, Any]) -> None:
    """Validate config data against JSON schema.

    Raises:
        ConfigError: schema file missing / not valid JSON, or the data fails validation
    """
    if not SCHEMA_PATH.exists():
        raise ConfigError(f"config schema not found: {SCHEMA_PATH}")
    try:
        schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
        jsonschema.validate(data, schema)
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid schema file: {e}") from e
    except ValidationError as e:
        path = "/".join(str(p) for p in e.absolute_path)
        suffix = f" (at {path})" if path else ""
        raise ConfigError(f"config validation failed: {e.message}{suffix}") from e


def _require_known(columns: list[str] | tuple[str, ...], known: set[str], where: str) -> None:
    unknown = [c for c in columns if c not in known]
    if unknown:
        raise ConfigError(f"{where}: unknown column(s) {', '.join(unknown)}")


def _build_business_rule(raw: dict[str, Any], known: set[str], where: str) -> BusinessRule:
    kind = raw["kind"]
    if kind == "field_dependency":
        _require_known([raw["if_set"], *raw["then_required"]], known, where)
        rule = BusinessRule.field_dependency(
            raw["name"], raw["if_set"], raw["then_required"], raw["message"]
        )
    else:  # date_range
        _require_known([raw["start"], raw["end"]], known, where)
        rule = BusinessRule.date_range(raw["name"], raw["start"], raw["end"], raw["message"])
    if raw.get("active", True) is False:
        rule = BusinessRule(
            name=rule.name,
            predicate=rule.predicate,
            error_message=rule.error_message,
            column=rule.column,
            active=False,
        )
    return rule


def _build_registry(import_type: str, raw: dict[str, Any]) -> RuleRegistry:
    prefix = f"import_types.{import_type}"
    columns: list[ColumnDefinition] = []
    for c in raw["columns"]:
        if c.get("pattern"):
            check_pattern(c["pattern"], f"{prefix}.columns.{c['key']}")
        columns.append(
            ColumnDefinition(
                key=c["key"],
                required=bool(c.get("required", False)),
                expected_type=ValueType(c.get("type", "text")),
                validation_pattern=c.get("pattern"),
                target=c.get("target"),
                category=c.get("category"),
            )
        )
    keys = [c.key for c in columns]
    if len(set(keys)) != len(keys):
        raise ConfigError(f"{prefix}: duplicate column keys")
    known = set(keys)

    format_rules: list[FormatRule] = []
    for i, r in enumerate(raw.get("format_rules") or []):
        where = f"{prefix}.format_rules[{i}]"
        _require_known(r["columns"], known, where)
        if "pattern" in r:
            check_pattern(r["pattern"], where)
        elif r["normalizer"] not in NORMALIZERS:
            raise ConfigError(f"{where}: unknown normalizer '{r['normalizer']}'")
        format_rules.append(
            FormatRule(
                columns=tuple(r["columns"]),
                error_message=r["message"],
                pattern=r.get("pattern"),
                normalizer=r.get("normalizer"),
                active=bool(r.get("active", True)),
                name=r.get("name"),
            )
        )

    business_rules = [
        _build_business_rule(r, known, f"{prefix}.business_rules[{i}]")
        for i, r in enumerate(raw.get("business_rules") or [])
    ]

    unique_columns = tuple(raw.get("unique_columns") or ())
    _require_known(unique_columns, known, f"{prefix}.unique_columns")

    groups: list[IdentityGroup] = []
    for i, g in enumerate(raw.get("identity_groups") or []):
        _require_known([g["id_column"], *g["key_columns"]], known, f"{prefix}.identity_groups[{i}]")
        groups.append(IdentityGroup(id_column=g["id_column"], key_columns=tuple(g["key_columns"])))

    identifier_column = raw.get("identifier_column")
    if identifier_column is not None:
        _require_known([identifier_column], known, f"{prefix}.identifier_column")
    label_columns = tuple(raw.get("record_label_columns") or ())
    _require_known(label_columns, known, f"{prefix}.record_label_columns")

    return RuleRegistry(
        import_type=import_type,
        name=raw["name"],
        columns=tuple(columns),
        format_rules=tuple(format_rules),
        business_rules=tuple(business_rules),
        unique_columns=unique_columns,
        identity_groups=tuple(groups),
        identifier_column=identifier_column,
        record_label_columns=label_columns,
    )


def load_config(path: Path) -> ImportConfig:
    if not path.exists():
        raise ConfigError(f"config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid yaml: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError("config validation failed: top level must be a mapping")

    _validate_config_schema(data)

    registries = {name: _build_registry(name, raw) for name, raw in data["import_types"].items()}
    analysis_raw = data.get("analysis") or {}
    storage_raw = data.get("storage") or {}
    cfg = ImportConfig(
        import_types=registries,
        delimiter=(data.get("csv") or {}).get("delimiter", ";"),
        logs_directory=Path(data.get("logs_directory", "./logs")),
        analysis=AnalysisConfig(min_occurrences=analysis_raw.get("min_occurrences", 2)),
        storage=StorageConfig(directory=Path(storage_raw.get("directory", "./.school_import"))),
    )
    logger.debug(f"config loaded: {path} import_types={','.join(registries)}")
    return cfg
