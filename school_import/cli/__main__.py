from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from school_import.config.loader import DEFAULT_CONFIG_PATH, ConfigError, ImportConfig, load_config
from school_import.excel.reader import EmptyFileError, UnsupportedFileError
from school_import.excel.writer import ExportOptions, default_output_name
from school_import.logging.init import log_summary, set_debug, setup_logging
from school_import.services.correction_memory import (
    ConfirmationRequiredError,
    CorrectionFileError,
    CorrectionMemory,
    default_rules_file_name,
)
from school_import.services.orchestrator import ImportSession, SessionError
from school_import.services.storage import JsonFileStore, KeyValueStore, MemoryStore, PersistenceError
from school_import.services.summary import render_summary_line
from school_import.services.worker import DeliveryError

"""CLI entrypoint.

    school-import validate FILE
    school-import clean FILE [--out PATH] [--only-error-free] [--auto-fix] [--rules-file F] [--remember]
    school-import rules export [--out PATH] | rules import FILE | rules clear --yes

Config resolution: --config > $SCHOOL_IMPORT_CONFIG (.env is loaded first) > config/import.yml

Exit codes:
    0  no uncorrected errors left (or rules command succeeded)
    2  uncorrected content errors remain
    1  fatal: config, file, worker delivery or rule store failure
"""

EXIT_SUCCESS_ALL = 0
EXIT_PARTIAL_FAILURE = 2
EXIT_FATAL = 1

ENV_CONFIG = "SCHOOL_IMPORT_CONFIG"


def _load_env_file(path: Path, override: bool = True) -> None:
    """Load .env using python-dotenv (values in .env win over the process env)."""
    if path.exists():
        load_dotenv(dotenv_path=path, override=override)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="school-import", description="School data import: validate, correct, export")
    p.add_argument("--config", type=Path, default=None, help="Config file (default: config/import.yml)")
    p.add_argument("--type", dest="import_type", default=None, help="Import type (default: first configured)")
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    p.add_argument("--no-store", action="store_true", help="Do not read or write the local rule store")
    sub = p.add_subparsers(dest="command", required=True)

    v = sub.add_parser("validate", help="Validate a file and report errors and patterns")
    v.add_argument("file", type=Path)
    v.add_argument("--rules-file", type=Path, default=None, help="Merge a correction rules file before replay")

    c = sub.add_parser("clean", help="Validate, correct and export a cleaned file")
    c.add_argument("file", type=Path)
    c.add_argument("--out", type=Path, default=None, help="Output .csv / .xlsx (default: <type>_<date>_bereinigt.csv)")
    c.add_argument("--only-error-free", action="store_true", help="Leave out rows with uncorrected errors")
    c.add_argument("--remove-extra-columns", action="store_true", help="Leave out columns not in the definition")
    c.add_argument("--source-headers", action="store_true", help="Keep column keys as headers")
    c.add_argument("--auto-fix", action="store_true", help="Apply every auto-fixable pattern")
    c.add_argument("--rules-file", type=Path, default=None, help="Merge a correction rules file before replay")
    c.add_argument("--remember", action="store_true", help="Store applied bulk fixes as correction rules")

    r = sub.add_parser("rules", help="Manage remembered correction rules")
    rsub = r.add_subparsers(dest="rules_command", required=True)
    rexp = rsub.add_parser("export", help="Write stored rules to a JSON file")
    rexp.add_argument("--out", type=Path, default=None)
    rimp = rsub.add_parser("import", help="Merge a JSON rules file into the store")
    rimp.add_argument("file", type=Path)
    rclr = rsub.add_parser("clear", help="Delete all stored rules of the import type")
    rclr.add_argument("--yes", action="store_true", help="Confirm deletion")
    return p.parse_args(argv)


def _resolve_config_path(arg: Path | None) -> Path:
    if arg is not None:
        return arg
    env = os.getenv(ENV_CONFIG)
    return Path(env) if env else DEFAULT_CONFIG_PATH


def _resolve_import_type(cfg: ImportConfig, requested: str | None) -> str:
    if requested is None:
        return next(iter(cfg.import_types))
    cfg.registry(requested)  # 未定義なら ConfigError
    return requested


def _store(cfg: ImportConfig, args: argparse.Namespace) -> KeyValueStore:
    if args.no_store:
        return MemoryStore()
    return JsonFileStore(cfg.storage.directory)


def _run_rules(cfg: ImportConfig, import_type: str, args: argparse.Namespace, logger) -> int:
    memory = CorrectionMemory(_store(cfg, args), import_type)
    if args.rules_command == "clear":
        memory.clear(confirm=args.yes)
        return EXIT_SUCCESS_ALL
    memory.load()
    if args.rules_command == "export":
        out = args.out or Path(default_rules_file_name(import_type))
        memory.export_file(out)
        logger.info(f"exported {len(memory)} rules to {out}")
        return EXIT_SUCCESS_ALL
    count = memory.import_file(args.file)
    report = memory.persist()
    if report.failed:
        logger.error(f"{len(report.failed)} of {count} rules not saved; retry the import")
        return EXIT_FATAL
    logger.info(f"store now holds {len(memory)} rules")
    return EXIT_SUCCESS_ALL


def _run_session(cfg: ImportConfig, import_type: str, args: argparse.Namespace, logger) -> int:
    with ImportSession(cfg, import_type, store=_store(cfg, args)) as session:
        status = session.load_file(args.file)
        if status.extra:
            logger.info(f"extra columns (not defined): {', '.join(status.extra)}")
        session.validate()
        if args.rules_file is not None:
            session.import_rules_file(args.rules_file)
        session.replay_memory()

        if args.command == "clean" and args.auto_fix:
            changed = session.auto_fix()
            logger.info(f"auto-fix changed {changed} cells")
        else:
            session.analyze()

        exit_code = EXIT_SUCCESS_ALL
        if args.command == "clean":
            out = args.out or Path(default_output_name(import_type))
            options = ExportOptions(
                only_error_free=args.only_error_free,
                remove_extra_columns=args.remove_extra_columns,
                use_target_headers=not args.source_headers,
                delimiter=cfg.delimiter,
            )
            session.export(out, options)
            if args.remember:
                session.remember_changes()
                if session.save_memory().failed:
                    exit_code = EXIT_FATAL

        for e in session.remaining_errors[:20]:
            logger.warning(f"row {e.row_number} {e.column}: {e.message}")
        if len(session.remaining_errors) > 20:
            logger.warning(f"... {len(session.remaining_errors) - 20} more (see error report)")

        result, outputs = session.finish()
        if outputs.error_report is not None:
            logger.info(f"error report: {outputs.error_report}")
        if outputs.change_log is not None:
            logger.info(f"change log: {outputs.change_log}")

    summary_line = render_summary_line(result)
    # log_summary が "SUMMARY " を付けるため除去
    log_summary(summary_line[len("SUMMARY "):])
    if exit_code != EXIT_SUCCESS_ALL:
        return exit_code
    return EXIT_PARTIAL_FAILURE if result.has_remaining_errors else EXIT_SUCCESS_ALL


def main(argv: list[str] | None = None) -> int:
    logger = setup_logging()

    # None のときのみシステム引数を読む ([] はテストからの明示呼び出し)
    if argv is None:
        argv = sys.argv[1:]
    args = _parse_args(argv)
    if args.debug:
        set_debug(True)
        logger.debug("debug mode enabled")

    _load_env_file(Path(".env"), override=True)
    try:
        cfg = load_config(_resolve_config_path(args.config))
        import_type = _resolve_import_type(cfg, args.import_type)
    except ConfigError as e:
        logger.error(f"config: {e}")
        return EXIT_FATAL

    try:
        if args.command == "rules":
            return _run_rules(cfg, import_type, args, logger)
        return _run_session(cfg, import_type, args, logger)
    except (UnsupportedFileError, EmptyFileError) as e:
        logger.error(f"file: {e}")
    except CorrectionFileError as e:
        logger.error(f"rules file: {e}")
    except ConfirmationRequiredError as e:
        logger.error(f"{e} (pass --yes)")
    except DeliveryError as e:
        logger.error(f"worker: {e}; run the command again")
    except PersistenceError as e:
        logger.error(f"rule store: {e}; check {cfg.storage.directory} and retry")
    except SessionError as e:
        logger.error(f"session: {e}")
    return EXIT_FATAL


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
