from __future__ import annotations

import logging

from school_import.logging.init import (
    LOGGER_NAME,
    SUMMARY_LEVEL,
    LabeledFormatter,
    get_logger,
    log_summary,
    reset_logging,
    set_debug,
    setup_logging,
)


def test_setup_logging_is_idempotent():
    reset_logging()
    logger = setup_logging()
    assert logger.name == LOGGER_NAME
    assert logger.level == logging.INFO
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0].formatter, LabeledFormatter)
    assert setup_logging() is logger
    assert get_logger() is logger


def test_labeled_prefixes(capsys):
    reset_logging()
    logger = setup_logging()
    logger.info("read 3 rows")
    logger.warning("invalid regex skipped")
    logger.error("config: missing")
    log_summary("rows=3 errors=0")
    logging.getLogger(f"{LOGGER_NAME}.services.validation").info("child logger")
    out = capsys.readouterr().out.splitlines()
    assert out == [
        "INFO read 3 rows",
        "WARN invalid regex skipped",
        "ERROR config: missing",
        "SUMMARY rows=3 errors=0",
        "INFO child logger",
    ]


def test_set_debug(capsys):
    reset_logging()
    logger = setup_logging()
    logger.debug("hidden")
    set_debug(True)
    logger.debug("shown")
    set_debug(False)
    assert capsys.readouterr().out.splitlines() == ["DEBUG shown"]
    assert SUMMARY_LEVEL == 25
