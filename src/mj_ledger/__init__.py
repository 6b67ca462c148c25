"""MJ Textiles stock ledger.

Importing the package configures the shared ``log`` object used by every
module. Log files go to ``$MJ_LEDGER_LOG_DIR`` when set, otherwise to a
``.logs`` folder in the directory the till is started from, next to the
shop's ``config.ini``.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Mapping, Optional


LOG_DIR_ENV = "MJ_LEDGER_LOG_DIR"
LOG_FILE_NAME = "mj_ledger.log"
LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(module)s.%(funcName)s | %(message)s"


def resolve_log_dir(environ: Optional[Mapping[str, str]] = None, cwd: Optional[Path] = None) -> Path:
    """Return the directory that receives the rotating ledger log."""

    environ = os.environ if environ is None else environ
    override = environ.get(LOG_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return (cwd or Path.cwd()) / ".logs"


LOG_DIR = resolve_log_dir()
LOG_FILE = LOG_DIR / LOG_FILE_NAME


def _configure_logging() -> logging.Logger:
    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
    except OSError as exc:
        print(f"Warning: ledger log disabled, cannot write '{LOG_FILE}': {exc}", file=sys.stderr)
    else:
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    # Only problems reach the terminal; transactions are in the file.
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.WARNING)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.info("Ledger logging to '%s'", LOG_FILE)
