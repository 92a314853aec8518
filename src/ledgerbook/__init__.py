"""ledgerbook: party ledger and FIFO inventory valuation over an Excel workbook.

Importing the package configures the shared ``log`` object: INFO and above
go to a rotating file under ``.logs/`` (``LEDGERBOOK_LOG_DIR`` overrides the
directory), warnings and errors also go to stderr.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("LEDGERBOOK_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "ledgerbook.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def _file_handler(formatter: logging.Formatter) -> Optional[logging.Handler]:
    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    except OSError as exc:
        sys.stderr.write(f"ledgerbook: file logging disabled ({LOG_FILE}: {exc})\n")
        return None
    handler.setLevel(logging.INFO)
    handler.setFormatter(formatter)
    return handler


def _build_logger() -> logging.Logger:
    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(logging.DEBUG)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    file_handler = _file_handler(formatter)
    if file_handler is not None:
        logger.addHandler(file_handler)

    # stdout carries report output only
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.WARNING)
    console.setFormatter(formatter)
    logger.addHandler(console)
    return logger


log = _build_logger()
log.debug("ledgerbook logging ready (file: %s)", LOG_FILE)
