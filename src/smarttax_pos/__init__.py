"""SmartTax POS: cart, tax, checkout and sales reporting engine."""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


__version__ = "0.3.0"

PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("SMARTTAX_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "smarttax_pos.log"
LOG_LEVEL = os.environ.get("SMARTTAX_LOG_LEVEL", "INFO").upper()


def _configure_logging() -> logging.Logger:
    """Attach the rotating file handler and the stderr handler once."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except (OSError, PermissionError) as exc:
        print(
            f"Warning: unable to open POS log file '{LOG_FILE}': {exc}",
            file=sys.stderr,
        )

    # Operators only see warnings on the console; the file keeps everything.
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.WARNING)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.debug("Logger initialized for the 'smarttax_pos' package.")
