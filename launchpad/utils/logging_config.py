import logging
import sys
import os
from datetime import datetime

from launchpad.core.config import APP_LOG_DIR, APP_LOG_LEVEL

_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


class ColoredFormatter(logging.Formatter):
    """Console formatter that colours each record by level."""

    cyan = "\x1b[36m"
    green = "\x1b[32m"
    yellow = "\x1b[33m"
    red = "\x1b[31m"
    bold_red = "\x1b[31;1m"
    reset = "\x1b[0m"

    FORMATS = {
        logging.DEBUG: cyan + _FORMAT + reset,
        logging.INFO: green + _FORMAT + reset,
        logging.WARNING: yellow + _FORMAT + reset,
        logging.ERROR: red + _FORMAT + reset,
        logging.CRITICAL: bold_red + _FORMAT + reset,
    }

    def format(self, record):
        log_fmt = self.FORMATS.get(record.levelno, _FORMAT)
        formatter = logging.Formatter(log_fmt, datefmt=_DATEFMT)
        return formatter.format(record)


def setup_logging(level=APP_LOG_LEVEL, log_dir: str = APP_LOG_DIR):
    """Install console + dated file handlers on the root logger."""
    root_logger = logging.getLogger()

    # Clear existing handlers to prevent duplicate logs
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    root_logger.setLevel(level)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(ColoredFormatter())
    root_logger.addHandler(console_handler)

    os.makedirs(log_dir, exist_ok=True)
    file_handler = logging.FileHandler(
        os.path.join(log_dir, f"launchpad_{datetime.now().strftime('%Y%m%d')}.log")
    )
    file_handler.setFormatter(logging.Formatter(_FORMAT, datefmt=_DATEFMT))
    root_logger.addHandler(file_handler)

    for logger_name in ["launchpad", "uvicorn", "uvicorn.error", "uvicorn.access", "main"]:
        l = logging.getLogger(logger_name)
        l.setLevel(level)
        l.propagate = True

    # docker-py and httpx are chatty at INFO
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    root_logger.info("Logging initialized (console + file).")
