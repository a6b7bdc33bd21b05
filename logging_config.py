"""Logging setup shared by the server modules.

Call ``setup_logging`` once at process start, then obtain module loggers with
``get_logger(__name__)``.
"""
import logging
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure the root logger with a console handler and an optional file handler.

    Repeated calls replace the handlers installed by a previous call, so the
    entrypoint and the app module can both call it safely.
    """
    level = getattr(logging, str(log_level).upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)

    for handler in root.handlers[:]:
        if getattr(handler, "_relay_handler", False):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler._relay_handler = True
    root.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        file_handler._relay_handler = True
        root.addHandler(file_handler)

    # The redis client logs every command at debug level
    logging.getLogger("redis").setLevel(max(level, logging.INFO))

    logging.getLogger(__name__).debug(f"Logging configured: level={logging.getLevelName(level)}, file={log_file}")

def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
