"""Process-wide logging setup."""

import json
import logging
import sys
from datetime import datetime, timezone

from . import friendly_version

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

TEXT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
SIMPLE_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

logger = logging.getLogger(__name__)

_handler = None


class JSONFormatter(logging.Formatter):
    """Format each record as a single JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def make_formatter(log_format: str) -> logging.Formatter:
    if log_format == "json":
        return JSONFormatter()
    if log_format == "simple":
        return logging.Formatter(SIMPLE_FORMAT, datefmt=DATE_FORMAT)
    return logging.Formatter(TEXT_FORMAT, datefmt=DATE_FORMAT)


def init_logs(opt) -> None:
    """
    Configure the root logger from options.

    Installs a single stdout handler; calling it again replaces that handler.
    Trace takes precedence over debug.
    """
    global _handler

    root = logging.getLogger()
    if _handler is not None:
        root.removeHandler(_handler)

    _handler = logging.StreamHandler(sys.stdout)
    _handler.setFormatter(make_formatter(opt.log_format))
    root.addHandler(_handler)
    root.setLevel(logging.INFO)

    logger.info(f"Ksmtuned controller {friendly_version()} is starting")

    if opt.trace:
        root.setLevel(TRACE)
        logger.log(TRACE, "Loglevel set to [TRACE]")
    elif opt.debug:
        root.setLevel(logging.DEBUG)
        logger.debug("Loglevel set to [DEBUG]")


def flush_logs() -> None:
    """Flush every handler of the root logger. Called once on exit."""
    for handler in logging.getLogger().handlers:
        handler.flush()
