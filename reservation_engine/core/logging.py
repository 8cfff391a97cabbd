import logging
import sys
from typing import Optional

from pythonjsonlogger.json import JsonFormatter

from reservation_engine.core.config import settings

SERVICE_NAME = "reservation-engine"
CONSOLE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
JSON_FIELDS = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Chatty at INFO: scheduler ticks and connection pool messages
QUIET_LOGGERS = ("apscheduler", "urllib3")


def build_formatter(log_format: str) -> logging.Formatter:
    if log_format.lower() == "json":
        return JsonFormatter(
            JSON_FIELDS,
            json_ensure_ascii=False,
            static_fields={"service": SERVICE_NAME},
        )
    return logging.Formatter(CONSOLE_FORMAT)


def setup_logging(level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    """
    Route every log record to stdout.

    Level and format come from settings (LOG_LEVEL / LOG_FORMAT) unless given.
    Calling it again replaces the handler instead of adding a second one.
    """
    level_name = (level or settings.log_level).upper()
    numeric_level = getattr(logging, level_name, logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers = []

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(build_formatter(log_format or settings.log_format))
    root_logger.addHandler(handler)

    logging.getLogger("aiogram").setLevel(numeric_level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))
