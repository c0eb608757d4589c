"""
Structured JSON logging for the fleetwatch server.

Every module logs through ``logging.getLogger(__name__)``; handlers are
attached once to the ``fleetwatch`` package logger by configure_logging().
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Optional

ROOT_LOGGER = 'fleetwatch'
TEXT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line, stamped with the record's creation time:

        {"timestamp": "2026-10-18T03:00:00.123456Z", "level": "INFO",
         "logger": "fleetwatch.retention", "message": "Retention pass complete",
         "context": {"deleted": 42}}

    ``context`` comes from ``extra={'context': {...}}``. Records carrying
    exc_info gain an ``exception`` object; DEBUG records gain ``source``.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'timestamp': self._timestamp(record),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        context = getattr(record, 'context', None)
        if context:
            entry['context'] = context
        if record.exc_info:
            entry['exception'] = self._exception_fields(record)
        if record.levelno <= logging.DEBUG:
            entry['source'] = {'file': record.pathname, 'line': record.lineno, 'function': record.funcName}
        return json.dumps(entry, default=str)

    @staticmethod
    def _timestamp(record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        return created.strftime('%Y-%m-%dT%H:%M:%S.%fZ')

    def _exception_fields(self, record: logging.LogRecord) -> dict:
        exc_type, exc_value, _ = record.exc_info
        return {
            'type': exc_type.__name__,
            'message': str(exc_value),
            'traceback': self.formatException(record.exc_info),
        }


def _make_formatter(use_json: bool) -> logging.Formatter:
    if use_json:
        return JSONFormatter()
    return logging.Formatter(TEXT_FORMAT)


def configure_logging(
    level: str = 'INFO',
    log_file: Optional[str] = None,
    use_json: bool = True
) -> logging.Logger:
    """
    Attach console (and optionally file) handlers to the fleetwatch logger.

    Safe to call more than once: existing handlers are reconfigured rather
    than duplicated.

    Args:
        level: Level name, e.g. 'INFO' or 'DEBUG'
        log_file: Optional path for an additional file handler
        use_json: Emit JSON lines instead of plain text

    Returns:
        The configured package logger
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(numeric_level)
    formatter = _make_formatter(use_json)

    console_handler = next(
        (h for h in logger.handlers
         if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)),
        None
    )
    if console_handler is None:
        console_handler = logging.StreamHandler()
        logger.addHandler(console_handler)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)

    if log_file:
        file_handler = next(
            (h for h in logger.handlers
             if isinstance(h, logging.FileHandler) and h.baseFilename == os.path.abspath(log_file)),
            None
        )
        if file_handler is None:
            file_handler = logging.FileHandler(log_file)
            logger.addHandler(file_handler)
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)

    return logger
