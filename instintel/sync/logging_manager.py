"""
Centralized Logging Management for the contact sync pipeline.

Every component of the pipeline (budget guard, fetcher, extraction engine,
reconciliation, orchestrator) logs through the loggers handed out here so that
a single sync run produces one consistent stream of JSON lines.

Key Features:
- Structured Logging: one JSON object per line, easy to grep or ship.
- Institution Context: records carrying an `institution_id` (directly or in
  `details`) expose it as a top-level field for filtering.
- Centralized Configuration: level and optional log file come from SyncConfig.
"""

import json
import logging
import sys
from typing import Optional, TextIO

ROOT_LOGGER_NAME = "instintel"


class JsonFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON documents.
    """
    def format(self, record):
        log_record = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        details = getattr(record, 'details', None)
        if details is not None:
            log_record['details'] = details
            if isinstance(details, dict) and details.get('institution_id'):
                log_record['institution_id'] = details['institution_id']
        if getattr(record, 'institution_id', None):
            log_record['institution_id'] = record.institution_id
        if record.exc_info:
            log_record['exc_info'] = self.formatException(record.exc_info)
        return json.dumps(log_record, ensure_ascii=False, default=str)


class LoggingManager:
    """
    Owns the handler setup of the `instintel` logger hierarchy.

    Constructed once per process; later constructions are no-ops unless
    `reconfigure` is called explicitly (the CLI does this after loading config).
    """
    _instance = None

    def __new__(cls, *args, **kwargs):
        if not cls._instance:
            cls._instance = super(LoggingManager, cls).__new__(cls)
        return cls._instance

    def __init__(self, log_level: str = "INFO", log_file: Optional[str] = None, stream: Optional[TextIO] = None):
        if getattr(self, '_initialized', False):
            return
        self._configure(log_level, log_file, stream)
        self._initialized = True

    def _configure(self, log_level: str, log_file: Optional[str], stream: Optional[TextIO] = None) -> None:
        self.log_level = log_level.upper()
        self.log_file = log_file
        self.logger = logging.getLogger(ROOT_LOGGER_NAME)
        self.logger.setLevel(self.log_level)
        self.logger.propagate = False

        if self.logger.hasHandlers():
            self.logger.handlers.clear()

        console_handler = logging.StreamHandler(stream or sys.stdout)
        console_handler.setLevel(self.log_level)
        console_handler.setFormatter(JsonFormatter())
        self.logger.addHandler(console_handler)

        if self.log_file:
            file_handler = logging.FileHandler(self.log_file, encoding='utf-8')
            file_handler.setLevel(self.log_level)
            file_handler.setFormatter(JsonFormatter())
            self.logger.addHandler(file_handler)

    def reconfigure(self, log_level: str = "INFO", log_file: Optional[str] = None,
                    stream: Optional[TextIO] = None) -> None:
        """Replace handlers; the console handler writes to `stream`, stdout by default."""
        self._configure(log_level, log_file, stream)

    @staticmethod
    def get_logger(name: str) -> logging.Logger:
        """
        Provides a logger that writes through the configured handlers.
        """
        if not LoggingManager._instance:
            LoggingManager()
        return logging.getLogger(name)


def get_logger(name: str) -> logging.Logger:
    """
    Convenience function to get a logger instance.
    """
    return LoggingManager.get_logger(name)
