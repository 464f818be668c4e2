"""
Centralized Logging Management for the Sync Module.

This module provides a unified logging setup so that all components of the
sync engine produce consistent logs.

Key Features:
- Structured Logging: optional JSON output for easy parsing and analysis.
- Centralized Configuration: level, file and format come from the sync
  configuration.
- Details: a ``details`` dict passed through ``extra`` is carried into the
  JSON record (retry attempts, checkpoints, run summaries).
"""

import logging
import sys
import json
from typing import Optional

LOGGER_NAME = "kbsync"
TEXT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

class JsonFormatter(logging.Formatter):
    """
    Custom formatter to output logs in JSON format.
    """
    def format(self, record):
        log_record = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_record['exc_info'] = self.formatException(record.exc_info)
        if hasattr(record, 'details'):
            log_record['details'] = record.details
        return json.dumps(log_record, default=str)

class LoggingManager:
    """
    Manages the logging configuration for the whole package.
    """
    _instance = None

    def __new__(cls, *args, **kwargs):
        if not cls._instance:
            cls._instance = super(LoggingManager, cls).__new__(cls)
        return cls._instance

    def __init__(self, log_level: str = "INFO", log_file: Optional[str] = None, json_format: bool = False):
        if hasattr(self, '_initialized') and self._initialized:
            return

        self.log_level = log_level.upper()
        self.log_file = log_file
        self.json_format = json_format
        self.logger = logging.getLogger(LOGGER_NAME)
        self.logger.setLevel(self.log_level)
        self.logger.propagate = False  # Prevent duplicate logs in parent handlers

        # Remove existing handlers to avoid duplication
        if self.logger.hasHandlers():
            self.logger.handlers.clear()

        # Add console handler
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(self.log_level)
        console_handler.setFormatter(self._make_formatter())
        self.logger.addHandler(console_handler)

        # Add file handler if a log file is specified
        if self.log_file:
            file_handler = logging.FileHandler(self.log_file)
            file_handler.setLevel(self.log_level)
            file_handler.setFormatter(self._make_formatter())
            self.logger.addHandler(file_handler)

        self._initialized = True

    def _make_formatter(self) -> logging.Formatter:
        if self.json_format:
            return JsonFormatter()
        return logging.Formatter(TEXT_FORMAT)

    @classmethod
    def configure(cls, log_level: str = "INFO", log_file: Optional[str] = None, json_format: bool = False) -> 'LoggingManager':
        """
        (Re)configure logging, replacing any earlier configuration.
        """
        if cls._instance is not None:
            cls._instance._initialized = False
        return cls(log_level=log_level, log_file=log_file, json_format=json_format)

    @staticmethod
    def get_logger(name: str) -> logging.Logger:
        """
        Provides a logger with the correct configuration.
        """
        # Ensure the LoggingManager is initialized
        if not LoggingManager._instance:
            LoggingManager()
        return logging.getLogger(name)

def get_logger(name: str) -> logging.Logger:
    """
    Convenience function to get a logger instance.
    """
    return LoggingManager.get_logger(name)
