#!/usr/bin/env python3
"""
DerivDesk Trading Dashboard
Logging Module

This module provides the centralized logging setup for DerivDesk.
It supports coloured console output, rotating log files and JSON records,
and masks API tokens before any record is emitted.
"""

import os
import re
import sys
import json
import logging
import traceback
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional

# ANSI color codes for terminal output
class Colors:
    RESET = '\033[0m'
    RED = '\033[31m'
    GREEN = '\033[32m'
    YELLOW = '\033[33m'
    BLUE = '\033[34m'
    BOLD = '\033[1m'

class ColorFormatter(logging.Formatter):
    """Custom formatter with colored output for console."""

    LEVEL_COLORS = {
        logging.DEBUG: Colors.BLUE,
        logging.INFO: Colors.GREEN,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.RED + Colors.BOLD
    }

    def format(self, record):
        levelname = record.levelname
        record.levelname = f"{self.LEVEL_COLORS.get(record.levelno, Colors.RESET)}{levelname}{Colors.RESET}"
        try:
            return logging.Formatter.format(self, record)
        finally:
            # Other handlers share the record
            record.levelname = levelname

class JSONFormatter(logging.Formatter):
    """Formatter that outputs JSON strings for structured logging."""

    RESERVED = frozenset(vars(logging.makeLogRecord({})).keys()) | {"message", "asctime"}

    def format(self, record):
        log_record = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'name': record.name,
            'message': record.getMessage(),
        }

        if record.exc_info:
            log_record['exception'] = {
                'type': record.exc_info[0].__name__,
                'value': str(record.exc_info[1]),
                'traceback': traceback.format_exception(*record.exc_info)
            }

        # Context added through LogContextAdapter or `extra=`
        for key, value in record.__dict__.items():
            if key not in self.RESERVED and not key.startswith('_'):
                log_record[key] = value

        return json.dumps(log_record, default=str)

class TokenRedactionFilter(logging.Filter):
    """Masks Deriv API tokens in log messages and arguments."""

    AUTHORIZE_PATTERN = re.compile(r'("authorize"\s*:\s*")([^"]+)(")')
    TOKEN_FIELD_PATTERN = re.compile(r"(token['\"]?\s*[:=]\s*['\"]?)([A-Za-z0-9_\-]{8,})")

    @staticmethod
    def mask(token: str) -> str:
        if len(token) <= 4:
            return "****"
        return token[:4] + "*" * (len(token) - 4)

    def _redact(self, text: str) -> str:
        text = self.AUTHORIZE_PATTERN.sub(lambda m: m.group(1) + self.mask(m.group(2)) + m.group(3), text)
        return self.TOKEN_FIELD_PATTERN.sub(lambda m: m.group(1) + self.mask(m.group(2)), text)

    def filter(self, record):
        if isinstance(record.msg, str):
            record.msg = self._redact(record.msg)
        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: self._redact(v) if isinstance(v, str) else v
                               for k, v in record.args.items()}
            else:
                record.args = tuple(self._redact(a) if isinstance(a, str) else a
                                    for a in record.args)
        return True

class LogContextAdapter(logging.LoggerAdapter):
    """Logger adapter that adds context to log records."""

    def process(self, msg, kwargs):
        kwargs.setdefault('extra', {})

        if self.extra:
            for key, value in self.extra.items():
                if key not in kwargs['extra']:
                    kwargs['extra'][key] = value

        return msg, kwargs

def setup_logging(level=logging.INFO, log_file=None, max_size=10485760, backup_count=5,
                 json_format=False, console=True):
    """
    Set up the logging system.

    Args:
        level: Log level (default: logging.INFO)
        log_file: Path to log file (default: None, logs to console only)
        max_size: Maximum log file size in bytes (default: 10MB)
        backup_count: Number of backup files to keep (default: 5)
        json_format: Whether to use JSON format for file logs (default: False)
        console: Whether to log to console (default: True)
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    redaction = TokenRedactionFilter()

    if json_format:
        formatter = JSONFormatter()
    else:
        log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        date_format = "%Y-%m-%d %H:%M:%S"
        formatter = logging.Formatter(log_format, date_format)

    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(ColorFormatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            "%Y-%m-%d %H:%M:%S"
        ))
        console_handler.addFilter(redaction)
        root_logger.addHandler(console_handler)

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir and not os.path.exists(log_dir):
            os.makedirs(log_dir)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_size,
            backupCount=backup_count
        )
        file_handler.setFormatter(formatter)
        file_handler.addFilter(redaction)
        root_logger.addHandler(file_handler)

    logging.getLogger("logging").info(f"Logging system initialized. Level: {logging.getLevelName(level)}")

def get_logger(name, context: Optional[Dict[str, Any]] = None):
    """
    Get a logger with the specified name and optional context.

    Args:
        name: Logger name
        context: Optional context dictionary to be added to log records

    Returns:
        Logger instance
    """
    logger = logging.getLogger(name)

    if context:
        return LogContextAdapter(logger, context)

    return logger
