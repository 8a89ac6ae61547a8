"""Logging infrastructure with structured JSON logging."""

import logging
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional


STRUCTURED_FIELDS = ('environment', 'module_path', 'operation', 'holder', 'state_key', 'duration')


class JSONFormatter(logging.Formatter):
    """Custom formatter that outputs logs as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: The log record to format

        Returns:
            JSON-formatted log string
        """
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        for field_name in STRUCTURED_FIELDS:
            if hasattr(record, field_name):
                log_data[field_name] = getattr(record, field_name)

        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable formatter for console output."""

    COLORS = {
        'DEBUG': '\033[36m',    # Cyan
        'INFO': '\033[32m',     # Green
        'WARNING': '\033[33m',  # Yellow
        'ERROR': '\033[31m',    # Red
        'CRITICAL': '\033[35m', # Magenta
    }
    RESET = '\033[0m'

    def format(self, record: logging.LogRecord) -> str:
        """Format log record for console.

        Args:
            record: The log record to format

        Returns:
            Formatted log string with colors
        """
        color = self.COLORS.get(record.levelname, '')
        reset = self.RESET

        timestamp = datetime.now().strftime('%H:%M:%S')
        level = f"{color}{record.levelname:8}{reset}"
        message = record.getMessage()

        environment = getattr(record, 'environment', None)
        module = getattr(record, 'module_path', None)
        if environment and module:
            message = f"[{environment}/{module}] {message}"
        elif environment:
            message = f"[{environment}] {message}"

        return f"{timestamp} {level} {message}"


def setup_logging(log_level: str = 'info', log_dir: Optional[str] = '.infra-deploy/logs') -> None:
    """Setup logging infrastructure.

    Args:
        log_level: Logging level (debug, info, warning, error)
        log_dir: Directory for JSON log files, or None to log to console only
    """
    level = getattr(logging, log_level.upper())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    root_logger.handlers.clear()

    # Console output goes to stderr so command output stays parseable
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(ConsoleFormatter())
    root_logger.addHandler(console_handler)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        log_file = log_path / f"infra-deploy-{datetime.now(timezone.utc).strftime('%Y%m%d')}.jsonl"
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)  # Always log debug to file
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    logging.getLogger('boto3').setLevel(logging.WARNING)
    logging.getLogger('botocore').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Name of the logger (typically __name__)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


class LogContext:
    """Context manager for adding structured fields to logs."""

    def __init__(self, logger: logging.Logger, **kwargs: Any):
        """Initialize log context.

        Args:
            logger: Logger to add context to
            **kwargs: Key-value pairs to add to log records
        """
        self.logger = logger
        self.context = kwargs
        self.old_factory = None

    def __enter__(self):
        """Enter context and add fields to logger."""
        old_factory = logging.getLogRecordFactory()

        def record_factory(*args, **kwargs):
            record = old_factory(*args, **kwargs)
            for key, value in self.context.items():
                setattr(record, key, value)
            return record

        self.old_factory = old_factory
        logging.setLogRecordFactory(record_factory)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Exit context and restore original factory."""
        if self.old_factory:
            logging.setLogRecordFactory(self.old_factory)
