"""
Logging utilities for Marketplace Job Orchestrator

Provides structured logging configuration and utilities for the marketplace
job lifecycle engine.
"""

import logging
import sys
import json
import contextvars
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from pathlib import Path

# Per-task logging context (job_id, bid_id, ...). Each asyncio task sees its
# own copy, so concurrent commands on different jobs never mix their ids.
_task_context: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "marketplace_log_context", default={}
)

_RESERVED_ATTRS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'lineno', 'funcName', 'created',
    'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'message', 'exc_info', 'exc_text',
    'stack_info', 'taskName'
}


class StructuredFormatter(logging.Formatter):
    """
    Custom formatter for structured JSON logging.

    Formats log records as JSON with additional context fields for better
    observability and log aggregation.
    """

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        # Add exception information if present
        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info)
            }

        # Add extra fields from record
        if self.include_extra:
            extra_fields = {
                key: value for key, value in record.__dict__.items()
                if key not in _RESERVED_ATTRS
            }
            if extra_fields:
                log_entry["extra"] = extra_fields

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class JobContextFilter(logging.Filter):
    """
    Filter to add job context to log records.

    Automatically adds the service ``component`` plus the job_id, bid_id or
    change_order_id of the command being processed when available. Static
    context is set per logger; the per-command ids come from the current
    task's context.
    """

    def __init__(self):
        super().__init__()
        self.context = {}

    def set_context(self, **kwargs):
        """Set context variables for logging."""
        self.context.update(kwargs)

    def clear_context(self):
        """Clear all context variables."""
        self.context.clear()

    def filter(self, record: logging.LogRecord) -> bool:
        """Add context to log record."""
        for key, value in self.context.items():
            if not hasattr(record, key):
                setattr(record, key, value)
        for key, value in _task_context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


def _attach_context_filter(logger: logging.Logger) -> JobContextFilter:
    context_filter = getattr(logger, 'context_filter', None)
    if context_filter is None:
        context_filter = JobContextFilter()
        logger.addFilter(context_filter)
        logger.context_filter = context_filter
    return context_filter


def setup_logger(
    name: str,
    level: str = "INFO",
    structured: bool = True,
    log_file: Optional[str] = None
) -> logging.Logger:
    """
    Set up a logger with appropriate configuration.

    Args:
        name: Logger name
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        structured: Whether to use structured JSON logging
        log_file: Optional log file path

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    _attach_context_filter(logger)

    # Avoid adding handlers multiple times
    if any(not isinstance(h, logging.NullHandler) for h in logger.handlers):
        return logger

    logger.setLevel(getattr(logging, level.upper()))

    if structured:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    # Console handler
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(getattr(logging, level.upper()))
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # File handler if specified
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(getattr(logging, level.upper()))
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with a context filter attached.

    Args:
        name: Logger name

    Returns:
        Logger instance
    """
    logger = logging.getLogger(name)
    _attach_context_filter(logger)
    return logger


def set_log_context(logger: logging.Logger, **kwargs):
    """
    Set context variables for a logger.

    Args:
        logger: Logger instance
        **kwargs: Context variables to set
    """
    if hasattr(logger, 'context_filter'):
        logger.context_filter.set_context(**kwargs)


class LoggerContext:
    """
    Context manager for temporary per-command log context.

    Sets context variables (e.g. ``job_id``) for the current task and
    restores the previous ones on exit.

        with LoggerContext(job_id=job.job_id):
            logger.info("Job scheduled")
    """

    def __init__(self, **kwargs):
        self.context = kwargs
        self._token = None

    def __enter__(self):
        """Set temporary context."""
        merged = dict(_task_context.get())
        merged.update({key: value for key, value in self.context.items() if value is not None})
        self._token = _task_context.set(merged)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Restore old context."""
        if self._token is not None:
            _task_context.reset(self._token)
            self._token = None
