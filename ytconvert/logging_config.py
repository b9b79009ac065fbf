"""
Structured logging configuration for the YouTube conversion service.

All log records are emitted as JSON objects so that per-job context
(job id, download URL, file paths, error details) can be filtered on.
Jobs run on worker threads, so the thread name is part of every record.
"""

import logging
import sys
from typing import Optional

from pythonjsonlogger.json import JsonFormatter


# Third-party loggers that are too chatty at INFO
NOISY_LOGGERS = ("urllib3", "sqlalchemy.engine", "multipart")


class CustomJsonFormatter(JsonFormatter):
    """
    JSON formatter that adds standard fields to all log records.

    Every record carries timestamp, level, logger, thread and source
    location in addition to the message and any ``extra`` context.
    """

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = self.formatTime(record, self.datefmt)
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['thread'] = record.threadName
        log_record['function'] = record.funcName
        log_record['line'] = record.lineno

        if record.exc_info:
            log_record['exception'] = self.formatException(record.exc_info)


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    use_json: bool = True
) -> None:
    """
    Configure logging for the service and the CLI.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path to write logs to (in addition to stdout)
        use_json: Whether to use JSON formatting (default: True)

    Example:
        >>> setup_logging(log_level="INFO", use_json=True)
        >>> logger = get_logger(__name__)
        >>> logger.info("Service started", extra={"port": 8080})
    """
    level = getattr(logging, log_level.upper())
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = []

    if use_json:
        formatter = CustomJsonFormatter(
            '%(timestamp)s %(level)s %(logger)s %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # Keep library noise out unless we are debugging
    if level > logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    root_logger.debug(
        "Logging configured",
        extra={"log_level": log_level, "use_json": use_json, "log_file": log_file}
    )


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the specified name."""
    return logging.getLogger(name)


def log_with_context(
    logger: logging.Logger,
    level: str,
    message: str,
    job_id: Optional[str] = None,
    file_path: Optional[str] = None,
    url: Optional[str] = None,
    error: Optional[BaseException] = None,
    **kwargs
) -> None:
    """
    Log a message with structured job context.

    Args:
        logger: Logger instance to use
        level: Log level (debug, info, warning, error, critical)
        message: Log message
        job_id: Optional conversion or download id
        file_path: Optional local file path
        url: Optional remote URL involved in the operation
        error: Optional exception; adds error_type/error_message and a traceback
        **kwargs: Additional context fields

    Example:
        >>> log_with_context(
        ...     logger,
        ...     "info",
        ...     "Download finished",
        ...     job_id="abc123_1700000000",
        ...     file_path="/srv/conversions/ongoing/Title.mp4",
        ...     bytes_written=1048576
        ... )
    """
    context = {}

    if job_id:
        context['job_id'] = job_id

    if file_path:
        context['file_path'] = str(file_path)

    if url:
        context['url'] = url

    if error is not None:
        context['error_type'] = type(error).__name__
        context['error_message'] = str(error)

    context.update(kwargs)

    log_method = getattr(logger, level.lower())

    if error is not None:
        log_method(message, extra=context, exc_info=error)
    else:
        log_method(message, extra=context)
