"""
Structured Logging Configuration Module

JSON-formatted structured logging for ledger operations. Every successful
mutation is reported through log_action with the operator, action tag and
the affected resource.
"""

import logging
import json
import sys
from datetime import datetime, timezone
from typing import Optional


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record

    Ledger records carry the acting operator, the action tag and the
    resource as ``<kind>:<id>``; the resource is also split into
    ``entity_kind``/``entity_id`` so log queries can filter on either.
    """

    def format(self, record):
        resource = getattr(record, 'resource', None)
        entity_kind, _, entity_id = resource.partition(":") if resource else (None, "", None)

        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "operator": getattr(record, 'operator', None),
            "action": getattr(record, 'action', None),
            "resource": resource,
            "entity_kind": entity_kind if entity_id else None,
            "entity_id": entity_id or None,
            "correlation_id": getattr(record, 'correlation_id', None),
            "extra": getattr(record, 'extra', None)
        }

        # Remove None values
        log_entry = {k: v for k, v in log_entry.items() if v is not None}

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "bank_ledger",
                  log_format: str = "json") -> logging.Logger:
    """
    Setup structured logging for the ledger.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Name of the root ledger logger
        log_format: "json" for structured output, anything else for plain text

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    # Remove existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def get_logger(name: str = "bank_ledger") -> logging.Logger:
    """Get logger instance"""
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None, exc_info: bool = False):
    """
    Log an action with structured data.

    Args:
        logger: Logger instance
        level: Log level (info, warning, error, etc.)
        message: Log message
        user_id: Operator performing the action
        action: Action tag (deposit, fd_close, ...)
        resource: Resource acted upon, as "<kind>:<id>"
        correlation_id: Correlation ID for request tracing
        extra: Additional structured data
        exc_info: Attach the exception currently being handled
    """
    log_level = getattr(logging, level.upper())
    if not logger.isEnabledFor(log_level):
        return

    record = logger.makeRecord(
        logger.name, log_level, __name__, 0, message, (),
        _current_exc_info() if exc_info else None
    )

    if user_id:
        record.operator = user_id
    if action:
        record.action = action
    if resource:
        record.resource = resource
    if correlation_id:
        record.correlation_id = correlation_id
    if extra:
        record.extra = extra

    logger.handle(record)


def _current_exc_info():
    info = sys.exc_info()
    return info if info[0] is not None else None
