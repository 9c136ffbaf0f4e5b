"""
Logging configuration for the campus role engine.

This module provides centralized logging configuration with support for
structured logging, different log levels, and json or text output.
"""

import logging
import logging.config
import sys
from typing import Any, Dict, Optional


def get_logging_config(
    log_level: str = "INFO",
    log_format: str = "json",
    log_file: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Get logging configuration dictionary.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Log format ('json' or 'text')
        log_file: Optional log file path

    Returns:
        Logging configuration dictionary
    """
    formatters = {
        "default": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S"
        },
        "detailed": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(lineno)d - %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S"
        },
        "json": {
            "()": "pythonjsonlogger.json.JsonFormatter",
            "format": "%(asctime)s %(name)s %(levelname)s %(module)s %(lineno)d %(message)s"
        },
    }

    formatter_name = "json" if log_format == "json" else "detailed"

    handlers = {
        "console": {
            "class": "logging.StreamHandler",
            "level": log_level,
            "formatter": formatter_name,
            "stream": sys.stdout
        }
    }

    if log_file:
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": log_level,
            "formatter": formatter_name,
            "filename": log_file,
            "maxBytes": 10485760,  # 10MB
            "backupCount": 5,
            "encoding": "utf8"
        }

    loggers = {
        "": {  # Root logger
            "level": log_level,
            "handlers": list(handlers.keys()),
            "propagate": False
        },
        "campus_roles": {
            "level": log_level,
            "handlers": list(handlers.keys()),
            "propagate": False
        },
        "sqlalchemy.engine": {
            "level": "WARNING",
            "handlers": list(handlers.keys()),
            "propagate": False
        },
        "httpx": {
            "level": "WARNING",
            "handlers": list(handlers.keys()),
            "propagate": False
        },
    }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": formatters,
        "handlers": handlers,
        "loggers": loggers
    }


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "text",
    log_file: Optional[str] = None,
) -> None:
    """
    Setup logging configuration.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Log format ('json' or 'text')
        log_file: Optional log file path
    """
    config = get_logging_config(
        log_level=log_level,
        log_format=log_format,
        log_file=log_file,
    )

    logging.config.dictConfig(config)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with the specified name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


class StructuredLogger:
    """
    Structured logger for consistent log message formatting.

    This class provides methods for logging role lifecycle and security
    events with consistent field names.
    """

    def __init__(self, name: str):
        """Initialize structured logger.

        Args:
            name: Logger name
        """
        self.logger = get_logger(name)

    def log_role_event(
        self,
        action: str,
        user_id: str,
        role: Optional[str] = None,
        performed_by: Optional[str] = None,
        institution_id: Optional[str] = None,
        **kwargs
    ):
        """Log a role lifecycle event.

        Args:
            action: Lifecycle action (requested, approved, assigned...)
            user_id: Subject user
            role: Role involved in the event
            performed_by: Actor that triggered the event
            institution_id: Institution scope
            **kwargs: Additional fields to log
        """
        log_data = {
            "event": "role_event",
            "action": action,
            "user_id": user_id,
        }

        if role:
            log_data["role"] = role
        if performed_by:
            log_data["performed_by"] = performed_by
        if institution_id:
            log_data["institution_id"] = institution_id

        log_data.update(kwargs)

        self.logger.info("Role event", extra=log_data)

    def log_security_event(
        self,
        event_type: str,
        user_id: str,
        severity: str = "low",
        description: Optional[str] = None,
        **kwargs
    ):
        """Log a security-relevant event.

        Args:
            event_type: Event name (role_approved, user_blocked...)
            user_id: Subject user
            severity: low, medium, high or critical
            description: Human readable summary
            **kwargs: Additional fields to log
        """
        log_data = {
            "event": "security_event",
            "event_type": event_type,
            "user_id": user_id,
            "severity": severity,
        }

        if description:
            log_data["description"] = description

        log_data.update(kwargs)

        if severity in ("high", "critical"):
            self.logger.warning("Security event", extra=log_data)
        else:
            self.logger.info("Security event", extra=log_data)

    def log_sweep(
        self,
        sweep: str,
        processed: int,
        successful: int,
        failed: int,
        duration_ms: float,
        **kwargs
    ):
        """Log the outcome of a background sweep.

        Args:
            sweep: Sweep name
            processed: Items examined
            successful: Items handled
            failed: Items that raised
            duration_ms: Wall time of the sweep in milliseconds
            **kwargs: Additional fields to log
        """
        log_data = {
            "event": "sweep",
            "sweep": sweep,
            "processed": processed,
            "successful": successful,
            "failed": failed,
            "duration_ms": duration_ms,
        }
        log_data.update(kwargs)

        if failed:
            self.logger.warning("Sweep finished with failures", extra=log_data)
        else:
            self.logger.info("Sweep finished", extra=log_data)

    def info(self, message: str, **kwargs):
        """Log info message with structured data."""
        self.logger.info(message, extra=kwargs)

    def warning(self, message: str, **kwargs):
        """Log warning message with structured data."""
        self.logger.warning(message, extra=kwargs)

    def error(self, message: str, **kwargs):
        """Log error message with structured data."""
        self.logger.error(message, extra=kwargs)

    def debug(self, message: str, **kwargs):
        """Log debug message with structured data."""
        self.logger.debug(message, extra=kwargs)


# Structured logger for approval, denial and block events
security_logger = StructuredLogger("campus_roles.security")
