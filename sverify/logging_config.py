"""
Logging configuration for SVerify.

Provides structured JSON logging for admission audit trails and debugging.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Iterable, Optional

# Context variable for request ID tracking
request_id_var: ContextVar[str] = ContextVar('request_id', default='')


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs logs in a consistent JSON format suitable for
    log aggregation systems like ELK, Splunk, or CloudWatch.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class AuditLogger:
    """
    Specialized logger for admission audit events.

    Records every admission request, its decision, and the
    security-relevant rejections (bot detection, rate limiting).
    """

    def __init__(self, name: str = "sverify.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, message: str, **fields) -> None:
        if not self._logger.isEnabledFor(level):
            return
        extra = {
            "event_type": event_type,
            "request_id": request_id_var.get(),
            **fields
        }
        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "",
            0,
            f"{event_type}: {message}",
            (),
            None
        )
        record.extra_fields = extra
        self._logger.handle(record)

    def admission_request(self, ip: Optional[str], user_agent: Optional[str]) -> None:
        """Log an incoming admission request."""
        self._log(
            logging.INFO,
            "ADMISSION_REQUEST",
            f"Admission requested for {ip}",
            ip=ip,
            user_agent=user_agent
        )

    def admission_decision(
        self,
        ip: Optional[str],
        admitted: bool,
        reason: Optional[str] = None,
        trust_score: Optional[str] = None,
        suspicious_count: Optional[int] = None
    ) -> None:
        """Log the outcome of an admission request."""
        level = logging.INFO if admitted else logging.WARNING
        outcome = "ADMITTED" if admitted else f"REJECTED ({reason})"
        self._log(
            level,
            "ADMISSION_DECISION",
            f"{ip} {outcome}",
            ip=ip,
            admitted=admitted,
            reason=reason,
            trust_score=trust_score,
            suspicious_count=suspicious_count
        )

    def bot_detected(self, ip: str, signals: Iterable[str]) -> None:
        """Log a critical signal violation."""
        signals = list(signals)
        self._log(
            logging.WARNING,
            "BOT_DETECTED",
            f"Critical signals from {ip}: {', '.join(signals)}",
            ip=ip,
            signals=signals
        )

    def rate_limit_exceeded(self, ip: str, scope: str) -> None:
        """Log a rate limit or debounce rejection."""
        self._log(
            logging.WARNING,
            "RATE_LIMIT_EXCEEDED",
            f"Rate limit exceeded ({scope}) for {ip}",
            ip=ip,
            scope=scope
        )

    def store_error(self, operation: str, error: str) -> None:
        """Log a ticket store persistence failure."""
        self._log(
            logging.ERROR,
            "STORE_ERROR",
            f"Ticket store {operation} failed: {error}",
            operation=operation,
            error=error
        )


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting (recommended for production)
        log_file: Optional file path for log output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def set_request_id(request_id: Optional[str] = None) -> str:
    """
    Set the request ID for the current context.

    Args:
        request_id: Request ID to set, or None to generate one

    Returns:
        The request ID that was set
    """
    if not request_id:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def get_request_id() -> str:
    """Get the current request ID."""
    return request_id_var.get()


# Global audit logger instance
audit_log = AuditLogger()
