"""
Structured JSON logging for production environments.

Enables correlation IDs, structured data, and queryable logs.
"""

import orjson
import logging
import uuid
import re
from typing import Optional
from datetime import datetime, timezone
from contextvars import ContextVar

# Context-local correlation ID storage
_correlation_id: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)


class CredentialRedactionFilter(logging.Filter):
    """
    Security filter that redacts credentials from log messages.

    Prevents session tokens, passwords and API keys from leaking into logs,
    exception messages, or debug output.

    - Redacts CST and X-SECURITY-TOKEN header values
    - Redacts bearer / OAuth access and refresh tokens
    - Redacts passwords and API keys in key=value or JSON form

    Usage:
        >>> handler = logging.StreamHandler()
        >>> handler.addFilter(CredentialRedactionFilter())
        >>> logger.addHandler(handler)
    """

    # Session token headers, as dict reprs or raw header lines
    SESSION_TOKEN_PATTERN = re.compile(
        r'((?:X-SECURITY-TOKEN|CST)["\']?\s*[:=]\s*["\']?)[A-Za-z0-9+/=_\-]{8,}',
        re.IGNORECASE
    )
    BEARER_PATTERN = re.compile(r'(Bearer\s+)[A-Za-z0-9\-._~+/=]{8,}', re.IGNORECASE)
    # Keep the prefix (key=), replace the value
    SECRET_PATTERN = re.compile(
        r'((?:access_token|refresh_token|password|api[_-]?key|X-IG-API-KEY)["\']?\s*[:=]\s*["\']?)'
        r'[^"\'\s,}]+',
        re.IGNORECASE
    )
    # Streaming password: CST-<cst>|XST-<token>
    STREAMING_PASSWORD_PATTERN = re.compile(r'CST-[^|\s"\']+\|XST-[^\s"\',}]+')

    def filter(self, record: logging.LogRecord) -> bool:
        """
        Redact credentials from log record.

        Args:
            record: Log record to filter

        Returns:
            Always True (record is never filtered out, just sanitized)
        """
        if record.msg:
            record.msg = self._redact_credentials(str(record.msg))

        if record.args:
            if isinstance(record.args, dict):
                record.args = {
                    k: self._redact_credentials(str(v))
                    for k, v in record.args.items()
                }
            elif isinstance(record.args, tuple):
                record.args = tuple(
                    self._redact_credentials(str(arg))
                    for arg in record.args
                )

        if record.exc_text:
            record.exc_text = self._redact_credentials(record.exc_text)

        return True

    def _redact_credentials(self, text: str) -> str:
        """
        Redact all credential patterns from text.

        Args:
            text: Text to redact

        Returns:
            Text with credentials redacted
        """
        if not text:
            return text

        text = self.STREAMING_PASSWORD_PATTERN.sub('CST-[REDACTED]|XST-[REDACTED]', text)
        text = self.SESSION_TOKEN_PATTERN.sub(r'\1[REDACTED]', text)
        text = self.BEARER_PATTERN.sub(r'\1[REDACTED]', text)
        text = self.SECRET_PATTERN.sub(r'\1[REDACTED]', text)

        return text


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs logs as JSON for easy parsing by log aggregators.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = get_correlation_id()
        if correlation_id:
            log_data["correlation_id"] = correlation_id

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info)
            }

        return orjson.dumps(log_data, default=str).decode("utf-8")


class StructuredLogger:
    """
    Structured logger wrapper with correlation ID support.

    Provides structured logging methods with automatic correlation tracking.
    """

    def __init__(self, name: str):
        """Initialize structured logger."""
        self.logger = logging.getLogger(name)

    def _log(
        self,
        level: int,
        event: str,
        message: Optional[str] = None,
        **fields
    ) -> None:
        """Log structured event."""
        log_message = f"{event}: {message}" if message else event

        extra_fields = {"event": event}
        extra_fields.update(fields)

        self.logger.log(level, log_message, extra={'extra_fields': extra_fields})

    def debug(self, event: str, message: Optional[str] = None, **fields) -> None:
        """Log debug event."""
        self._log(logging.DEBUG, event, message, **fields)

    def info(self, event: str, message: Optional[str] = None, **fields) -> None:
        """
        Log info event.

        Example:
            >>> logger.info(
            ...     "credentials_renewed",
            ...     "OAuth token refreshed",
            ...     account_id="ABC123",
            ...     expires_in=60
            ... )

        Output (JSON):
            {
              "timestamp": "2025-10-25T23:48:23.456000+00:00",
              "level": "INFO",
              "logger": "ig_client.utils.retry",
              "message": "credentials_renewed: OAuth token refreshed",
              "correlation_id": "req_abc123",
              "event": "credentials_renewed",
              "account_id": "ABC123",
              "expires_in": 60
            }
        """
        self._log(logging.INFO, event, message, **fields)

    def warning(self, event: str, message: Optional[str] = None, **fields) -> None:
        """Log warning event."""
        self._log(logging.WARNING, event, message, **fields)

    def error(self, event: str, message: Optional[str] = None, **fields) -> None:
        """Log error event."""
        self._log(logging.ERROR, event, message, **fields)

    def exception(self, event: str, message: Optional[str] = None, **fields) -> None:
        """Log exception with traceback."""
        self.logger.exception(f"{event}: {message}" if message else event, extra={'extra_fields': fields})


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """
    Set correlation ID for current context.

    Args:
        correlation_id: Correlation ID (generates UUID if None)

    Returns:
        The correlation ID set

    Example:
        >>> correlation_id = set_correlation_id()
        >>> client.crawl_market_hierarchy()  # All logs carry this correlation_id
    """
    if correlation_id is None:
        correlation_id = f"req_{uuid.uuid4().hex[:12]}"

    _correlation_id.set(correlation_id)
    return correlation_id


def get_correlation_id() -> Optional[str]:
    """Get current correlation ID."""
    return _correlation_id.get()


def clear_correlation_id() -> None:
    """Clear correlation ID from current context."""
    _correlation_id.set(None)


def get_logger(name: str) -> StructuredLogger:
    """
    Get structured logger instance.

    Example:
        >>> logger = get_logger("ig_client.navigation")
        >>> logger.info("crawl_finished", markets=120, nodes=14)
    """
    return StructuredLogger(name)
