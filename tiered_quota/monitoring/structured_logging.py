"""Structured logging with correlation IDs for quota decisions."""

import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog
from structlog.types import FilteringBoundLogger

from ..config import LoggingConfig, get_config

# Context variables for correlation IDs
correlation_id: ContextVar[str] = ContextVar('correlation_id', default='')
user_id: ContextVar[str] = ContextVar('user_id', default='')

_CONTEXT_VARS = {
    'correlation_id': correlation_id,
    'user_id': user_id,
}


class CorrelationIDProcessor:
    """Processor to add correlation IDs to log records."""

    def __call__(self, logger: FilteringBoundLogger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        """Add correlation context to log events."""
        event_dict['correlation_id'] = correlation_id.get() or self._generate_correlation_id()
        if user_id.get():
            event_dict['user_id'] = user_id.get()

        if 'timestamp' not in event_dict:
            event_dict['timestamp'] = time.time()

        return event_dict

    def _generate_correlation_id(self) -> str:
        """Generate a new correlation ID."""
        new_id = str(uuid.uuid4())
        correlation_id.set(new_id)
        return new_id


class QuotaContextProcessor:
    """Processor to add the subject and action being metered."""

    def __call__(self, logger: FilteringBoundLogger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        """Add quota request context to log events."""
        # Import here to avoid circular imports
        from ..utils.request_context import current_action, current_subject

        subject = current_subject.get()
        action = current_action.get()

        if subject and 'subject' not in event_dict:
            event_dict['subject'] = subject
        if action and 'action' not in event_dict:
            event_dict['action'] = action

        return event_dict


class SensitiveDataFilter:
    """Filter sensitive data from log records."""

    SENSITIVE_KEYS = {
        'password', 'token', 'secret', 'credential', 'authorization',
        'api_key', 'access_token', 'redis_url'
    }

    def __call__(self, logger: FilteringBoundLogger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        """Filter sensitive data from log events."""
        return self._filter_dict(event_dict)

    def _filter_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively filter sensitive data from dictionaries."""
        filtered = {}

        for key, value in data.items():
            if isinstance(key, str) and any(sensitive in key.lower() for sensitive in self.SENSITIVE_KEYS):
                filtered[key] = '[REDACTED]'
            elif isinstance(value, dict):
                filtered[key] = self._filter_dict(value)
            elif isinstance(value, list):
                filtered[key] = [self._filter_dict(item) if isinstance(item, dict) else item for item in value]
            else:
                filtered[key] = value

        return filtered


class StructuredLogger:
    """Structured logger with correlation support."""

    def __init__(self, logging_config: Optional[LoggingConfig] = None):
        self.logging_config = logging_config or get_config().logging
        self._configure_structlog()

    def _configure_structlog(self):
        """Configure structlog with processors and formatters."""
        processors = [
            CorrelationIDProcessor(),
            QuotaContextProcessor(),
            SensitiveDataFilter(),
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
        ]

        if self.logging_config.format == "json":
            processors.append(structlog.processors.JSONRenderer())
        else:
            processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

        structlog.configure(
            processors=processors,
            wrapper_class=structlog.make_filtering_bound_logger(
                getattr(logging, self.logging_config.level)
            ),
            logger_factory=structlog.WriteLoggerFactory(),
            cache_logger_on_first_use=True,
        )

    def get_logger(self, name: str = None) -> FilteringBoundLogger:
        """Get a configured structured logger."""
        return structlog.get_logger(name)


class LoggingContext:
    """Context manager for setting correlation IDs and context."""

    def __init__(self, **context_data):
        self.context_data = context_data
        self.tokens = {}

    def __enter__(self):
        """Set context variables."""
        for key, value in self.context_data.items():
            var = _CONTEXT_VARS.get(key)
            if var is not None:
                self.tokens[key] = var.set(str(value))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Reset context variables."""
        for key, token in self.tokens.items():
            _CONTEXT_VARS[key].reset(token)


class AuditLogger:
    """Specialized logger for quota audit events."""

    def __init__(self):
        self.logger = structlog.get_logger("audit")

    def log_quota_decision(self, subject: str, action: str, tier: str, allowed: bool,
                           reason: str = None, count: int = None, limit: int = None,
                           retry_after_seconds: int = None):
        """Log a quota decision. Denials are expected outcomes and stay at info."""
        self.logger.info(
            "quota_decision",
            subject=subject,
            action=action,
            tier=tier,
            allowed=allowed,
            reason=reason,
            count=count,
            limit=limit,
            retry_after_seconds=retry_after_seconds,
            event_type="authorization"
        )

    def log_reservation(self, subject: str, action: str, result: str):
        """Log how a two-phase reservation was settled."""
        self.logger.info(
            "quota_reservation",
            subject=subject,
            action=action,
            result=result,
            event_type="reservation"
        )

    def log_store_failure(self, backend: str, operation: str, error_message: str,
                          subject: str = None, action: str = None):
        """Log an infrastructure failure of the counter store."""
        self.logger.error(
            "quota_store_failure",
            backend=backend,
            operation=operation,
            error_message=error_message,
            subject=subject,
            action=action,
            event_type="error"
        )


# Global instances
_structured_logger: Optional[StructuredLogger] = None
_audit_logger: Optional[AuditLogger] = None


def get_structured_logger() -> StructuredLogger:
    """Get the global structured logger instance."""
    global _structured_logger
    if _structured_logger is None:
        _structured_logger = StructuredLogger()
    return _structured_logger


def get_audit_logger() -> AuditLogger:
    """Get the global audit logger instance."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger


def setup_structured_logging(logging_config: Optional[LoggingConfig] = None):
    """Initialize structured logging for the application."""
    global _structured_logger
    _structured_logger = StructuredLogger(logging_config)

    # Configure standard library logging to write plain lines to stdout too
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
        level=getattr(logging, _structured_logger.logging_config.level),
    )

    logger = structlog.get_logger("tiered_quota")
    logger.info("Structured logging initialized", component="logging")
