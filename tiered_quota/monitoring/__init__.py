"""Monitoring and observability components for the tiered quota service."""

from .metrics import QuotaMetrics, get_metrics, timed_check
from .structured_logging import (
    LoggingContext,
    get_audit_logger,
    get_structured_logger,
    setup_structured_logging,
)

__all__ = [
    'QuotaMetrics', 'get_metrics', 'timed_check',
    'get_structured_logger', 'get_audit_logger',
    'setup_structured_logging', 'LoggingContext',
]
