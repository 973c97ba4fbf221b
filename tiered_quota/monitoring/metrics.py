"""Prometheus metrics collection for the tiered quota service."""

import logging
import time
from functools import wraps
from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

logger = logging.getLogger(__name__)


class QuotaMetrics:
    """Centralized metrics collection for quota decisions and counter stores."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self._init_decision_metrics()
        self._init_store_metrics()
        self._init_request_metrics()
        self._init_service_metrics()

        logger.info("Prometheus metrics initialized")

    def _init_decision_metrics(self):
        """Initialize quota decision metrics."""
        self.checks_total = Counter(
            'quota_checks_total',
            'Total number of quota checks',
            ['action', 'tier', 'outcome'],  # allowed, quota_exhausted, tier_gate_rejected, error
            registry=self.registry
        )

        self.check_duration = Histogram(
            'quota_check_duration_seconds',
            'Quota check duration in seconds',
            ['action'],
            buckets=[0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 1.0],
            registry=self.registry
        )

        self.reservations_total = Counter(
            'quota_reservations_total',
            'Two-phase reservations by how they were settled',
            ['action', 'result'],  # committed, released
            registry=self.registry
        )

    def _init_store_metrics(self):
        """Initialize counter store metrics."""
        self.store_operation_duration = Histogram(
            'quota_store_operation_seconds',
            'Counter store operation latency',
            ['backend', 'operation'],
            buckets=[0.0001, 0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 2.0],
            registry=self.registry
        )

        self.store_errors_total = Counter(
            'quota_store_errors_total',
            'Counter store failures',
            ['backend', 'operation'],
            registry=self.registry
        )

        self.active_counters = Gauge(
            'quota_active_counters',
            'Counters currently held by the store',
            ['backend'],
            registry=self.registry
        )

    def _init_request_metrics(self):
        """Initialize HTTP metrics."""
        self.http_requests_total = Counter(
            'quota_http_requests_total',
            'HTTP requests handled by the quota service',
            ['route', 'status'],
            registry=self.registry
        )

        self.request_duration = Histogram(
            'quota_http_request_duration_seconds',
            'HTTP request duration in seconds',
            ['route'],
            buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5],
            registry=self.registry
        )

    def _init_service_metrics(self):
        """Initialize service info metrics."""
        self.service_info = Info(
            'quota_service',
            'Tiered quota service information',
            registry=self.registry
        )

    def record_check(self, action: str, tier: str, outcome: str, duration: Optional[float] = None):
        """Record one quota decision."""
        self.checks_total.labels(action=action, tier=tier, outcome=outcome).inc()
        if duration is not None:
            self.check_duration.labels(action=action).observe(duration)

    def record_reservation(self, action: str, result: str):
        self.reservations_total.labels(action=action, result=result).inc()

    def observe_store_operation(self, backend: str, operation: str, duration: float):
        self.store_operation_duration.labels(backend=backend, operation=operation).observe(duration)

    def record_store_error(self, backend: str, operation: str):
        self.store_errors_total.labels(backend=backend, operation=operation).inc()

    def set_active_counters(self, backend: str, count: int):
        self.active_counters.labels(backend=backend).set(count)

    def record_http_request(self, route: str, status: int, duration: float):
        self.http_requests_total.labels(route=route, status=str(status)).inc()
        self.request_duration.labels(route=route).observe(duration)

    def set_service_info(self, version: str, environment: str, store_backend: str):
        self.service_info.info({
            "version": version,
            "environment": environment,
            "store_backend": store_backend,
        })

    def get_metrics(self) -> str:
        """Get metrics in Prometheus format."""
        return generate_latest(self.registry).decode('utf-8')


# Global metrics instance
_metrics: Optional[QuotaMetrics] = None


def get_metrics() -> QuotaMetrics:
    """Get the global metrics instance."""
    global _metrics
    if _metrics is None:
        _metrics = QuotaMetrics()
    return _metrics


def timed_check(func):
    """Decorator recording check latency and outcome for evaluator methods."""
    @wraps(func)
    async def wrapper(self, subject, action, tier=None, *args, **kwargs):
        metrics = self.metrics
        start_time = time.perf_counter()
        action_label = getattr(action, "value", str(action))
        tier_label = getattr(tier, "value", str(tier))

        try:
            decision = await func(self, subject, action, tier, *args, **kwargs)
        except Exception:
            metrics.record_check(action_label, tier_label, "error",
                                 time.perf_counter() - start_time)
            raise

        metrics.record_check(
            decision.action.value,
            decision.tier.value,
            decision.outcome,
            time.perf_counter() - start_time,
        )
        return decision

    return wrapper
