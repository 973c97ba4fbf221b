"""Shared fixtures for the tiered quota test suite."""

from datetime import datetime, timezone

import pytest
from prometheus_client import CollectorRegistry

from tiered_quota.config import QuotaSettings
from tiered_quota.monitoring.metrics import QuotaMetrics
from tiered_quota.rate_limiting import (
    InMemoryCounterStore,
    ManualClock,
    QuotaEvaluator,
    build_policy_table,
)

T0 = datetime(2024, 3, 10, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    return ManualClock(T0)


@pytest.fixture
def metrics():
    """Metrics on a private registry so tests do not share samples."""
    return QuotaMetrics(CollectorRegistry())


@pytest.fixture
def policies():
    return build_policy_table(QuotaSettings())


@pytest.fixture
def store(clock, metrics):
    return InMemoryCounterStore(clock=clock, metrics=metrics)


@pytest.fixture
def evaluator(policies, store, clock, metrics):
    return QuotaEvaluator(policies, store, clock=clock, metrics=metrics)
