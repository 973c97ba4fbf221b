"""Tiered quota evaluation: policies, windows, counter stores and the evaluator."""

from .clock import Clock, ManualClock, SystemClock
from .errors import (
    CounterNotFoundError,
    QuotaDeniedError,
    QuotaError,
    StoreUnavailableError,
    TwoPhaseRequiredError,
    UnknownActionError,
)
from .evaluator import (
    Decision,
    DenialReason,
    QuotaEvaluator,
    Reservation,
    build_evaluator,
    enforce_quota,
    get_quota_evaluator,
    set_quota_evaluator,
)
from .policy import (
    UNLIMITED,
    ActionKind,
    FailureMode,
    QuotaPolicy,
    Tier,
    TierLimit,
    TierPolicyTable,
    WindowKind,
    build_policy_table,
)
from .store import (
    CounterStore,
    InMemoryCounterStore,
    QuotaCounter,
    RedisCounterStore,
    create_counter_store,
)
from .windows import WindowManager, start_of_next_month

__all__ = [
    'Clock', 'SystemClock', 'ManualClock',
    'QuotaError', 'StoreUnavailableError', 'CounterNotFoundError', 'UnknownActionError', 'QuotaDeniedError',
    'TwoPhaseRequiredError',
    'QuotaEvaluator', 'Decision', 'DenialReason', 'Reservation',
    'build_evaluator', 'enforce_quota', 'get_quota_evaluator', 'set_quota_evaluator',
    'UNLIMITED', 'Tier', 'ActionKind', 'WindowKind', 'FailureMode', 'TierLimit', 'QuotaPolicy',
    'TierPolicyTable', 'build_policy_table',
    'CounterStore', 'InMemoryCounterStore', 'RedisCounterStore', 'QuotaCounter', 'create_counter_store',
    'WindowManager', 'start_of_next_month',
]
