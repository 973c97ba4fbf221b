"""Quota evaluator: decides whether a metered action may proceed."""

import logging
import math
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from functools import wraps
from typing import Any, Dict, Optional, Union

from ..monitoring import get_audit_logger, get_metrics, get_structured_logger, timed_check
from ..monitoring.metrics import QuotaMetrics
from ..utils.request_context import quota_context
from .clock import Clock, SystemClock, ensure_utc
from .errors import (
    CounterNotFoundError,
    QuotaDeniedError,
    StoreUnavailableError,
    TwoPhaseRequiredError,
)
from .policy import UNLIMITED, ActionKind, Tier, TierLimit, TierPolicyTable
from .store import CounterStore, QuotaCounter
from .windows import WindowManager

logger = logging.getLogger(__name__)


class DenialReason(Enum):
    """Why a check was denied."""
    TIER_GATE = "tier_gate_rejected"     # tier has no allowance; upgrade required
    QUOTA_EXHAUSTED = "quota_exhausted"  # allowance used up; retry later


@dataclass(frozen=True)
class Decision:
    """Outcome of a quota check."""

    allowed: bool
    remaining: int
    action: ActionKind
    tier: Tier
    limit: int
    retry_after: Optional[timedelta] = None
    reason: Optional[DenialReason] = None
    reset_at: Optional[datetime] = None
    required_tier: Optional[Tier] = None
    count: Optional[int] = None
    window_start: Optional[datetime] = None

    @property
    def outcome(self) -> str:
        return "allowed" if self.allowed else self.reason.value

    @property
    def unlimited(self) -> bool:
        return self.limit == UNLIMITED

    @property
    def upgrade_required(self) -> bool:
        return self.reason == DenialReason.TIER_GATE

    @property
    def retry_after_seconds(self) -> Optional[int]:
        """Whole seconds to wait, rounded up."""
        if self.retry_after is None:
            return None
        return max(1, math.ceil(self.retry_after.total_seconds()))

    @property
    def message(self) -> str:
        if self.allowed:
            return f"{self.action.value} allowed"
        if self.reason == DenialReason.TIER_GATE:
            required = self.required_tier.value if self.required_tier else "a higher"
            return f"{self.action.value} requires {required} subscription or higher"
        return f"{self.action.value} limit reached, try again in {self.retry_after_seconds} seconds"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "action": self.action.value,
            "tier": self.tier.value,
            "limit": self.limit,
            "remaining": self.remaining,
            "reason": self.reason.value if self.reason else None,
            "retry_after": self.retry_after_seconds,
            "reset_at": self.reset_at.isoformat() if self.reset_at else None,
            "upgrade_required": self.upgrade_required,
            "required_tier": self.required_tier.value if self.required_tier else None,
        }


@dataclass
class Reservation:
    """
    A slot taken by QuotaEvaluator.reserve.

    Settle it with commit (the attempt failed, keep it counted) or release (the
    attempt succeeded, give the slot back).
    """

    subject: str
    action: ActionKind
    decision: Decision
    settled: bool = False
    failed: bool = False

    @property
    def allowed(self) -> bool:
        return self.decision.allowed

    def mark_failed(self) -> None:
        self.failed = True


class QuotaEvaluator:
    """
    Decision engine for tiered quotas.

    Per (subject, action) a counter is Active while count < max and Exhausted
    once it reaches max; any check after the window expired starts a fresh
    window with count 1. All counter mutations go through the store's atomic
    operations.
    """

    def __init__(self, policies: TierPolicyTable, store: CounterStore,
                 clock: Optional[Clock] = None,
                 windows: Optional[WindowManager] = None,
                 grace: timedelta = timedelta(seconds=60),
                 metrics: Optional[QuotaMetrics] = None):
        self.policies = policies
        self.store = store
        self.clock = clock or SystemClock()
        self.windows = windows or WindowManager()
        self.grace = grace
        self.metrics = metrics or get_metrics()

        # Logging
        self.logger = get_structured_logger().get_logger("quota_evaluator")
        self.audit_logger = get_audit_logger()

    async def check(self, subject: str, action: Union[ActionKind, str],
                    tier: Union[Tier, str, None], now: Optional[datetime] = None) -> Decision:
        """
        Check and, if allowed, consume one unit of the subject's quota.

        Denials come back as a Decision, never as an exception. Counter store
        failures raise StoreUnavailableError. Actions that count only failed
        attempts raise TwoPhaseRequiredError; use reserve() or attempt().
        """
        kind = ActionKind.parse(action)
        if self.policies.policy_for(kind).count_only_failures:
            raise TwoPhaseRequiredError(kind.value)
        return await self._evaluate(subject, kind, tier, now)

    @timed_check
    async def _evaluate(self, subject: str, kind: ActionKind,
                        tier: Union[Tier, str, None], now: Optional[datetime]) -> Decision:
        limit = self.policies.limit_for(kind, tier)
        resolved_tier = Tier.parse(tier) or Tier.FREE
        now = ensure_utc(now) if now is not None else self.clock.now()

        with quota_context(subject, kind.value):
            if limit.gated:
                decision = Decision(
                    allowed=False,
                    remaining=0,
                    action=kind,
                    tier=resolved_tier,
                    limit=0,
                    reason=DenialReason.TIER_GATE,
                    required_tier=self.policies.required_tier(kind),
                )
            elif limit.unlimited:
                decision = Decision(
                    allowed=True,
                    remaining=UNLIMITED,
                    action=kind,
                    tier=resolved_tier,
                    limit=UNLIMITED,
                )
            else:
                counter = await self._consume(subject, kind, limit, now)
                decision = self._decide(counter, kind, resolved_tier, limit, now)

            self._log_decision(subject, decision)
            return decision

    async def _consume(self, subject: str, action: ActionKind, limit: TierLimit,
                       now: datetime) -> QuotaCounter:
        """Count one use against the subject's current window."""
        try:
            counter = await self.store.peek(subject, action.value)

            if self.windows.is_expired(counter, limit, now):
                return await self._renew_window(subject, action, limit, now, counter)

            try:
                return await self.store.try_increment(subject, action.value)
            except CounterNotFoundError:
                # Record vanished between peek and increment; start over
                self.logger.debug(
                    f"Quota counter for {subject} disappeared, starting a new window",
                    subject=subject,
                    action=action.value,
                    event_type="quota_counter_missing"
                )
                return await self._renew_window(subject, action, limit, now, None)

        except StoreUnavailableError as e:
            self.audit_logger.log_store_failure(
                backend=self.store.backend_name,
                operation=e.operation or "unknown",
                error_message=str(e),
                subject=subject,
                action=action.value,
            )
            raise

    async def _renew_window(self, subject: str, action: ActionKind, limit: TierLimit,
                            now: datetime, stale: Optional[QuotaCounter]) -> QuotaCounter:
        ttl = self.windows.retention(limit, now, self.grace)
        counter = await self.store.reset_and_increment(
            subject,
            action.value,
            now,
            ttl=ttl,
            stale_start=stale.window_start if stale is not None else None,
        )

        if counter.count == 1:
            self.logger.debug(
                f"Quota window started for {subject}",
                subject=subject,
                action=action.value,
                window_start=counter.window_start.isoformat(),
                event_type="quota_window_started"
            )
        return counter

    def _decide(self, counter: QuotaCounter, action: ActionKind, tier: Tier,
                limit: TierLimit, now: datetime) -> Decision:
        reset_at = self.windows.next_reset(counter, limit, now)

        if counter.count <= limit.max_requests:
            return Decision(
                allowed=True,
                remaining=limit.max_requests - counter.count,
                action=action,
                tier=tier,
                limit=limit.max_requests,
                reset_at=reset_at,
                count=counter.count,
                window_start=counter.window_start,
            )

        return Decision(
            allowed=False,
            remaining=0,
            action=action,
            tier=tier,
            limit=limit.max_requests,
            retry_after=self.windows.retry_after(counter, limit, now),
            reason=DenialReason.QUOTA_EXHAUSTED,
            reset_at=reset_at,
            count=counter.count,
            window_start=counter.window_start,
        )

    def _log_decision(self, subject: str, decision: Decision) -> None:
        if decision.allowed:
            self.logger.debug(
                f"Quota consumed for {subject}",
                subject=subject,
                action=decision.action.value,
                tier=decision.tier.value,
                count=decision.count,
                remaining=decision.remaining,
                event_type="quota_consumed"
            )
            return

        self.audit_logger.log_quota_decision(
            subject=subject,
            action=decision.action.value,
            tier=decision.tier.value,
            allowed=False,
            reason=decision.reason.value,
            count=decision.count,
            limit=decision.limit,
            retry_after_seconds=decision.retry_after_seconds,
        )

    # --------- two-phase API ---------

    async def reserve(self, subject: str, action: Union[ActionKind, str],
                      tier: Union[Tier, str, None],
                      now: Optional[datetime] = None) -> Reservation:
        """
        Take a slot before running an action whose successes should not count.

        The slot is taken atomically like any check, so concurrent attempts
        cannot overshoot the limit. Denied reservations are already settled.
        """
        decision = await self._evaluate(subject, ActionKind.parse(action), tier, now)
        return Reservation(
            subject=subject,
            action=decision.action,
            decision=decision,
            settled=not decision.allowed,
        )

    async def commit(self, reservation: Reservation) -> None:
        """The attempt failed: keep the slot consumed."""
        if reservation.settled:
            return
        reservation.settled = True
        self.metrics.record_reservation(reservation.action.value, "committed")
        self.audit_logger.log_reservation(reservation.subject, reservation.action.value, "committed")

    async def release(self, reservation: Reservation) -> None:
        """The attempt succeeded: return the slot if its window is still current."""
        if reservation.settled:
            return
        reservation.settled = True

        decision = reservation.decision
        if decision.window_start is not None:
            await self.store.release(reservation.subject, reservation.action.value,
                                     decision.window_start)

        self.metrics.record_reservation(reservation.action.value, "released")
        self.audit_logger.log_reservation(reservation.subject, reservation.action.value, "released")

    @asynccontextmanager
    async def attempt(self, subject: str, action: Union[ActionKind, str],
                      tier: Union[Tier, str, None], now: Optional[datetime] = None):
        """
        Reserve a slot for the block.

        For actions that count only failures, the slot is released on normal
        exit unless the reservation was marked failed. Otherwise every attempt
        stays counted. If the block raises, the slot stays consumed.
        """
        reservation = await self.reserve(subject, action, tier, now)
        count_only_failures = self.policies.policy_for(reservation.action).count_only_failures
        try:
            yield reservation
        except BaseException:
            await self.commit(reservation)
            raise
        if reservation.failed or not count_only_failures:
            await self.commit(reservation)
        else:
            await self.release(reservation)

    # --------- read-only views ---------

    async def status(self, subject: str, tier: Union[Tier, str, None],
                     now: Optional[datetime] = None) -> Dict[str, Any]:
        """Current usage of every action for a subject, without consuming anything."""
        resolved_tier = Tier.parse(tier) or Tier.FREE
        now = ensure_utc(now) if now is not None else self.clock.now()
        status: Dict[str, Any] = {}

        for action in self.policies.actions():
            limit = self.policies.limit_for(action, resolved_tier)
            entry: Dict[str, Any] = {
                "limit": limit.max_requests,
                "window_kind": limit.window_kind.value,
                "window_seconds": int(limit.window_duration.total_seconds()),
            }

            if limit.gated or limit.unlimited:
                entry.update({"used": 0, "remaining": limit.max_requests, "reset_at": None})
            else:
                counter = await self.store.peek(subject, action.value)
                used = 0 if self.windows.is_expired(counter, limit, now) else counter.count
                entry.update({
                    "used": used,
                    "remaining": max(0, limit.max_requests - used),
                    "reset_at": self.windows.next_reset(counter, limit, now).isoformat() if used else None,
                })

            status[action.value] = entry

        return status


def build_evaluator(config, store: Optional[CounterStore] = None,
                    clock: Optional[Clock] = None,
                    metrics: Optional[QuotaMetrics] = None) -> QuotaEvaluator:
    """Construct an evaluator from a ServiceConfig."""
    from .policy import build_policy_table
    from .store import create_counter_store

    clock = clock or SystemClock()
    metrics = metrics or get_metrics()
    store = store or create_counter_store(config.store, clock=clock, metrics=metrics)

    return QuotaEvaluator(
        policies=build_policy_table(config.quotas),
        store=store,
        clock=clock,
        grace=timedelta(seconds=config.store.grace_seconds),
        metrics=metrics,
    )


# Global evaluator instance
_quota_evaluator: Optional[QuotaEvaluator] = None


def get_quota_evaluator() -> QuotaEvaluator:
    """Get the global quota evaluator, built from the global configuration."""
    global _quota_evaluator
    if _quota_evaluator is None:
        from ..config import get_config
        _quota_evaluator = build_evaluator(get_config())
    return _quota_evaluator


def set_quota_evaluator(evaluator: Optional[QuotaEvaluator]) -> None:
    """Replace the global evaluator (None clears it)."""
    global _quota_evaluator
    _quota_evaluator = evaluator


# Decorator for quota enforcement
def enforce_quota(action: Union[ActionKind, str], evaluator: Optional[QuotaEvaluator] = None):
    """
    Decorator to enforce a quota on a coroutine.

    The wrapped function must be called with ``subject`` and ``tier`` keyword
    arguments. Raises QuotaDeniedError when the check is denied.
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            quota = evaluator or get_quota_evaluator()
            subject = kwargs.get('subject', 'unknown')
            tier = kwargs.get('tier')

            decision = await quota.check(subject, action, tier)
            if not decision.allowed:
                raise QuotaDeniedError(decision)

            return await func(*args, **kwargs)

        return wrapper

    return decorator
