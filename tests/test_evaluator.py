"""Tests for the quota evaluator."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from tiered_quota.config import ActionPolicyConfig, QuotaSettings
from tiered_quota.rate_limiting import (
    UNLIMITED,
    ActionKind,
    CounterNotFoundError,
    DenialReason,
    InMemoryCounterStore,
    QuotaDeniedError,
    QuotaEvaluator,
    StoreUnavailableError,
    Tier,
    TwoPhaseRequiredError,
    UnknownActionError,
    build_policy_table,
    enforce_quota,
)


class YieldingCounterStore(InMemoryCounterStore):
    """In-memory store that suspends before every call, like a network round trip."""

    async def peek(self, subject, action):
        await asyncio.sleep(0)
        return await super().peek(subject, action)

    async def reset_and_increment(self, *args, **kwargs):
        await asyncio.sleep(0)
        return await super().reset_and_increment(*args, **kwargs)

    async def try_increment(self, subject, action):
        await asyncio.sleep(0)
        return await super().try_increment(subject, action)


class FailingCounterStore(InMemoryCounterStore):
    """Store whose backend is down."""

    async def peek(self, subject, action):
        async with self._operation("peek"):
            raise StoreUnavailableError("connection refused", operation="peek", backend=self.backend_name)


class VanishingCounterStore(InMemoryCounterStore):
    """Store whose record disappears between peek and increment."""

    async def try_increment(self, subject, action):
        self._entries.pop((subject, action), None)
        raise CounterNotFoundError(subject, action)


class TestFreeChatScenario:
    """Free tier, ai_chat, 5 per rolling 24 hours."""

    @pytest.mark.asyncio
    async def test_five_allowed_then_denied_then_reset(self, evaluator, clock):
        remaining = []
        for _ in range(5):
            decision = await evaluator.check("user:1", ActionKind.AI_CHAT, Tier.FREE)
            assert decision.allowed
            remaining.append(decision.remaining)
        assert remaining == [4, 3, 2, 1, 0]

        denied = await evaluator.check("user:1", ActionKind.AI_CHAT, Tier.FREE)
        assert not denied.allowed
        assert denied.reason == DenialReason.QUOTA_EXHAUSTED
        assert denied.remaining == 0
        assert denied.retry_after == timedelta(hours=24)
        assert denied.retry_after_seconds == 24 * 3600
        assert not denied.upgrade_required

        clock.advance(hours=24, seconds=1)
        renewed = await evaluator.check("user:1", ActionKind.AI_CHAT, Tier.FREE)
        assert renewed.allowed
        assert renewed.remaining == 4
        assert renewed.count == 1
        assert renewed.window_start == clock.now()

    @pytest.mark.asyncio
    async def test_retry_after_shrinks_as_time_passes(self, evaluator, clock):
        for _ in range(6):
            await evaluator.check("user:1", "ai_chat", "free")

        clock.advance(hours=20)
        denied = await evaluator.check("user:1", "ai_chat", "free")
        assert denied.retry_after == timedelta(hours=4)
        assert denied.reset_at == clock.now() + timedelta(hours=4)

    @pytest.mark.asyncio
    async def test_denied_checks_are_counted(self, evaluator, store):
        for _ in range(8):
            await evaluator.check("user:1", ActionKind.AI_CHAT, Tier.FREE)
        assert (await store.peek("user:1", "ai_chat")).count == 8


@pytest.mark.asyncio
async def test_monotonic_admission(clock, store, metrics):
    settings = QuotaSettings(actions={
        "ai_chat": ActionPolicyConfig(window_seconds=3600, free=7, pro=7, enterprise=7),
    })
    evaluator = QuotaEvaluator(build_policy_table(settings), store, clock=clock, metrics=metrics)

    outcomes = []
    for _ in range(20):
        outcomes.append((await evaluator.check("user:1", "ai_chat", "pro")).allowed)
        clock.advance(seconds=30)

    assert outcomes == [True] * 7 + [False] * 13


@pytest.mark.asyncio
async def test_calendar_window_resets_at_month_boundary(evaluator, clock):
    clock.set(datetime(2024, 3, 31, 23, 0, tzinfo=timezone.utc))
    for _ in range(100):
        assert (await evaluator.check("user:9", ActionKind.AI_SUGGESTION, Tier.PRO)).allowed

    denied = await evaluator.check("user:9", ActionKind.AI_SUGGESTION, Tier.PRO)
    assert denied.reason == DenialReason.QUOTA_EXHAUSTED
    assert denied.retry_after == timedelta(hours=1)
    assert denied.reset_at == datetime(2024, 4, 1, tzinfo=timezone.utc)

    clock.advance(hours=1)
    decision = await evaluator.check("user:9", ActionKind.AI_SUGGESTION, Tier.PRO)
    assert decision.allowed
    assert decision.remaining == 99


class TestTierGate:

    @pytest.mark.asyncio
    async def test_zero_allowance_is_a_tier_gate(self, evaluator, store):
        decision = await evaluator.check("user:1", ActionKind.AI_SUGGESTION, Tier.FREE)

        assert not decision.allowed
        assert decision.reason == DenialReason.TIER_GATE
        assert decision.retry_after is None
        assert decision.retry_after_seconds is None
        assert decision.upgrade_required
        assert decision.required_tier == Tier.PRO
        assert "pro" in decision.message

        # Gated checks never touch the store
        assert await store.peek("user:1", "ai_suggestion") is None

    @pytest.mark.asyncio
    async def test_exhaustion_has_positive_retry_after(self, evaluator):
        await evaluator.check("user:1", ActionKind.RESUME_CREATE, Tier.FREE)
        decision = await evaluator.check("user:1", ActionKind.RESUME_CREATE, Tier.FREE)

        assert decision.reason == DenialReason.QUOTA_EXHAUSTED
        assert decision.retry_after > timedelta(0)
        assert decision.required_tier is None


@pytest.mark.asyncio
async def test_unlimited_tier_is_always_allowed(evaluator, store):
    for _ in range(50):
        decision = await evaluator.check("user:1", ActionKind.AI_SUGGESTION, Tier.ENTERPRISE)
        assert decision.allowed
        assert decision.remaining == UNLIMITED
        assert decision.unlimited

    assert await store.peek("user:1", "ai_suggestion") is None


@pytest.mark.asyncio
async def test_unknown_tier_uses_free_limits(evaluator):
    for _ in range(5):
        assert (await evaluator.check("user:1", "ai_chat", "platinum")).allowed
    decision = await evaluator.check("user:1", "ai_chat", "platinum")
    assert not decision.allowed
    assert decision.tier == Tier.FREE


@pytest.mark.asyncio
async def test_unknown_action_raises(evaluator):
    with pytest.raises(UnknownActionError):
        await evaluator.check("user:1", "send_fax", Tier.FREE)


@pytest.mark.asyncio
async def test_subjects_are_independent(evaluator):
    for _ in range(5):
        await evaluator.check("user:1", ActionKind.AI_CHAT, Tier.FREE)

    assert not (await evaluator.check("user:1", ActionKind.AI_CHAT, Tier.FREE)).allowed
    assert (await evaluator.check("user:2", ActionKind.AI_CHAT, Tier.FREE)).allowed
    assert (await evaluator.check("user:1", ActionKind.RESUME_CREATE, Tier.FREE)).allowed


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_concurrent_checks_admit_exactly_the_limit(self, policies, clock, metrics):
        store = YieldingCounterStore(clock=clock, metrics=metrics)
        evaluator = QuotaEvaluator(policies, store, clock=clock, metrics=metrics)

        decisions = await asyncio.gather(*[
            evaluator.check("user:1", ActionKind.AI_CHAT, Tier.FREE) for _ in range(40)
        ])

        assert sum(d.allowed for d in decisions) == 5
        assert (await store.peek("user:1", "ai_chat")).count == 40

    @pytest.mark.asyncio
    async def test_concurrent_window_renewal_is_not_repeated(self, policies, clock, metrics):
        store = YieldingCounterStore(clock=clock, metrics=metrics)
        evaluator = QuotaEvaluator(policies, store, clock=clock, metrics=metrics)

        for _ in range(5):
            await evaluator.check("user:1", ActionKind.AI_CHAT, Tier.FREE)
        clock.advance(hours=25)

        # Every check sees the expired window, but only one may reset it
        decisions = await asyncio.gather(*[
            evaluator.check("user:1", ActionKind.AI_CHAT, Tier.FREE) for _ in range(20)
        ])

        assert sum(d.allowed for d in decisions) == 5
        counter = await store.peek("user:1", "ai_chat")
        assert counter.count == 20
        assert counter.window_start == clock.now()


@pytest.mark.asyncio
async def test_store_failure_propagates(policies, clock, metrics):
    store = FailingCounterStore(clock=clock, metrics=metrics)
    evaluator = QuotaEvaluator(policies, store, clock=clock, metrics=metrics)

    with pytest.raises(StoreUnavailableError) as exc_info:
        await evaluator.check("user:1", ActionKind.AI_CHAT, Tier.FREE)

    assert exc_info.value.operation == "peek"
    assert metrics.registry.get_sample_value(
        "quota_store_errors_total", {"backend": "memory", "operation": "peek"}
    ) == 1
    assert metrics.registry.get_sample_value(
        "quota_checks_total", {"action": "ai_chat", "tier": "free", "outcome": "error"}
    ) == 1


@pytest.mark.asyncio
async def test_gated_and_unlimited_checks_survive_store_outage(policies, clock, metrics):
    store = FailingCounterStore(clock=clock, metrics=metrics)
    evaluator = QuotaEvaluator(policies, store, clock=clock, metrics=metrics)

    assert (await evaluator.check("user:1", ActionKind.AI_SUGGESTION, Tier.FREE)).upgrade_required
    assert (await evaluator.check("user:1", ActionKind.AI_SUGGESTION, Tier.ENTERPRISE)).allowed


@pytest.mark.asyncio
async def test_vanished_counter_starts_a_fresh_window(policies, clock, metrics):
    store = VanishingCounterStore(clock=clock, metrics=metrics)
    evaluator = QuotaEvaluator(policies, store, clock=clock, metrics=metrics)

    await evaluator.check("user:1", ActionKind.AI_CHAT, Tier.FREE)
    decision = await evaluator.check("user:1", ActionKind.AI_CHAT, Tier.FREE)

    assert decision.allowed
    assert decision.count == 1


@pytest.mark.asyncio
async def test_explicit_now_overrides_clock(evaluator, clock):
    moment = clock.now() - timedelta(days=3)
    decision = await evaluator.check("user:1", ActionKind.AI_CHAT, Tier.FREE, now=moment)
    assert decision.window_start == moment


@pytest.mark.asyncio
async def test_explicit_past_now_still_enforces_the_limit(policies, metrics):
    # Store on the wall clock, checks pinned to a date well in the past
    store = InMemoryCounterStore(metrics=metrics)
    evaluator = QuotaEvaluator(policies, store, metrics=metrics)
    moment = datetime(2024, 3, 1, tzinfo=timezone.utc)

    decisions = [
        await evaluator.check("user:1", ActionKind.AI_CHAT, Tier.FREE, now=moment) for _ in range(20)
    ]

    assert sum(d.allowed for d in decisions) == 5
    assert (await store.peek("user:1", "ai_chat")).count == 20


@pytest.mark.asyncio
async def test_explicit_now_behind_store_clock(evaluator, store, clock):
    moment = clock.now() - timedelta(days=3)

    decisions = [
        await evaluator.check("user:1", ActionKind.AI_CHAT, Tier.FREE, now=moment) for _ in range(8)
    ]

    assert [d.allowed for d in decisions] == [True] * 5 + [False] * 3
    assert (await store.peek("user:1", "ai_chat")).window_start == moment


@pytest.mark.asyncio
async def test_check_refuses_failure_counted_actions(evaluator, store):
    with pytest.raises(TwoPhaseRequiredError) as exc_info:
        await evaluator.check("ip:203.0.113.7", ActionKind.AUTH_ATTEMPT, Tier.FREE)

    assert exc_info.value.action == "auth_attempt"
    assert await store.peek("ip:203.0.113.7", "auth_attempt") is None


@pytest.mark.asyncio
async def test_checks_are_recorded_in_metrics(evaluator, metrics):
    await evaluator.check("user:1", ActionKind.AI_SUGGESTION, Tier.FREE)
    await evaluator.check("user:1", ActionKind.AI_CHAT, Tier.PRO)

    registry = metrics.registry
    assert registry.get_sample_value(
        "quota_checks_total", {"action": "ai_suggestion", "tier": "free", "outcome": "tier_gate_rejected"}
    ) == 1
    assert registry.get_sample_value(
        "quota_checks_total", {"action": "ai_chat", "tier": "pro", "outcome": "allowed"}
    ) == 1


@pytest.mark.asyncio
async def test_status_does_not_consume(evaluator, clock):
    await evaluator.check("user:1", ActionKind.AI_CHAT, Tier.FREE)
    await evaluator.check("user:1", ActionKind.AI_CHAT, Tier.FREE)

    status = await evaluator.status("user:1", Tier.FREE)
    again = await evaluator.status("user:1", Tier.FREE)

    assert status == again
    assert status["ai_chat"]["used"] == 2
    assert status["ai_chat"]["remaining"] == 3
    assert status["ai_chat"]["reset_at"] == (clock.now() + timedelta(hours=24)).isoformat()
    assert status["resume_create"]["used"] == 0
    assert status["ai_suggestion"]["limit"] == 0

    clock.advance(hours=24)
    assert (await evaluator.status("user:1", Tier.FREE))["ai_chat"]["used"] == 0


@pytest.mark.asyncio
async def test_decision_to_dict(evaluator):
    decision = await evaluator.check("user:1", ActionKind.AI_SUGGESTION, Tier.FREE)
    body = decision.to_dict()

    assert body["allowed"] is False
    assert body["reason"] == "tier_gate_rejected"
    assert body["upgrade_required"] is True
    assert body["required_tier"] == "pro"
    assert body["retry_after"] is None


class TestEnforceQuota:

    @pytest.mark.asyncio
    async def test_runs_while_allowed_then_raises(self, evaluator):
        calls = []

        @enforce_quota(ActionKind.RESUME_CREATE, evaluator=evaluator)
        async def create_resume(title, subject=None, tier=None):
            calls.append(title)
            return title

        assert await create_resume("CV", subject="user:1", tier=Tier.FREE) == "CV"

        with pytest.raises(QuotaDeniedError) as exc_info:
            await create_resume("Second CV", subject="user:1", tier=Tier.FREE)

        assert calls == ["CV"]
        assert exc_info.value.decision.reason == DenialReason.QUOTA_EXHAUSTED
        assert "resume_create" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_unlimited_tier_never_raises(self, evaluator):
        @enforce_quota("resume_create", evaluator=evaluator)
        async def create_resume(subject=None, tier=None):
            return True

        for _ in range(10):
            assert await create_resume(subject="user:1", tier="pro")
