"""Tests for the two-phase reserve/commit/release API used by login attempts."""

import asyncio

import pytest

from tiered_quota.config import ActionPolicyConfig, QuotaSettings, default_action_policies
from tiered_quota.rate_limiting import (
    ActionKind,
    DenialReason,
    QuotaEvaluator,
    Tier,
    build_policy_table,
)

SUBJECT = "ip:203.0.113.7"


async def _login(evaluator, succeed: bool):
    async with evaluator.attempt(SUBJECT, ActionKind.AUTH_ATTEMPT, Tier.FREE) as attempt:
        if not attempt.allowed:
            return attempt
        if not succeed:
            attempt.mark_failed()
        return attempt


@pytest.mark.asyncio
async def test_successful_attempts_are_not_counted(evaluator, store):
    for _ in range(20):
        attempt = await _login(evaluator, succeed=True)
        assert attempt.allowed
        assert attempt.settled

    assert (await store.peek(SUBJECT, "auth_attempt")).count == 0


@pytest.mark.asyncio
async def test_failed_attempts_exhaust_the_limit(evaluator, clock):
    for _ in range(5):
        assert (await _login(evaluator, succeed=False)).allowed

    blocked = await _login(evaluator, succeed=False)
    assert not blocked.allowed
    assert blocked.decision.reason == DenialReason.QUOTA_EXHAUSTED
    assert blocked.decision.retry_after_seconds == 15 * 60

    # A correct password does not get through while blocked
    assert not (await _login(evaluator, succeed=True)).allowed

    clock.advance(minutes=15)
    assert (await _login(evaluator, succeed=True)).allowed


@pytest.mark.asyncio
async def test_successes_between_failures_do_not_count(evaluator):
    for _ in range(4):
        await _login(evaluator, succeed=False)
    for _ in range(10):
        assert (await _login(evaluator, succeed=True)).allowed

    assert (await _login(evaluator, succeed=False)).allowed
    assert not (await _login(evaluator, succeed=False)).allowed


@pytest.mark.asyncio
async def test_exception_in_block_keeps_the_slot(evaluator, store):
    with pytest.raises(RuntimeError):
        async with evaluator.attempt(SUBJECT, ActionKind.AUTH_ATTEMPT, Tier.FREE):
            raise RuntimeError("directory lookup failed")

    assert (await store.peek(SUBJECT, "auth_attempt")).count == 1


@pytest.mark.asyncio
async def test_explicit_commit_and_release(evaluator, store, metrics):
    kept = await evaluator.reserve(SUBJECT, ActionKind.AUTH_ATTEMPT, Tier.FREE)
    returned = await evaluator.reserve(SUBJECT, ActionKind.AUTH_ATTEMPT, Tier.FREE)
    assert (await store.peek(SUBJECT, "auth_attempt")).count == 2

    await evaluator.commit(kept)
    await evaluator.release(returned)
    # Settling twice is a no-op
    await evaluator.release(returned)
    await evaluator.release(kept)

    assert (await store.peek(SUBJECT, "auth_attempt")).count == 1
    assert metrics.registry.get_sample_value(
        "quota_reservations_total", {"action": "auth_attempt", "result": "released"}
    ) == 1
    assert metrics.registry.get_sample_value(
        "quota_reservations_total", {"action": "auth_attempt", "result": "committed"}
    ) == 1


@pytest.mark.asyncio
async def test_denied_reservation_is_already_settled(evaluator):
    for _ in range(5):
        await _login(evaluator, succeed=False)

    reservation = await evaluator.reserve(SUBJECT, ActionKind.AUTH_ATTEMPT, Tier.FREE)
    assert not reservation.allowed
    assert reservation.settled


@pytest.mark.asyncio
async def test_release_after_window_renewal_leaves_new_window_alone(evaluator, store, clock):
    stale = await evaluator.reserve(SUBJECT, ActionKind.AUTH_ATTEMPT, Tier.FREE)

    clock.advance(minutes=16)
    await _login(evaluator, succeed=False)

    await evaluator.release(stale)
    assert (await store.peek(SUBJECT, "auth_attempt")).count == 1


@pytest.mark.asyncio
async def test_concurrent_failed_attempts_cannot_overshoot(evaluator):
    results = await asyncio.gather(*[_login(evaluator, succeed=False) for _ in range(12)])
    assert sum(attempt.allowed for attempt in results) == 5


@pytest.mark.asyncio
async def test_attempts_count_successes_when_policy_counts_everything(store, clock, metrics):
    actions = default_action_policies()
    actions["auth_attempt"] = ActionPolicyConfig(window_seconds=900, free=5, pro=5, enterprise=5)
    evaluator = QuotaEvaluator(build_policy_table(QuotaSettings(actions=actions)), store,
                               clock=clock, metrics=metrics)

    for _ in range(5):
        assert (await _login(evaluator, succeed=True)).allowed

    assert (await store.peek(SUBJECT, "auth_attempt")).count == 5
    assert not (await _login(evaluator, succeed=True)).allowed


@pytest.mark.asyncio
async def test_attempt_on_an_ordinary_action_counts_the_slot(evaluator, store):
    async with evaluator.attempt("user:1", ActionKind.AI_CHAT, Tier.FREE) as attempt:
        assert attempt.allowed

    assert attempt.settled
    assert (await store.peek("user:1", "ai_chat")).count == 1
